"""
価格計算 (Pricing Calculator)

カート明細 + 割引 + 税率 から PriceBreakdown を算出する純粋関数。
I/O は一切行わない。カートが変わるたびに呼ばれるので O(n) で軽い。

  subtotal        = Σ unit_price × quantity
  discount_amount = 割引額（最小通貨単位で四捨五入、[0, subtotal] に丸める）
  taxable_amount  = max(0, subtotal - discount_amount)
  tax_amount      = taxable_amount × tax_rate（四捨五入）
  total           = max(0, taxable_amount + tax_amount)

金額は float ではなく Decimal で扱い、ROUND_HALF_UP で丸める。
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

from .errors import ValidationError

ZERO = Decimal("0")
HUNDRED = Decimal("100")


# ── 金額ユーティリティ ──────────────────────────


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # float はそのまま Decimal にすると 0.1 が 0.1000000000000000055... になる
        return Decimal(str(value))
    return Decimal(value)


def quantize(amount: Decimal, decimals: int = 2) -> Decimal:
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, decimals: int = 2) -> int:
    return int(quantize(amount, decimals).scaleb(decimals))


def from_minor_units(value: int, decimals: int = 2) -> Decimal:
    return quantize(Decimal(int(value)).scaleb(-decimals), decimals)


# ── 値オブジェクト ───────────────────────────────


@dataclass(frozen=True)
class CartLine:
    product_id: str
    unit_price: Decimal
    quantity: int
    available_stock: int = 0

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class PercentDiscount:
    """小計に対する割合(%)の割引"""
    value: Decimal
    code: str | None = None


@dataclass(frozen=True)
class FixedDiscount:
    """固定額の割引"""
    value: Decimal
    code: str | None = None


Discount = Union[PercentDiscount, FixedDiscount]


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal


# ── 計算 ─────────────────────────────────────────


def _discount_amount(discount: Discount | None, subtotal: Decimal, decimals: int) -> Decimal:
    if discount is None:
        amount = ZERO
    elif isinstance(discount, PercentDiscount):
        amount = subtotal * discount.value / HUNDRED
    elif isinstance(discount, FixedDiscount):
        amount = discount.value
    else:
        raise TypeError(f"Unsupported discount type: {type(discount).__name__}")
    amount = quantize(amount, decimals)
    return min(max(amount, ZERO), subtotal)


def compute_breakdown(
    lines: Iterable[CartLine],
    discount: Discount | None = None,
    tax_rate: Decimal | None = None,
    decimals: int = 2,
) -> PriceBreakdown:
    rate = to_decimal(tax_rate) if tax_rate is not None else ZERO

    subtotal = quantize(sum((line.line_total for line in lines), ZERO), decimals)
    discount_amount = _discount_amount(discount, subtotal, decimals)
    taxable_amount = max(ZERO, subtotal - discount_amount)
    tax_amount = quantize(taxable_amount * rate, decimals)
    total = max(ZERO, taxable_amount + tax_amount)

    return PriceBreakdown(
        subtotal=subtotal,
        discount_amount=discount_amount,
        taxable_amount=taxable_amount,
        tax_rate=rate,
        tax_amount=tax_amount,
        total=total,
    )


def line_violations(lines: Iterable[CartLine]) -> list[str]:
    """計算の前に弾く明細の問題（数量 >= 1、単価 >= 0）をすべて返す。"""
    violations: list[str] = []
    for line in lines:
        if line.quantity < 1:
            violations.append(f"quantity for product {line.product_id} must be at least 1")
        if line.unit_price < ZERO:
            violations.append(f"unit price for product {line.product_id} must not be negative")
    return violations


def parse_discount(kind: str | None, value, code: str | None = None) -> Discount | None:
    """
    UI から来た緩い入力（"percent"/"fixed" + 文字列の値）を割引型に変換する。

    空の値は「割引なし」。負の値・数値でない値は ValidationError。
    計算関数には検証済みの値しか渡さない。
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return None

    violations: list[str] = []
    try:
        amount = to_decimal(value.strip() if isinstance(value, str) else value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError([f"discount value is not a number: {value!r}"])
    if not amount.is_finite():
        violations.append(f"discount value is not a number: {value!r}")
    elif amount < 0:
        violations.append("discount value must not be negative")

    normalized = (kind or "").strip().lower()
    if normalized not in ("percent", "fixed"):
        violations.append(f"unknown discount kind: {kind!r}")

    if violations:
        raise ValidationError(violations)

    code = code.strip() if code and code.strip() else None
    if normalized == "percent":
        return PercentDiscount(amount, code)
    return FixedDiscount(amount, code)
