"""
カート (Cart) — チェックアウト中の明細を保持する値オブジェクト

プロセス全体で共有する状態にはせず、呼び出し側が Cart を持ち回って
compute_breakdown / commit に渡す。

在庫チェックはここでは「目安」(advisory) にすぎない。
確定時に在庫台帳が改めて検証する。
"""

from decimal import Decimal

from .errors import InsufficientStock, NotFound, ValidationError
from .pricing import (
    CartLine,
    Discount,
    PriceBreakdown,
    compute_breakdown,
    line_violations,
    to_decimal,
)


class Cart:
    def __init__(self) -> None:
        self._lines: dict[str, CartLine] = {}

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines.values())

    def __len__(self) -> int:
        return len(self._lines)

    def quantity_of(self, product_id: str) -> int:
        line = self._lines.get(str(product_id))
        return line.quantity if line else 0

    def add(
        self,
        product_id: str,
        unit_price,
        available_stock: int,
        quantity: int = 1,
    ) -> CartLine:
        """商品を追加する。既にあれば数量を加算する。"""
        product_id = str(product_id)
        unit_price = to_decimal(unit_price)
        violations = line_violations([CartLine(product_id, unit_price, quantity)])
        if violations:
            raise ValidationError(violations)

        current = self.quantity_of(product_id)
        requested = current + quantity
        if requested > available_stock:
            raise InsufficientStock(product_id, available_stock, requested)

        line = CartLine(
            product_id=product_id,
            unit_price=unit_price,
            quantity=requested,
            available_stock=available_stock,
        )
        self._lines[product_id] = line
        return line

    def update_quantity(self, product_id: str, quantity: int) -> CartLine | None:
        """数量を変更する。0 以下なら明細ごと削除する。"""
        product_id = str(product_id)
        if quantity <= 0:
            self.remove(product_id)
            return None

        line = self._get(product_id)
        if quantity > line.available_stock:
            raise InsufficientStock(product_id, line.available_stock, quantity)

        line = CartLine(line.product_id, line.unit_price, quantity, line.available_stock)
        self._lines[product_id] = line
        return line

    def refresh_stock(self, product_id: str, available_stock: int) -> None:
        line = self._get(product_id)
        self._lines[line.product_id] = CartLine(
            line.product_id, line.unit_price, line.quantity, available_stock
        )

    def _get(self, product_id: str) -> CartLine:
        line = self._lines.get(str(product_id))
        if line is None:
            raise NotFound("Cart line", product_id)
        return line

    def remove(self, product_id: str) -> None:
        self._lines.pop(str(product_id), None)

    def clear(self) -> None:
        self._lines.clear()

    def breakdown(
        self,
        discount: Discount | None = None,
        tax_rate: Decimal | None = None,
        decimals: int = 2,
    ) -> PriceBreakdown:
        return compute_breakdown(self._lines.values(), discount, tax_rate, decimals)
