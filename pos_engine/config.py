"""
設定 — 環境変数から読み込む

設定はすべて os.environ から読み込み、Settings に固定する。
"""

import os
from dataclasses import dataclass

DEFAULT_PAYMENT_METHODS = ("cash", "card", "bank_transfer", "check", "other")


def _flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.environ.get(name)
    if not value:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./pos.db"
    redis_url: str | None = None
    payment_methods: tuple[str, ...] = DEFAULT_PAYMENT_METHODS
    currency_decimals: int = 2
    order_prefix: str = "ORD"
    transaction_prefix: str = "TXN"
    refund_restock: bool = False
    refund_reverse_customer_stats: bool = False
    refund_record_ledger: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            redis_url=os.environ.get("REDIS_URL") or None,
            payment_methods=_csv("POS_PAYMENT_METHODS", DEFAULT_PAYMENT_METHODS),
            currency_decimals=int(os.environ.get("POS_CURRENCY_DECIMALS", "2")),
            order_prefix=os.environ.get("POS_ORDER_PREFIX", "ORD"),
            transaction_prefix=os.environ.get("POS_TRANSACTION_PREFIX", "TXN"),
            refund_restock=_flag("POS_REFUND_RESTOCK", False),
            refund_reverse_customer_stats=_flag(
                "POS_REFUND_REVERSE_CUSTOMER_STATS", False
            ),
            refund_record_ledger=_flag("POS_REFUND_RECORD_LEDGER", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
