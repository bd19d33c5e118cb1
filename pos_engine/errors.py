"""
エラー分類

  ValidationError    入力の問題（副作用なし、全違反をまとめて返す）
  InsufficientStock  在庫不足（副作用なし、実際の在庫数を返す）
  PersistenceError   注文ヘッダ/明細の保存失敗（トランザクションはロールバック済み）
  NotFound           対象が存在しない
  InvalidState       状態遷移が許可されない
"""


class PosEngineError(Exception):
    """エンジンが送出するすべてのエラーの基底クラス"""


class CommitError(PosEngineError):
    """注文確定(commit)で呼び出し元に返るエラー"""


class ValidationError(CommitError):
    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__("; ".join(self.violations))


class InsufficientStock(CommitError):
    def __init__(self, product_id: str, available: int, requested: int | None = None):
        self.product_id = str(product_id)
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock: product={self.product_id}, "
            f"requested={requested}, available={available}"
        )


class PersistenceError(CommitError):
    pass


class NotFound(PosEngineError):
    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = str(key)
        super().__init__(f"{entity} not found: {self.key}")


class InvalidState(PosEngineError):
    def __init__(self, entity: str, key: str, status: str, target: str):
        self.entity = entity
        self.key = str(key)
        self.status = status
        self.target = target
        super().__init__(f"{entity} {self.key} cannot move from {status} to {target}")
