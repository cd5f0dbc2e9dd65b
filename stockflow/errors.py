"""
エラー分類

ドメイン層はこれらの例外を送出し、HTTP 層 (main.py) がステータスコードに変換する。
"""


class StockflowError(Exception):
    """全ドメインエラーの基底クラス"""


class NotFound(StockflowError):
    """注文・商品 (SKU) が存在しない"""

    def __init__(self, resource: str, key) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} not found: {key}")


class AlreadyExists(StockflowError):
    """同じキーの商品が既に登録されている"""

    def __init__(self, resource: str, key) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} already exists: {key}")


class Unavailable(StockflowError):
    """上流サービスに到達できない (タイムアウト・接続失敗・不正な応答)"""

    def __init__(self, upstream: str, reason: str = "") -> None:
        self.upstream = upstream
        self.reason = reason
        message = f"{upstream} unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class NoAvailableItems(StockflowError):
    """注文可能な商品が 1 つもない"""

    def __init__(self) -> None:
        super().__init__("No items available for the order.")


class InsufficientStock(StockflowError):
    """在庫調整時に在庫数が足りない (チェック時と消費時の競合)"""

    def __init__(self, sku: str, requested: int, on_hand: int) -> None:
        self.sku = sku
        self.requested = requested
        self.on_hand = on_hand
        super().__init__(
            f"Insufficient stock for {sku}: requested={requested}, on_hand={on_hand}"
        )


class DuplicateEvent(StockflowError):
    """処理済みイベントの再配信。エラーではなく no-op として扱う。"""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event already processed: {event_id}")


class PublishFailure(StockflowError):
    """イベントバスへの発行に失敗した"""

    def __init__(self, topic: str, partition_key) -> None:
        self.topic = topic
        self.partition_key = partition_key
        super().__init__(f"Failed to publish to {topic} (key={partition_key})")
