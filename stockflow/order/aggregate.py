"""
Order Service - 注文集約 (Order Aggregate)

注文と注文明細は 1 つの集約として同じトランザクションで保存する。
注文明細は注文の外で独立したライフサイクルを持たない。
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

CENT = Decimal("0.01")


class OrderStatus(str, Enum):
    """
    状態遷移:
        PLACED → CANCELLED  (cancel_order、1 回だけ・終端)
    """

    PLACED = "PLACED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class OrderItem:
    sku: str
    quantity: int
    unit_price: Decimal
    product_name: str = ""

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"quantity must be positive: {self.sku}={self.quantity}")
        if self.unit_price < 0:
            raise ValueError(f"price must not be negative: {self.sku}")
        # 保存先と同じ精度 (Numeric(12, 2)) に揃える
        object.__setattr__(
            self, "unit_price", Decimal(self.unit_price).quantize(CENT, ROUND_HALF_UP)
        )

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


def total_price(items: list[OrderItem]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0"))


class Order:
    def __init__(
        self,
        id: int | None,
        items: list[OrderItem],
        order_date: datetime,
        status: OrderStatus = OrderStatus.PLACED,
        total: Decimal | None = None,
    ) -> None:
        if not items:
            raise ValueError("an order needs at least one item")
        self.id = id
        self.items = list(items)
        self.order_date = order_date
        self.status = status
        self.total_price = total_price(self.items) if total is None else total

    @property
    def is_cancelled(self) -> bool:
        return self.status is OrderStatus.CANCELLED

    def cancel(self) -> bool:
        """PLACED → CANCELLED。既にキャンセル済みなら何もせず False を返す。"""
        if self.is_cancelled:
            return False
        self.status = OrderStatus.CANCELLED
        return True

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status.value} items={len(self.items)}>"
