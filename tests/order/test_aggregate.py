from datetime import datetime, timezone
from decimal import Decimal

import pytest

from stockflow.order.aggregate import Order, OrderItem, OrderStatus, total_price


def _item(sku="IPHONE_15", quantity=2, price="999.00"):
    return OrderItem(sku=sku, quantity=quantity, unit_price=Decimal(price), product_name=sku)


class TestOrderItem:
    def test_line_total(self):
        assert _item(quantity=3, price="2.50").line_total == Decimal("7.50")

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_quantity_must_be_positive(self, quantity):
        with pytest.raises(ValueError):
            _item(quantity=quantity)

    def test_price_must_not_be_negative(self):
        with pytest.raises(ValueError):
            _item(price="-1")

    def test_price_is_held_in_cents(self):
        assert _item(price="0.335").unit_price == Decimal("0.34")
        assert _item(quantity=3, price="0.333").line_total == Decimal("0.99")


class TestOrder:
    def test_total_price_is_sum_of_lines(self):
        order = Order(
            None,
            [_item(quantity=2, price="999.00"), _item("AIRPODS", 1, "199.99")],
            datetime.now(timezone.utc),
        )
        assert order.total_price == Decimal("2197.99")
        assert order.total_price == total_price(order.items)

    def test_new_order_is_placed(self):
        order = Order(None, [_item()], datetime.now(timezone.utc))
        assert order.status is OrderStatus.PLACED

    def test_order_needs_items(self):
        with pytest.raises(ValueError):
            Order(None, [], datetime.now(timezone.utc))

    def test_cancel_transitions_once(self):
        order = Order(1, [_item()], datetime.now(timezone.utc))

        assert order.cancel() is True
        assert order.status is OrderStatus.CANCELLED
        assert order.cancel() is False
        assert order.status is OrderStatus.CANCELLED

    def test_status_values(self):
        assert {s.value for s in OrderStatus} == {"PLACED", "CANCELLED"}
