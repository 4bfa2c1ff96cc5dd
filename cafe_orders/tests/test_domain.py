"""Unit tests for domain value parsing and totals."""

from datetime import datetime, timezone

import pytest

from cafe_orders.domain import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    compute_total,
    format_ts,
    parse_payment_method,
    parse_status,
)
from cafe_orders.errors import ValidationError


def test_item_accepts_api_and_legacy_shapes():
    api = OrderItem.from_dict({"name": "Café", "price": 1500, "qty": 2})
    legacy = OrderItem.from_dict({"nombre": "Café", "precio": 1500, "cantidad": 2})
    assert api == legacy == OrderItem("Café", 1500, 2)
    assert OrderItem.from_dict({"name": "Té", "unitPrice": 1000}).quantity == 1


@pytest.mark.parametrize(
    "raw",
    [
        {"price": 100, "qty": 1},
        {"name": "x", "price": -1, "qty": 1},
        {"name": "x", "price": 100, "qty": 0},
        {"name": "x", "price": 100, "qty": 1.5},
        {"name": "x", "price": "abc"},
        "Café",
    ],
)
def test_item_rejects_bad_input(raw):
    with pytest.raises(ValidationError):
        OrderItem.from_dict(raw)


def test_compute_total_keeps_integers():
    items = [OrderItem("Café", 1500, 2), OrderItem("Queque", 990, 1)]
    total = compute_total(items)
    assert total == 3990 and isinstance(total, int)
    assert compute_total([]) == 0


def test_status_parsing():
    assert parse_status("paid") == OrderStatus.PAID
    assert parse_status("pagado") == OrderStatus.PAID
    assert parse_status("Garantizado - Pendiente de Retiro") == OrderStatus.GUARANTEED_AWAITING_PICKUP
    with pytest.raises(ValidationError) as e:
        parse_status("listo para retiro")
    assert str(e.value) == "UNKNOWN_STATUS"


def test_payment_method_parsing():
    assert parse_payment_method("efectivo") == PaymentMethod.CASH
    assert parse_payment_method("junaeb") == PaymentMethod.SUBSIDIZED
    assert parse_payment_method("") is None
    with pytest.raises(ValidationError):
        parse_payment_method("bitcoin")


def test_order_dict_round_trip():
    created = datetime(2024, 5, 2, 13, 45, 1, 123000, tzinfo=timezone.utc)
    order = Order(
        id=7,
        customer_name="Ana",
        items=[OrderItem("Café", 1500, 2)],
        total=3000,
        status=OrderStatus.PAID,
        created_at=created,
        payment_method=PaymentMethod.CASH,
        external_id="cs_1",
        paid_at=created,
    )
    data = order.to_dict()
    assert data["createdAt"] == "2024-05-02T13:45:01.123Z"
    assert data["status"] == "paid"
    assert Order.from_dict(data) == order
    assert format_ts(None) is None
