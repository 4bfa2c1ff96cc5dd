"""Order status assignment and transition rules.

Transitions:
- ``pending | pending_payment | guaranteed_awaiting_pickup |
  awaiting_external_payment`` -> ``paid`` on a confirmed processor event
  (or an admin correction).
- ``paid`` -> ``ready_for_pickup`` on staff action.
- any live state -> ``archived`` through the end-of-day archive only.
- ``archived`` is terminal.

``OrderRepository.update`` does not enforce this table: admin corrections
may set any live status. Stricter callers should guard with
``ensure_transition`` before patching.
"""

from typing import Optional

from .domain import Order, OrderStatus, PaymentMethod
from .errors import InvalidTransition

_PAYABLE = {
    OrderStatus.PENDING,
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.GUARANTEED_AWAITING_PICKUP,
    OrderStatus.AWAITING_EXTERNAL_PAYMENT,
}

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    **{st: frozenset({OrderStatus.PAID, OrderStatus.ARCHIVED}) for st in _PAYABLE},
    OrderStatus.PAID: frozenset({OrderStatus.READY_FOR_PICKUP, OrderStatus.ARCHIVED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.ARCHIVED}),
    OrderStatus.ARCHIVED: frozenset(),
}

# Statuses where a payment confirmation has already been applied.
SETTLED = frozenset({OrderStatus.PAID, OrderStatus.READY_FOR_PICKUP})


def initial_status(payment_method: Optional[PaymentMethod], payment_intent_id: Optional[str]) -> OrderStatus:
    """Status assigned at creation time.

    Cash and subsidized orders are guaranteed when a payment intent holds
    funds against no-shows, otherwise they wait for payment at pickup. Card
    (or unspecified) orders start as plain ``pending``.
    """
    if payment_method in (PaymentMethod.CASH, PaymentMethod.SUBSIDIZED):
        if payment_intent_id:
            return OrderStatus.GUARANTEED_AWAITING_PICKUP
        return OrderStatus.PENDING_PAYMENT
    return OrderStatus.PENDING


def can_transition(src: OrderStatus, dst: OrderStatus) -> bool:
    return dst in TRANSITIONS.get(src, frozenset())


def ensure_transition(src: OrderStatus, dst: OrderStatus) -> None:
    """Raise ``InvalidTransition`` unless ``src -> dst`` is in the table."""
    if not can_transition(src, dst):
        raise InvalidTransition(
            "INVALID_TRANSITION", f"cannot move order from {src.value} to {dst.value}"
        )


def settle(order: Order) -> OrderStatus:
    """Status an order takes when a payment confirmation is applied to it.

    Re-applying a confirmation to an order that is already settled keeps its
    current status, so webhook redelivery never moves a ``ready_for_pickup``
    order back to ``paid``.
    """
    if order.status in SETTLED:
        return order.status
    ensure_transition(order.status, OrderStatus.PAID)
    return OrderStatus.PAID


def seal_for_archive(order: Order) -> Order:
    """Return a copy of ``order`` moved to the terminal ``archived`` status."""
    ensure_transition(order.status, OrderStatus.ARCHIVED)
    return order.with_changes(status=OrderStatus.ARCHIVED)
