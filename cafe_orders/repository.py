"""Order repository: creation, queries and admin corrections.

The repository is the only component that shapes order records for the
outside world. It validates input before touching storage, computes totals
server-side and assigns the initial status through the state machine. It is
written against the ``OrderStore`` port, so it behaves the same on the
relational and the flat-file backends.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional

from . import state_machine
from .domain import (
    Order,
    OrderStatus,
    coerce_items,
    compute_total,
    normalize_amount,
    parse_payment_method,
    parse_status,
    parse_ts,
    utcnow,
)
from .errors import ValidationError
from .persistence import OrderStore

logger = logging.getLogger(__name__)

# Patch keys accepted by ``update``: API camelCase, snake_case and the legacy
# names used by the first version of the staff dashboard.
PATCH_FIELDS = {
    "customerName": "customer_name",
    "customer_name": "customer_name",
    "cliente": "customer_name",
    "email": "email",
    "items": "items",
    "total": "total",
    "status": "status",
    "estado": "status",
    "paymentMethod": "payment_method",
    "payment_method": "payment_method",
    "metodoPago": "payment_method",
    "note": "note",
    "nota": "note",
    "paymentIntentId": "payment_intent_id",
    "payment_intent_id": "payment_intent_id",
    "externalId": "external_id",
    "external_id": "external_id",
    "sessionId": "external_id",
    "paidAt": "paid_at",
    "paid_at": "paid_at",
    "fechaPago": "paid_at",
}
IMMUTABLE_FIELDS = {"id", "createdAt", "created_at", "fecha"}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class OrderRepository:
    """CRUD and query operations over orders.

    Args:
        store: The persistence backend selected at startup.
        clock: Returns the current UTC time (creation and payment stamps).
    """

    def __init__(self, store: OrderStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def create(
        self,
        customer_name: str,
        items: Iterable[Any],
        email: Optional[str] = None,
        payment_method: Any = None,
        note: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> Order:
        """Create an order and return the stored record with its ``id``.

        The total is always computed from ``items``; the initial status is
        decided by ``state_machine.initial_status``.

        Raises:
            ValidationError: ``EMPTY_CUSTOMER`` or ``EMPTY_ITEMS`` (no storage
                call is made), or an item/payment-method format error.
            StorageUnavailable: When the backend cannot persist the order.
        """
        name = _clean(customer_name)
        if not name:
            raise ValidationError("EMPTY_CUSTOMER", "order requires a customer name")
        order_items = coerce_items(items)
        if not order_items:
            raise ValidationError("EMPTY_ITEMS", "order requires at least one item")
        method = parse_payment_method(payment_method)
        intent = _clean(payment_intent_id)

        draft = Order(
            id=None,
            customer_name=name,
            items=order_items,
            total=compute_total(order_items),
            status=state_machine.initial_status(method, intent),
            created_at=self.clock(),
            email=_clean(email),
            payment_method=method,
            note=_clean(note),
            payment_intent_id=intent,
            external_id=_clean(external_id),
        )
        order = await self.store.create_order(draft)
        logger.info(
            "order created",
            extra={"order_id": order.id, "status": order.status.value, "total": order.total},
        )
        return order

    async def list(self, status: Any = None, external_id: Optional[str] = None) -> List[Order]:
        """Return matching orders, most recent first (exact-match filters)."""
        wanted = parse_status(status) if status not in (None, "") else None
        return await self.store.list_orders(status=wanted, external_id=_clean(external_id))

    async def get(self, order_id: int) -> Order:
        """Return one order.

        Raises:
            NotFound: When no order has this id.
        """
        return await self.store.get_order(order_id)

    async def update(self, order_id: int, patch: Mapping[str, Any]) -> Order:
        """Shallow-merge ``patch`` over an existing order (admin correction path).

        Transition legality is not enforced here; status changes that the
        state machine would refuse are still applied but logged as
        ``admin override``. ``archived`` can only be reached through the
        end-of-day archive and is rejected.

        Raises:
            ValidationError: Unknown or immutable fields, bad values.
            NotFound: When no order has this id.
        """
        changes = self._normalize_patch(patch)
        current = await self.store.get_order(order_id)

        if "items" in changes:
            if changes["items"]:
                changes["total"] = compute_total(changes["items"])
            elif "total" not in changes:
                changes["total"] = 0
        elif "total" in changes and current.items:
            # total stays derived from the items already on the order
            changes["total"] = compute_total(current.items)

        new_status = changes.get("status")
        if new_status is not None and new_status != current.status:
            if new_status == OrderStatus.PAID and current.paid_at is None and "paid_at" not in changes:
                changes["paid_at"] = self.clock()
            extra = {"order_id": order_id, "from": current.status.value, "to": new_status.value}
            if state_machine.can_transition(current.status, new_status):
                logger.info("status transition", extra=extra)
            else:
                logger.warning("admin override", extra=extra)

        if not changes:
            return current
        return await self.store.update_order(order_id, changes)

    @staticmethod
    def _normalize_patch(patch: Mapping[str, Any]) -> dict:
        if not isinstance(patch, Mapping):
            raise ValidationError("INVALID_PATCH", "patch must be an object")
        changes: dict = {}
        for key, value in patch.items():
            if key in IMMUTABLE_FIELDS:
                raise ValidationError("IMMUTABLE_FIELD", f"{key} cannot be changed")
            field = PATCH_FIELDS.get(key)
            if field is None:
                raise ValidationError("UNKNOWN_FIELD", f"unknown order field: {key}")
            changes[field] = value

        if "customer_name" in changes:
            name = _clean(changes["customer_name"])
            if not name:
                raise ValidationError("EMPTY_CUSTOMER", "order requires a customer name")
            changes["customer_name"] = name
        if "items" in changes:
            changes["items"] = coerce_items(changes["items"])
        if "total" in changes:
            changes["total"] = normalize_amount(changes["total"] if changes["total"] is not None else 0)
        if "status" in changes:
            changes["status"] = parse_status(changes["status"])
            if changes["status"] == OrderStatus.ARCHIVED:
                raise ValidationError("ARCHIVE_VIA_ARCHIVE_ONLY", "orders are archived by the end-of-day archive")
        if "payment_method" in changes:
            changes["payment_method"] = parse_payment_method(changes["payment_method"])
        if "paid_at" in changes:
            changes["paid_at"] = parse_ts(changes["paid_at"])
        for key in ("email", "note", "payment_intent_id", "external_id"):
            if key in changes:
                changes[key] = _clean(changes[key])
        return changes
