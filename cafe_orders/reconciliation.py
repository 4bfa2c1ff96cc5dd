"""Checkout reconciliation engine.

A card checkout is tracked in two steps. When the checkout session is
opened a *provisional* order is stored under the session id
(``external_id``) in ``awaiting_external_payment``. When the processor
confirms the payment (webhook, possibly delivered more than once or before
the provisional order exists) the confirmation is *reconciled* into that
order: the provisional order is settled to ``paid``, or a paid order is
created directly when none exists.

``reconcile`` is idempotent per ``external_id``. The storage layer enforces
one live order per ``external_id``; a writer that loses the insert race
gets ``ReconciliationConflict`` and retries as an update, so concurrent
redeliveries converge on a single order.
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from . import state_machine
from .domain import (
    Notifier,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentProcessorPort,
    coerce_items,
    compute_total,
    normalize_amount,
    utcnow,
)
from .errors import ProcessorUnavailable, ReconciliationConflict, ValidationError
from .notifications import dispatch
from .persistence import OrderStore

logger = logging.getLogger(__name__)

# Name used when the checkout carried no customer name.
DEFAULT_CUSTOMER = "Cliente"
_RECONCILE_ATTEMPTS = 2


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _require_external_id(external_id: Any) -> str:
    ext = _clean(external_id)
    if not ext:
        raise ValidationError("MISSING_EXTERNAL_ID", "external id is required")
    return ext


def _metadata_items(raw: Any) -> List[OrderItem]:
    """Items serialized by the checkout page into session metadata, or []."""
    if not raw:
        return []
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
        return coerce_items(data)
    except (ValueError, ValidationError) as e:
        logger.warning("unusable metadata items", extra={"error": str(e)})
        return []


class CheckoutReconciler:
    """Merge payment confirmations into provisional orders.

    Args:
        store: The persistence backend selected at startup.
        processor: Payment processor used to read the confirmed line items.
        notifier: Receives ``order_paid`` once per newly paid order.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: OrderStore,
        processor: Optional[PaymentProcessorPort] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.processor = processor
        self.notifier = notifier
        self.clock = clock

    async def create_provisional(
        self,
        external_id: str,
        customer_name: Optional[str],
        email: Optional[str],
        items: Optional[Iterable[Any]],
        note: Optional[str] = None,
    ) -> Order:
        """Store the order for a checkout session that was just opened."""
        ext = _require_external_id(external_id)
        order_items = coerce_items(items)
        draft = Order(
            id=None,
            customer_name=_clean(customer_name) or DEFAULT_CUSTOMER,
            items=order_items,
            total=compute_total(order_items),
            status=OrderStatus.AWAITING_EXTERNAL_PAYMENT,
            created_at=self.clock(),
            email=_clean(email),
            payment_method=PaymentMethod.CARD,
            note=_clean(note),
            external_id=ext,
        )
        order = await self.store.create_order(draft)
        logger.info("provisional order created", extra={"order_id": order.id, "external_id": ext})
        return order

    async def reconcile(
        self,
        external_id: str,
        items: Optional[Iterable[Any]] = None,
        total: Any = None,
        payer_name: Optional[str] = None,
        payer_email: Optional[str] = None,
    ) -> Order:
        """Apply a payment confirmation for ``external_id`` and return the order.

        Confirmed ``items`` replace the stored ones (and the total is
        recomputed from them); without items the stored items are kept and
        ``total`` is only used when the order has no items at all.

        Raises:
            ValidationError: Missing external id or malformed items.
            StorageUnavailable: When the backend cannot be reached.
        """
        order, _ = await self._reconcile(external_id, items, total, payer_name, payer_email)
        return order

    async def _reconcile(
        self,
        external_id: Any,
        items: Optional[Iterable[Any]],
        total: Any,
        payer_name: Optional[str],
        payer_email: Optional[str],
        payment_intent_id: Optional[str] = None,
    ) -> Tuple[Order, bool]:
        """Reconcile and report whether this call moved the order to ``paid``."""
        ext = _require_external_id(external_id)
        confirmed = coerce_items(items) if items is not None else []
        amount = normalize_amount(total) if total not in (None, "") else None

        for attempt in range(1, _RECONCILE_ATTEMPTS + 1):
            existing = await self.store.find_by_external_id(ext)
            if existing is not None:
                return await self._settle(existing, confirmed, amount, payer_name, payer_email, payment_intent_id)
            try:
                order = await self._insert_paid(ext, confirmed, amount, payer_name, payer_email, payment_intent_id)
            except ReconciliationConflict:
                if attempt == _RECONCILE_ATTEMPTS:
                    raise
                logger.info("reconcile insert lost race, retrying as update", extra={"external_id": ext})
                continue
            return order, True

    async def _settle(
        self,
        existing: Order,
        items: List[OrderItem],
        amount,
        payer_name: Optional[str],
        payer_email: Optional[str],
        payment_intent_id: Optional[str],
    ) -> Tuple[Order, bool]:
        changes: dict = {}
        if items:
            changes["items"] = items
            changes["total"] = compute_total(items)
        elif existing.items:
            recomputed = compute_total(existing.items)
            if recomputed != existing.total:
                changes["total"] = recomputed
        elif amount is not None and amount != existing.total:
            changes["total"] = amount

        status = state_machine.settle(existing)
        newly_paid = status != existing.status
        if newly_paid:
            changes["status"] = status
        if status == OrderStatus.PAID and existing.paid_at is None:
            changes["paid_at"] = self.clock()

        name = _clean(payer_name)
        if name and existing.customer_name in ("", DEFAULT_CUSTOMER):
            changes["customer_name"] = name
        email = _clean(payer_email)
        if email and not existing.email:
            changes["email"] = email
        if payment_intent_id and not existing.payment_intent_id:
            changes["payment_intent_id"] = payment_intent_id

        if not changes:
            logger.info(
                "reconcile no-op, order already settled",
                extra={"order_id": existing.id, "external_id": existing.external_id},
            )
            return existing, False
        order = await self.store.update_order(existing.id, changes)
        logger.info(
            "order reconciled",
            extra={
                "order_id": order.id,
                "external_id": order.external_id,
                "status": order.status.value,
                "total": order.total,
            },
        )
        return order, newly_paid

    async def _insert_paid(
        self,
        external_id: str,
        items: List[OrderItem],
        amount,
        payer_name: Optional[str],
        payer_email: Optional[str],
        payment_intent_id: Optional[str],
    ) -> Order:
        now = self.clock()
        draft = Order(
            id=None,
            customer_name=_clean(payer_name) or DEFAULT_CUSTOMER,
            items=items,
            total=compute_total(items) if items else (amount or 0),
            status=OrderStatus.PAID,
            created_at=now,
            email=_clean(payer_email),
            payment_method=PaymentMethod.CARD,
            payment_intent_id=payment_intent_id,
            external_id=external_id,
            paid_at=now,
        )
        order = await self.store.create_order(draft)
        logger.info(
            "paid order created from confirmation",
            extra={"order_id": order.id, "external_id": external_id, "total": order.total},
        )
        return order

    # ---- processor events ----

    async def handle_checkout_completed(self, session: Mapping[str, Any]) -> Order:
        """Reconcile a ``checkout.session.completed`` event object.

        Line items come from the processor; when it cannot be reached (or
        returns nothing) the items serialized in ``metadata.items`` are used,
        and failing that the order is stored without items rather than
        dropped.
        """
        session_id = _require_external_id(session.get("id"))
        metadata = session.get("metadata") or {}
        details = session.get("customer_details") or {}

        items: List[OrderItem] = []
        if self.processor is not None:
            try:
                items = await self.processor.list_line_items(session_id)
            except ProcessorUnavailable as e:
                logger.warning(
                    "line items unavailable, falling back to metadata",
                    extra={"external_id": session_id, "code": e.code},
                )
        if not items:
            items = _metadata_items(metadata.get("items"))

        order, newly_paid = await self._reconcile(
            session_id,
            items,
            session.get("amount_total"),
            metadata.get("cliente") or details.get("name"),
            metadata.get("email") or details.get("email"),
        )
        if newly_paid:
            await dispatch(self.notifier, "order_paid", order)
        return order

    async def handle_payment_intent_succeeded(self, intent: Mapping[str, Any]) -> Order:
        """Reconcile a ``payment_intent.succeeded`` event from the mobile app.

        The app serializes the order into ``metadata.pedido`` as JSON with
        ``clientName``, ``items`` and ``amount``; the intent id is the
        reconciliation key.

        Raises:
            ValidationError: ``INVALID_METADATA`` when ``pedido`` is missing
                or incomplete.
        """
        intent_id = _require_external_id(intent.get("id"))
        raw = (intent.get("metadata") or {}).get("pedido")
        try:
            details = json.loads(raw) if raw else None
        except ValueError:
            details = None
        if not isinstance(details, dict) or not (
            details.get("clientName") and details.get("items") and details.get("amount")
        ):
            logger.error("payment intent metadata unusable", extra={"external_id": intent_id})
            raise ValidationError("INVALID_METADATA", "metadata.pedido must carry clientName, items and amount")

        order, newly_paid = await self._reconcile(
            intent_id,
            details["items"],
            details["amount"],
            details["clientName"],
            details.get("email"),
            payment_intent_id=intent_id,
        )
        if newly_paid:
            await dispatch(self.notifier, "order_paid", order)
        return order

    async def simulate_payment(
        self, session_id: str, metadata: Optional[Mapping[str, Any]], items: Optional[Iterable[Any]]
    ) -> Order:
        """Reconcile a payment without a processor event (local testing)."""
        metadata = metadata or {}
        order, newly_paid = await self._reconcile(
            session_id,
            items if items is not None else _metadata_items(metadata.get("items")),
            None,
            metadata.get("cliente"),
            metadata.get("email"),
        )
        if newly_paid:
            await dispatch(self.notifier, "order_paid", order)
        return order
