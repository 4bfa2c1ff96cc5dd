"""Domain models, enums and ports for cafeteria orders.

This module contains the dataclasses used as DTOs for orders and archive
units, the closed enumerations for order status and payment method, small
value helpers (amounts, timestamps) and the protocol definitions (ports) for
the external collaborators the core talks to: the payment processor and the
notification channel.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Protocol

from .errors import ValidationError


# ---- Enums ----
class OrderStatus(str, Enum):
    """Enumeration of the possible order statuses.

    The lifecycle is driven by ``state_machine``; ``ARCHIVED`` is terminal
    and only reachable through the end-of-day archive."""

    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    GUARANTEED_AWAITING_PICKUP = "guaranteed_awaiting_pickup"
    AWAITING_EXTERNAL_PAYMENT = "awaiting_external_payment"
    PAID = "paid"
    READY_FOR_PICKUP = "ready_for_pickup"
    ARCHIVED = "archived"


class PaymentMethod(str, Enum):
    CASH = "cash"
    SUBSIDIZED = "junaeb"
    CARD = "card"


# Labels written by the first version of the ordering site. Still accepted on
# input and still used by the flat-file document.
LEGACY_STATUS_LABELS = {
    OrderStatus.PENDING: "pendiente",
    OrderStatus.PENDING_PAYMENT: "pendiente_pago",
    OrderStatus.GUARANTEED_AWAITING_PICKUP: "Garantizado - Pendiente de Retiro",
    OrderStatus.AWAITING_EXTERNAL_PAYMENT: "esperando_pago",
    OrderStatus.PAID: "pagado",
    OrderStatus.READY_FOR_PICKUP: "listo",
    OrderStatus.ARCHIVED: "archivado",
}
LEGACY_PAYMENT_LABELS = {
    PaymentMethod.CASH: "efectivo",
    PaymentMethod.SUBSIDIZED: "junaeb",
    PaymentMethod.CARD: "tarjeta",
}
_STATUS_BY_LABEL = {label: st for st, label in LEGACY_STATUS_LABELS.items()}
_PAYMENT_BY_LABEL = {label: pm for pm, label in LEGACY_PAYMENT_LABELS.items()}


def parse_status(raw: Any) -> OrderStatus:
    """Map a status string (current or legacy label) to ``OrderStatus``.

    Raises:
        ValidationError: ``UNKNOWN_STATUS`` for anything outside the enum.
    """
    if isinstance(raw, OrderStatus):
        return raw
    if isinstance(raw, str):
        if raw in _STATUS_BY_LABEL:
            return _STATUS_BY_LABEL[raw]
        try:
            return OrderStatus(raw)
        except ValueError:
            pass
    raise ValidationError("UNKNOWN_STATUS", f"unknown order status: {raw!r}")


def parse_payment_method(raw: Any) -> Optional[PaymentMethod]:
    """Map a payment method string to ``PaymentMethod``; empty means None."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, PaymentMethod):
        return raw
    if isinstance(raw, str):
        if raw in _PAYMENT_BY_LABEL:
            return _PAYMENT_BY_LABEL[raw]
        try:
            return PaymentMethod(raw)
        except ValueError:
            pass
    raise ValidationError("UNKNOWN_PAYMENT_METHOD", f"unknown payment method: {raw!r}")


# ---- Value helpers ----
def normalize_amount(value: Any) -> int | float:
    """Coerce a money amount to a number, keeping integral values as ``int``.

    Raises:
        ValidationError: ``INVALID_AMOUNT`` when the value is not numeric.
    """
    if isinstance(value, bool):
        raise ValidationError("INVALID_AMOUNT", "amount must be numeric")
    if isinstance(value, int):
        return value
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ValidationError("INVALID_AMOUNT", f"amount must be numeric, got {value!r}")
    return int(num) if num.is_integer() else num


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as ISO-8601 UTC with millisecond precision and ``Z``."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_ts(raw: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed); naive means UTC."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        try:
            dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("INVALID_TIMESTAMP", f"invalid timestamp: {raw!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class OrderItem:
    """A single line item in an order.

    Attributes:
        name: Product name as displayed to the customer.
        unit_price: Price of one unit (CLP, integral in practice).
        quantity: Number of units, strictly positive.
    """

    name: str
    unit_price: int | float
    quantity: int = 1

    @classmethod
    def from_dict(cls, data: Any) -> "OrderItem":
        """Build an item from the API shape, the camelCase shape or the legacy one.

        Accepted keys: ``name``/``nombre``, ``price``/``unitPrice``/
        ``unit_price``/``precio`` and ``qty``/``quantity``/``cantidad``
        (defaults to 1).
        """
        if isinstance(data, OrderItem):
            return data
        if not isinstance(data, Mapping):
            raise ValidationError("INVALID_ITEM", f"item must be an object, got {type(data).__name__}")
        name = _first(data, "name", "nombre")
        price = _first(data, "price", "unitPrice", "unit_price", "precio")
        qty = _first(data, "qty", "quantity", "cantidad")
        if name is None or str(name).strip() == "":
            raise ValidationError("INVALID_ITEM", "item requires a name")
        unit_price = normalize_amount(price if price is not None else 0)
        if unit_price < 0:
            raise ValidationError("INVALID_ITEM", f"negative price for {name!r}")
        quantity = normalize_amount(qty if qty is not None else 1)
        if not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("INVALID_ITEM", f"quantity must be a positive integer for {name!r}")
        return cls(name=str(name), unit_price=unit_price, quantity=quantity)

    @property
    def subtotal(self) -> int | float:
        return normalize_amount(self.unit_price * self.quantity)

    def to_dict(self) -> dict:
        return {"name": self.name, "unitPrice": self.unit_price, "quantity": self.quantity}


def _first(data: Mapping, *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def coerce_items(raw: Optional[Iterable[Any]]) -> List[OrderItem]:
    """Build a list of ``OrderItem`` from dicts or items, keeping order."""
    if raw is None:
        return []
    if isinstance(raw, (str, bytes, Mapping)):
        raise ValidationError("INVALID_ITEMS", "items must be a list")
    return [OrderItem.from_dict(it) for it in raw]


def compute_total(items: Iterable[OrderItem]) -> int | float:
    """Server-side total: sum of ``unit_price * quantity`` over the items."""
    return normalize_amount(sum(it.unit_price * it.quantity for it in items))


@dataclass
class Order:
    """Container for order (pedido) data.

    Attributes:
        id: Identifier assigned by the active backend, or None if not yet saved.
        customer_name: Name of the customer picking the order up.
        items: Line items, in display order.
        total: Order total; always the recomputed sum when ``items`` is
            non-empty.
        status: Current ``OrderStatus``.
        created_at: Creation timestamp, immutable.
        email: Optional customer email.
        payment_method: Cash, subsidized (junaeb) or card; None when unknown.
        note: Free-text note from the customer.
        payment_intent_id: Guarantee authorization held at the processor.
        external_id: Checkout session id used as the reconciliation key.
        paid_at: Set when the order becomes ``paid``.
    """

    id: int | None
    customer_name: str
    items: List[OrderItem] = field(default_factory=list)
    total: int | float = 0
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    email: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    note: Optional[str] = None
    payment_intent_id: Optional[str] = None
    external_id: Optional[str] = None
    paid_at: Optional[datetime] = None

    def with_changes(self, **changes: Any) -> "Order":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Order":
        """Inverse of ``to_dict``; used to restore archived snapshots."""
        return cls(
            id=data.get("id"),
            customer_name=data.get("customerName") or "",
            items=coerce_items(data.get("items")),
            total=normalize_amount(data.get("total") or 0),
            status=parse_status(data.get("status")),
            created_at=parse_ts(data.get("createdAt")) or utcnow(),
            email=data.get("email"),
            payment_method=parse_payment_method(data.get("paymentMethod")),
            note=data.get("note"),
            payment_intent_id=data.get("paymentIntentId"),
            external_id=data.get("externalId"),
            paid_at=parse_ts(data.get("paidAt")),
        )

    def to_dict(self) -> dict:
        """API representation (camelCase keys, ISO timestamps)."""
        return {
            "id": self.id,
            "externalId": self.external_id,
            "customerName": self.customer_name,
            "email": self.email,
            "items": [it.to_dict() for it in self.items],
            "total": self.total,
            "status": self.status.value,
            "paymentMethod": self.payment_method.value if self.payment_method else None,
            "note": self.note,
            "paymentIntentId": self.payment_intent_id,
            "createdAt": format_ts(self.created_at),
            "paidAt": format_ts(self.paid_at),
        }


@dataclass(frozen=True)
class ArchiveSummary:
    date: str
    count: int
    archived_by: Optional[str]
    archived_at: Optional[datetime]

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "count": self.count,
            "archivedBy": self.archived_by,
            "archivedAt": format_ts(self.archived_at),
        }


@dataclass
class ArchiveUnit:
    """Dated, read-only snapshot of the orders live at archive time."""

    date: str
    archived_at: datetime
    archived_by: str
    orders: List[Order] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "archivedAt": format_ts(self.archived_at),
            "archivedBy": self.archived_by,
            "orders": [o.to_dict() for o in self.orders],
        }


@dataclass(frozen=True)
class ArchiveResult:
    archived_count: int
    archive_ref: Optional[str] = None
    archived_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "archivedCount": self.archived_count,
            "archiveRef": self.archive_ref,
            "archivedAt": format_ts(self.archived_at),
        }


@dataclass(frozen=True)
class CheckoutSession:
    """Checkout session created at the payment processor."""

    id: str
    url: Optional[str] = None


# ---- Ports (DIP) ----
class PaymentProcessorPort(Protocol):
    """Port describing the payment processor calls consumed by the core.

    Implementations raise ``ProcessorUnavailable`` when the processor cannot
    be reached; business answers are returned, never raised.
    """

    async def list_line_items(self, session_id: str) -> List[OrderItem]:
        """Return the confirmed line items of a checkout session.

        Args:
            session_id: Checkout session identifier (the order external id).

        Returns:
            The items as charged by the processor, possibly empty.

        Raises:
            NotImplementedError: If the method is not implemented by the
                concrete class.
        """
        raise NotImplementedError()

    async def create_checkout_session(
        self, items: List[OrderItem], customer_name: str, email: Optional[str]
    ) -> CheckoutSession:
        """Open a hosted checkout session for the given items.

        Raises:
            NotImplementedError: If the method is not implemented by the
                concrete class.
        """
        raise NotImplementedError()


class Notifier(Protocol):
    """Port for the outbound customer notifications (email, web push)."""

    async def order_paid(self, order: Order) -> None:
        raise NotImplementedError()

    async def order_ready(self, order: Order) -> None:
        raise NotImplementedError()
