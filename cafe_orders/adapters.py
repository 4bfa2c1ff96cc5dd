"""In-process stub adapters for the order ports.

These stubs implement ``PaymentProcessorPort`` and ``Notifier`` without any
network calls. They are intended for unit tests and local development
where deterministic behavior is useful and the payment processor is not
reachable.
"""

import uuid
from typing import Dict, List, Optional, Tuple

from .domain import CheckoutSession, Notifier, Order, OrderItem, PaymentProcessorPort
from .errors import ProcessorUnavailable


class ProcessorStub(PaymentProcessorPort):
    """Stub implementation of ``PaymentProcessorPort``.

    Sessions created through ``create_checkout_session`` remember their
    items, so a later ``list_line_items`` returns exactly what was charged.
    Unknown sessions have no line items. Setting ``available = False``
    makes every call raise ``ProcessorUnavailable``.
    """

    def __init__(self, base_url: str = "http://localhost:3000"):
        self.base_url = base_url
        self.available = True
        self.sessions: Dict[str, List[OrderItem]] = {}

    def _check(self) -> None:
        if not self.available:
            raise ProcessorUnavailable("PROCESSOR_UNAVAILABLE", "payment processor stub is offline")

    async def list_line_items(self, session_id: str) -> List[OrderItem]:
        self._check()
        return list(self.sessions.get(session_id, []))

    async def create_checkout_session(
        self, items: List[OrderItem], customer_name: str, email: Optional[str]
    ) -> CheckoutSession:
        self._check()
        session_id = f"cs_test_{uuid.uuid4().hex}"
        self.sessions[session_id] = list(items)
        return CheckoutSession(id=session_id, url=f"{self.base_url}/success.html?session_id={session_id}")


class NotifierStub(Notifier):
    """Stub implementation of ``Notifier`` that records what was sent."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, Optional[int]]] = []

    async def _record(self, event: str, order: Order) -> None:
        if self.fail:
            raise RuntimeError("NOTIFIER_DOWN")
        self.sent.append((event, order.id))

    async def order_paid(self, order: Order) -> None:
        await self._record("order_paid", order)

    async def order_ready(self, order: Order) -> None:
        await self._record("order_ready", order)
