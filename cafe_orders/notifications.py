"""Outbound customer notifications.

Delivery mechanics (mail transport, web push) live outside this package;
the core only decides *when* to notify and talks to a ``Notifier``.
Notification failures never undo or fail the order mutation that triggered
them: ``dispatch`` logs and swallows them.
"""

import logging
from typing import Optional

from .domain import Notifier, Order

logger = logging.getLogger(__name__)

EVENTS = ("order_paid", "order_ready")


class LogNotifier(Notifier):
    """Default notifier: records the notification in the structured log."""

    async def order_paid(self, order: Order) -> None:
        logger.info(
            "notify order paid",
            extra={"order_id": order.id, "email": order.email, "total": order.total},
        )

    async def order_ready(self, order: Order) -> None:
        logger.info("notify order ready", extra={"order_id": order.id, "email": order.email})


async def dispatch(notifier: Optional[Notifier], event: str, order: Order) -> bool:
    """Send ``event`` for ``order`` through ``notifier``.

    Returns:
        bool: True when the notifier accepted the event, False when there is
        no notifier or it failed.
    """
    if event not in EVENTS:
        raise ValueError(f"unknown notification event: {event}")
    if notifier is None:
        return False
    try:
        await getattr(notifier, event)(order)
    except Exception:
        logger.exception("notification failed", extra={"event": event, "order_id": order.id})
        return False
    return True
