"""Tests for notification dispatch."""

import asyncio
import logging

import pytest

from cafe_orders.adapters import NotifierStub
from cafe_orders.domain import Order
from cafe_orders.notifications import LogNotifier, dispatch

ORDER = Order(id=5, customer_name="Ana", email="ana@x.com")


def test_log_notifier_records_event(caplog):
    with caplog.at_level(logging.INFO, logger="cafe_orders"):
        assert asyncio.run(dispatch(LogNotifier(), "order_ready", ORDER)) is True
    assert "notify order ready" in caplog.text


def test_failures_are_logged_not_raised(caplog):
    assert asyncio.run(dispatch(NotifierStub(fail=True), "order_paid", ORDER)) is False
    assert "notification failed" in caplog.text


def test_no_notifier_configured():
    assert asyncio.run(dispatch(None, "order_paid", ORDER)) is False


def test_unknown_event():
    with pytest.raises(ValueError):
        asyncio.run(dispatch(NotifierStub(), "order_lost", ORDER))
