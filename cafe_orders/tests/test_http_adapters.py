"""Unit tests for the payment processor HTTP adapter.

``httpx.AsyncClient.request`` is monkeypatched so no network is used; the
tests check the business mappings, the retry policy and the circuit
breaker.
"""

import asyncio

import httpx
import pytest

from cafe_orders.domain import OrderItem
from cafe_orders.errors import ProcessorUnavailable
from cafe_orders.http_adapters import CircuitBreaker, StripeCheckoutClient
from cafe_orders.middleware import REQUEST_ID_CTX

LINE_ITEMS = {
    "object": "list",
    "data": [
        {"description": "Café", "quantity": 2, "price": {"unit_amount": 1500, "product": "prod_1"}},
        {"description": None, "quantity": 1, "price": {"unit_amount": 990, "product": "prod_2"}},
    ],
}


def _resp(status, json_data=None, method="GET", url="https://api.test/x"):
    return httpx.Response(status, json=json_data or {}, request=httpx.Request(method, url))


def _client(breaker=None, max_retries=3):
    return StripeCheckoutClient(
        secret_key="sk_test",
        api_base="https://api.test",
        breaker=breaker or CircuitBreaker("payments", 5, 30.0),
        max_retries=max_retries,
        backoff_base=0.0,
        public_base_url="https://cafe.test",
    )


def _patch(monkeypatch, handler):
    calls = []

    async def fake_request(self, method, url, **kwargs):
        calls.append({"method": method, "url": url, **kwargs})
        return handler(len(calls))

    monkeypatch.setattr(httpx.AsyncClient, "request", fake_request, raising=True)
    return calls


def test_list_line_items_ok(monkeypatch):
    calls = _patch(monkeypatch, lambda n: _resp(200, LINE_ITEMS))
    items = asyncio.run(_client().list_line_items("cs_1"))
    assert items == [OrderItem("Café", 1500, 2), OrderItem("prod_2", 990, 1)]
    assert calls[0]["url"] == "https://api.test/v1/checkout/sessions/cs_1/line_items"
    assert calls[0]["headers"]["Authorization"] == "Bearer sk_test"


def test_list_line_items_unknown_session(monkeypatch):
    _patch(monkeypatch, lambda n: _resp(404, {"error": {"type": "invalid_request_error"}}))
    assert asyncio.run(_client().list_line_items("cs_missing")) == []


def test_retries_on_5xx_then_succeeds(monkeypatch):
    calls = _patch(monkeypatch, lambda n: _resp(502) if n == 1 else _resp(200, LINE_ITEMS))
    items = asyncio.run(_client().list_line_items("cs_1"))
    assert len(items) == 2
    assert len(calls) == 2
    assert calls[1]["headers"]["X-Retry-Count"] == "1"


def test_transport_errors_surface_as_processor_unavailable(monkeypatch):
    def boom(n):
        raise httpx.ConnectError("boom")

    calls = _patch(monkeypatch, boom)
    with pytest.raises(ProcessorUnavailable) as e:
        asyncio.run(_client(max_retries=2).list_line_items("cs_1"))
    assert str(e.value) == "PROCESSOR_UNAVAILABLE"
    assert len(calls) == 2


def test_no_retry_on_4xx(monkeypatch):
    calls = _patch(monkeypatch, lambda n: _resp(400, {"error": {"message": "bad"}}, method="POST"))
    with pytest.raises(ProcessorUnavailable) as e:
        asyncio.run(_client().create_checkout_session([OrderItem("Café", 1500, 1)], "Ana", "ana@x.com"))
    assert str(e.value) == "PROCESSOR_REJECTED"
    assert len(calls) == 1


def test_circuit_opens_after_threshold(monkeypatch):
    breaker = CircuitBreaker("payments", fail_threshold=2, reset_timeout=30.0)
    calls = _patch(monkeypatch, lambda n: _resp(503))
    client = _client(breaker, max_retries=1)

    async def scenario():
        for _ in range(2):
            with pytest.raises(ProcessorUnavailable):
                await client.list_line_items("cs_1")
        with pytest.raises(ProcessorUnavailable) as e:
            await client.list_line_items("cs_1")
        return e.value

    err = asyncio.run(scenario())
    assert str(err) == "CIRCUIT_OPEN"
    assert breaker.state == "OPEN"
    assert len(calls) == 2


def test_circuit_half_open_probe_closes_on_success(monkeypatch):
    now = {"t": 100.0}
    breaker = CircuitBreaker("payments", fail_threshold=1, reset_timeout=10.0, clock=lambda: now["t"])
    breaker.on_failure()
    assert breaker.state == "OPEN"
    now["t"] += 10.0
    assert breaker.state == "HALF_OPEN"

    calls = _patch(monkeypatch, lambda n: _resp(200, LINE_ITEMS))
    asyncio.run(_client(breaker).list_line_items("cs_1"))
    assert breaker.state == "CLOSED"
    assert calls[0]["headers"]["X-Circuit-State"] == "HALF_OPEN"


def test_half_open_failure_reopens():
    now = {"t": 0.0}
    breaker = CircuitBreaker("payments", fail_threshold=3, reset_timeout=5.0, clock=lambda: now["t"])
    for _ in range(3):
        breaker.on_failure()
    now["t"] = 5.0
    assert breaker.before_call() == "HALF_OPEN"
    with pytest.raises(ProcessorUnavailable) as e:
        breaker.before_call()
    assert str(e.value) == "CIRCUIT_HALF_OPEN_BUSY"
    breaker.on_failure()
    assert breaker.state == "OPEN"


def test_create_checkout_session_form(monkeypatch):
    calls = _patch(
        monkeypatch,
        lambda n: _resp(200, {"id": "cs_new", "url": "https://checkout.test/cs_new"}, method="POST"),
    )

    async def scenario():
        REQUEST_ID_CTX.set("req-123")
        return await _client().create_checkout_session([OrderItem("Café", 1500, 2)], "Ana", "ana@x.com")

    session = asyncio.run(scenario())
    assert (session.id, session.url) == ("cs_new", "https://checkout.test/cs_new")
    form = calls[0]["data"]
    assert calls[0]["method"] == "POST"
    assert form["line_items[0][price_data][currency]"] == "clp"
    assert form["line_items[0][price_data][unit_amount]"] == "1500"
    assert form["line_items[0][quantity]"] == "2"
    assert form["metadata[cliente]"] == "Ana"
    assert form["success_url"] == "https://cafe.test/success.html?session_id={CHECKOUT_SESSION_ID}"
    assert calls[0]["headers"]["X-Request-ID"] == "req-123"
