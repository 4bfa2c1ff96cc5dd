"""HTTP adapter for the payment processor with retries and a circuit breaker.

This module implements the concrete ``PaymentProcessorPort`` against the
Stripe REST API using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
    by the request-id middleware.
- A circuit breaker per downstream service to avoid hammering an unhealthy
    processor, with HALF_OPEN probing after a timeout.
- A simple retry policy with exponential backoff for transport errors and
    5xx responses.

Every failure that leaves the processor unreachable surfaces as
``ProcessorUnavailable``; callers never see raw ``httpx`` exceptions.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, List, Optional

import httpx

from .domain import CheckoutSession, OrderItem, PaymentProcessorPort
from .errors import ProcessorUnavailable
from .middleware import REQUEST_ID_CTX

logger = logging.getLogger(__name__)


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    State only changes between awaits of a single event loop, so no lock is
    taken.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        if self._state == "OPEN" and (self._clock() - self._opened_at) >= self.reset_timeout:
            self._state = "HALF_OPEN"
            self._half_open_probe_in_flight = False
        return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            ProcessorUnavailable: If the circuit is OPEN or a HALF_OPEN probe
                is already in flight.
        """
        st = self.state
        if st == "OPEN":
            raise ProcessorUnavailable("CIRCUIT_OPEN", f"{self.name} circuit is open")
        if st == "HALF_OPEN":
            if self._half_open_probe_in_flight:
                raise ProcessorUnavailable("CIRCUIT_HALF_OPEN_BUSY", f"{self.name} circuit probe in flight")
            self._half_open_probe_in_flight = True
        return st

    def on_success(self) -> None:
        self._failures = 0
        self._state = "CLOSED"
        self._half_open_probe_in_flight = False

    def on_failure(self) -> None:
        """Record a failed call and open the breaker if threshold exceeded."""
        self._failures += 1
        if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
            self._state = "OPEN"
            self._opened_at = self._clock()
            self._half_open_probe_in_flight = False
            logger.warning("circuit opened", extra={"service": self.name, "failures": self._failures})

    def on_finish(self) -> None:
        if self._state == "HALF_OPEN":
            self._half_open_probe_in_flight = False


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retries are attempted only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _checkout_form(
    items: List[OrderItem], customer_name: str, email: Optional[str], currency: str, base_url: str
) -> dict:
    """Form-encoded body for ``POST /v1/checkout/sessions``.

    CLP is a zero-decimal currency: ``unit_amount`` is the peso amount,
    rounded to an integer.
    """
    form: dict[str, Any] = {
        "mode": "payment",
        "payment_method_types[0]": "card",
        "success_url": f"{base_url}/success.html?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base_url}/cancel.html",
        "metadata[cliente]": customer_name,
        "metadata[email]": email or "",
        "metadata[items]": json.dumps(
            [{"nombre": it.name, "precio": it.unit_price, "cantidad": it.quantity} for it in items],
            ensure_ascii=False,
        ),
    }
    if email:
        form["customer_email"] = email
    for idx, it in enumerate(items):
        prefix = f"line_items[{idx}]"
        form[f"{prefix}[price_data][currency]"] = currency
        form[f"{prefix}[price_data][product_data][name]"] = it.name
        form[f"{prefix}[price_data][unit_amount]"] = str(round(it.unit_price))
        form[f"{prefix}[quantity]"] = str(it.quantity)
    return form


# ---------------- Stripe Adapter ---------------- #

class StripeCheckoutClient(PaymentProcessorPort):
    """HTTP client for the payment processor with retry and circuit breaker.

    Args:
        secret_key: API secret used as the bearer token.
        api_base: Processor API root, e.g. ``https://api.stripe.com``.
        breaker: Circuit breaker shared by every call of this client.
        timeout: Per-request timeout in seconds.
        max_retries: Attempts before giving up on transport errors/5xx.
        backoff_base: First backoff sleep; doubles on each retry.
        max_sleep: Upper bound of a single backoff sleep.
        currency: Checkout currency (zero-decimal amounts are assumed).
        public_base_url: Public site root for the success/cancel redirects.
    """

    def __init__(
        self,
        secret_key: str,
        api_base: str,
        breaker: CircuitBreaker,
        timeout: float = 5.0,
        max_retries: int = 3,
        backoff_base: float = 0.15,
        max_sleep: float = 0.5,
        currency: str = "clp",
        public_base_url: str = "http://localhost:3000",
    ):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.breaker = breaker
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.max_sleep = max_sleep
        self.currency = currency
        self.public_base_url = public_base_url.rstrip("/")

    async def _request(self, op: str, method: str, path: str, ok_statuses=(200,), **kwargs) -> httpx.Response:
        """Send one logical request with circuit precheck and retries.

        Returns the response when its status is in ``ok_statuses`` or is a
        non-retriable 4xx (a business answer; not a circuit failure).

        Raises:
            ProcessorUnavailable: Circuit open, or transport errors/5xx after
                every retry.
        """
        tries = 0
        state = self.breaker.before_call()
        headers = _request_headers(
            {"Authorization": f"Bearer {self.secret_key}", "X-Circuit-State": state, "X-Retry-Count": "0"}
        )
        url = f"{self.api_base}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = await client.request(method, url, headers=headers, **kwargs)
                        if resp.status_code in ok_statuses or not _should_retry(resp, None):
                            self.breaker.on_success()
                            return resp
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= self.max_retries:
                        self.breaker.on_failure()
                        logger.error(
                            "payment processor call failed",
                            extra={
                                "op": op,
                                "tries": tries,
                                "status": resp.status_code if resp is not None else None,
                                "error": str(exc) if exc else None,
                            },
                        )
                        raise ProcessorUnavailable("PROCESSOR_UNAVAILABLE", f"{op} failed after {tries} attempts")

                    sleep_s = self.backoff_base * (2 ** (tries - 1))
                    await asyncio.sleep(min(sleep_s, self.max_sleep))
        finally:
            self.breaker.on_finish()

    async def list_line_items(self, session_id: str) -> List[OrderItem]:
        """Return the items charged in a checkout session.

        An unknown session (404) has no line items.
        """
        resp = await self._request(
            "list_line_items",
            "GET",
            f"/v1/checkout/sessions/{session_id}/line_items",
            params={"limit": 100},
        )
        if resp.status_code == 404:
            return []
        if resp.status_code != 200:
            raise ProcessorUnavailable("PROCESSOR_REJECTED", f"line items lookup answered {resp.status_code}")
        items = []
        for li in resp.json().get("data") or []:
            price = li.get("price") or {}
            items.append(
                OrderItem.from_dict(
                    {
                        "name": li.get("description") or price.get("product") or "item",
                        "price": price.get("unit_amount") or 0,
                        "qty": li.get("quantity") or 1,
                    }
                )
            )
        return items

    async def create_checkout_session(
        self, items: List[OrderItem], customer_name: str, email: Optional[str]
    ) -> CheckoutSession:
        """Open a hosted checkout session and return its id and URL."""
        form = _checkout_form(items, customer_name, email, self.currency, self.public_base_url)
        resp = await self._request("create_checkout_session", "POST", "/v1/checkout/sessions", data=form)
        if resp.status_code != 200:
            raise ProcessorUnavailable(
                "PROCESSOR_REJECTED", f"checkout session creation answered {resp.status_code}"
            )
        data = resp.json()
        return CheckoutSession(id=data["id"], url=data.get("url"))
