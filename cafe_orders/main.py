"""Cafe orders API built with FastAPI.

Thin HTTP wiring over the order repository, the checkout reconciliation
engine and the archive service. Request bodies are validated with Pydantic
models; business rules live in the core modules. Every error leaves as
``{"kind", "code", "detail"}`` with the status code of its ``OrderError``
class, never with a stack trace.
"""

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .domain import Notifier, OrderStatus, PaymentProcessorPort, coerce_items
from .errors import OrderError, ValidationError
from .logging_filters import configure_logging
from .middleware import request_id_middleware
from .notifications import dispatch
from .providers import Container, build_container
from .schemas import CheckoutSessionIn, CheckoutSessionOut, CreateOrderIn, SimulatePaymentIn
from .settings import Settings, get_settings
from .webhooks import construct_event

logger = logging.getLogger(__name__)


def get_container(request: Request) -> Container:
    return request.app.state.container


ContainerDep = Annotated[Container, Depends(get_container)]


def create_app(
    settings: Optional[Settings] = None,
    processor: Optional[PaymentProcessorPort] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """Build the application.

    The container (storage backend, processor client, notifier) is built
    once when the app starts and closed when it stops. ``processor`` and
    ``notifier`` override the configured collaborators.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.container = await build_container(settings, processor=processor, notifier=notifier)
        logger.info("service started", extra={"backend": type(app.state.container.store).__name__})
        try:
            yield
        finally:
            await app.state.container.aclose()

    app = FastAPI(title="Cafe Orders", lifespan=lifespan)
    app.middleware("http")(request_id_middleware)

    @app.exception_handler(OrderError)
    async def order_error_handler(request: Request, exc: OrderError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
        err = ValidationError("INVALID_REQUEST", f"invalid request body: {fields}")
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error", extra={"path": request.url.path})
        return JSONResponse(
            status_code=500, content={"kind": "INTERNAL_ERROR", "code": "INTERNAL_ERROR", "detail": "internal error"}
        )

    @app.get("/health")
    async def health(container: ContainerDep):
        """Liveness probe; also checks that the storage backend answers."""
        await container.store.ping()
        return {"ok": True, "backend": type(container.store).__name__}

    # ---- orders ----

    @app.post("/api/pedidos", status_code=201)
    async def create_order(body: CreateOrderIn, container: ContainerDep):
        order = await container.repository.create(
            customer_name=body.customer_name,
            items=body.items,
            email=body.email,
            payment_method=body.payment_method,
            note=body.note,
            payment_intent_id=body.payment_intent_id,
            external_id=body.external_id,
        )
        return order.to_dict()

    @app.get("/api/pedidos")
    async def list_orders(
        container: ContainerDep,
        status: Optional[str] = None,
        external_id: Annotated[Optional[str], Query(alias="externalId")] = None,
        session_id: Annotated[Optional[str], Query(alias="sessionId")] = None,
    ):
        orders = await container.repository.list(status=status, external_id=external_id or session_id)
        return [o.to_dict() for o in orders]

    @app.get("/api/pedidos/{order_id}")
    async def get_order(order_id: int, container: ContainerDep):
        return (await container.repository.get(order_id)).to_dict()

    @app.patch("/api/pedidos/{order_id}")
    async def update_order(order_id: int, container: ContainerDep, patch: dict[str, Any] = Body(...)):
        before = await container.repository.get(order_id)
        order = await container.repository.update(order_id, patch)
        if order.status == OrderStatus.READY_FOR_PICKUP and before.status != OrderStatus.READY_FOR_PICKUP:
            await dispatch(container.notifier, "order_ready", order)
        return order.to_dict()

    @app.post("/api/pedidos/{order_id}/notify")
    async def notify_order(order_id: int, container: ContainerDep):
        order = await container.repository.get(order_id)
        event = "order_ready" if order.status == OrderStatus.READY_FOR_PICKUP else "order_paid"
        sent = await dispatch(container.notifier, event, order)
        return {"ok": sent, "event": event, "orderId": order.id}

    # ---- checkout and payment events ----

    @app.post("/api/create-checkout-session")
    async def create_checkout_session(body: CheckoutSessionIn, container: ContainerDep):
        if not body.customer_name.strip() or not body.email:
            raise ValidationError("MISSING_CHECKOUT_DATA", "cliente, email and items are required")
        items = coerce_items(body.items)
        if not items:
            raise ValidationError("EMPTY_ITEMS", "order requires at least one item")
        session = await container.processor.create_checkout_session(items, body.customer_name, body.email)
        order_id = None
        try:
            order = await container.reconciler.create_provisional(
                session.id, body.customer_name, body.email, items, body.note
            )
            order_id = order.id
        except OrderError as e:
            # the payment confirmation recreates the order from the session
            logger.error(
                "provisional order not stored",
                extra={"external_id": session.id, "kind": e.kind, "code": e.code},
            )
        return CheckoutSessionOut(id=session.id, url=session.url, order_id=order_id).model_dump(by_alias=True)

    async def _webhook(request: Request, container: Container, stripe_signature: Optional[str]):
        payload = await request.body()
        event = construct_event(
            payload,
            stripe_signature,
            container.settings.stripe_webhook_secret,
            tolerance=container.settings.webhook_tolerance_secs,
        )
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        handlers = {
            "checkout.session.completed": container.reconciler.handle_checkout_completed,
            "payment_intent.succeeded": container.reconciler.handle_payment_intent_succeeded,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info("webhook event ignored", extra={"event_type": event_type})
            return {"received": True}
        try:
            order = await handler(obj)
        except ValidationError as e:
            # a redelivery of the same payload cannot succeed; acknowledge it
            logger.error(
                "webhook event not reconciled",
                extra={"event_type": event_type, "external_id": obj.get("id"), "code": e.code},
            )
            return {"received": True}
        return {"received": True, "orderId": order.id}

    @app.post("/webhook")
    async def webhook(
        request: Request,
        container: ContainerDep,
        stripe_signature: Annotated[Optional[str], Header(alias="Stripe-Signature")] = None,
    ):
        return await _webhook(request, container, stripe_signature)

    @app.post("/stripe-webhook-mobile-app")
    async def webhook_mobile(
        request: Request,
        container: ContainerDep,
        stripe_signature: Annotated[Optional[str], Header(alias="Stripe-Signature")] = None,
    ):
        return await _webhook(request, container, stripe_signature)

    @app.post("/admin/simulate-payment")
    async def simulate_payment(body: SimulatePaymentIn, container: ContainerDep):
        order = await container.reconciler.simulate_payment(body.session_id, body.metadata, body.items)
        return {"status": "ok", "order": order.to_dict()}

    # ---- archives ----

    @app.post("/api/admin/archive-today")
    async def archive_today(
        container: ContainerDep,
        actor: Annotated[Optional[str], Header(alias="X-Admin-Actor")] = None,
    ):
        result = await container.archive.archive_today(actor or "admin")
        return result.to_dict()

    @app.get("/api/admin/archives")
    async def list_archives(container: ContainerDep):
        return [a.to_dict() for a in await container.archive.list_archives()]

    @app.get("/api/admin/archives/{day}")
    async def get_archive(day: str, container: ContainerDep):
        return (await container.archive.get_archive(day)).to_dict()

    @app.delete("/api/admin/archives/{day}")
    async def delete_archive(day: str, container: ContainerDep):
        await container.archive.delete_archive(day)
        return {"ok": True, "date": day}

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())
