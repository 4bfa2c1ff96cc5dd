"""API tests through FastAPI's TestClient.

The app runs on the flat-file backend in a temporary directory, with the
in-process processor and notifier stubs from ``cafe_orders.adapters``.
"""

import json
import time

import stripe

ORDERS_URL = "/api/pedidos"


def _create(client, **overrides):
    payload = {"customerName": "Ana", "items": [{"name": "Café", "price": 1500, "qty": 2}], "paymentMethod": "cash"}
    payload.update(overrides)
    return client.post(ORDERS_URL, json=payload)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.headers["X-Request-ID"]


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"


def test_create_and_read_order(client):
    r = _create(client, total=1)
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "pending_payment"
    assert body["total"] == 3000
    assert client.get(f"{ORDERS_URL}/{body['id']}").json() == body
    assert [o["id"] for o in client.get(ORDERS_URL).json()] == [body["id"]]


def test_create_order_with_legacy_field_names(client):
    r = client.post(
        ORDERS_URL,
        json={"cliente": "Pía", "items": [{"nombre": "Té", "precio": 1000, "cantidad": 1}], "metodoPago": "efectivo"},
    )
    assert r.status_code == 201
    assert r.json()["customerName"] == "Pía"
    assert r.json()["paymentMethod"] == "cash"


def test_create_order_validation_errors(client):
    r = _create(client, customerName="")
    assert r.status_code == 400
    assert r.json() == {
        "kind": "VALIDATION_ERROR",
        "code": "EMPTY_CUSTOMER",
        "detail": "order requires a customer name",
    }
    assert _create(client, items=[]).json()["code"] == "EMPTY_ITEMS"
    assert _create(client, items="Café").status_code == 400
    assert client.get(ORDERS_URL).json() == []


def test_list_filters(client):
    _create(client)
    _create(client, customerName="Luis", paymentMethod="card")
    assert [o["customerName"] for o in client.get(ORDERS_URL, params={"status": "pending"}).json()] == ["Luis"]
    r = client.get(ORDERS_URL, params={"status": "nope"})
    assert r.status_code == 400 and r.json()["code"] == "UNKNOWN_STATUS"


def test_patch_to_ready_notifies(client, notifier):
    order = _create(client).json()
    r = client.patch(f"{ORDERS_URL}/{order['id']}", json={"status": "ready_for_pickup"})
    assert r.status_code == 200
    assert r.json()["status"] == "ready_for_pickup"
    assert notifier.sent == [("order_ready", order["id"])]


def test_patch_errors(client):
    order = _create(client).json()
    assert client.patch(f"{ORDERS_URL}/999", json={"status": "paid"}).status_code == 404
    r = client.patch(f"{ORDERS_URL}/{order['id']}", json={"status": "archived"})
    assert r.status_code == 400 and r.json()["code"] == "ARCHIVE_VIA_ARCHIVE_ONLY"
    assert client.patch(f"{ORDERS_URL}/{order['id']}", json=[1, 2]).status_code == 400


def test_get_unknown_order(client):
    r = client.get(f"{ORDERS_URL}/12345")
    assert r.status_code == 404
    assert r.json()["kind"] == "NOT_FOUND"


def test_notify_endpoint(client, notifier):
    order = _create(client).json()
    r = client.post(f"{ORDERS_URL}/{order['id']}/notify")
    assert r.json() == {"ok": True, "event": "order_paid", "orderId": order["id"]}
    assert notifier.sent == [("order_paid", order["id"])]


def test_checkout_session_then_webhook(client, processor, notifier):
    """Provisional order at checkout, settled by the completion event."""
    r = client.post(
        "/api/create-checkout-session",
        json={"cliente": "Luis", "email": "l@x.com", "items": [{"nombre": "Té", "precio": 1000, "cantidad": 1}]},
    )
    assert r.status_code == 200
    session_id = r.json()["id"]
    assert r.json()["url"]
    provisional = client.get(ORDERS_URL, params={"sessionId": session_id}).json()
    assert [o["status"] for o in provisional] == ["awaiting_external_payment"]

    event = {"type": "checkout.session.completed", "data": {"object": {"id": session_id, "metadata": {}}}}
    for _ in range(2):
        r = client.post("/webhook", content=json.dumps(event))
        assert r.status_code == 200 and r.json()["received"] is True

    orders = client.get(ORDERS_URL, params={"externalId": session_id}).json()
    assert len(orders) == 1
    assert orders[0]["status"] == "paid"
    assert orders[0]["total"] == 1000
    assert notifier.sent == [("order_paid", orders[0]["id"])]


def test_checkout_session_requires_data(client):
    r = client.post("/api/create-checkout-session", json={"cliente": "Luis", "items": []})
    assert r.status_code == 400


def test_checkout_session_processor_down(client, processor):
    processor.available = False
    r = client.post(
        "/api/create-checkout-session",
        json={"cliente": "Luis", "email": "l@x.com", "items": [{"nombre": "Té", "precio": 1000, "cantidad": 1}]},
    )
    assert r.status_code == 503
    assert r.json()["kind"] == "PROCESSOR_UNAVAILABLE"


def test_webhook_signature_enforced(client):
    client.app.state.container.settings.stripe_webhook_secret = "whsec_test"
    payload = json.dumps({"type": "checkout.session.completed", "data": {"object": {"id": "cs_sig"}}}).encode()
    bad = client.post("/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=00"})
    assert bad.status_code == 400 and bad.json()["code"] == "INVALID_SIGNATURE"

    ts = int(time.time())
    signature = stripe.WebhookSignature._compute_signature(f"{ts}.{payload.decode()}", "whsec_test")
    header = f"t={ts},v1={signature}"
    ok = client.post("/webhook", content=payload, headers={"Stripe-Signature": header})
    assert ok.status_code == 200
    assert client.get(ORDERS_URL, params={"externalId": "cs_sig"}).json()[0]["status"] == "paid"


def test_webhook_ignores_other_events(client):
    r = client.post("/webhook", content=json.dumps({"type": "charge.refunded", "data": {"object": {}}}))
    assert r.json() == {"received": True}


def test_mobile_payment_intent_webhook(client):
    pedido = {"clientName": "Sofía", "items": [{"name": "Café", "price": 1500, "qty": 1}], "amount": 1500}
    event = {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1", "metadata": {"pedido": json.dumps(pedido)}}}}
    r = client.post("/stripe-webhook-mobile-app", content=json.dumps(event))
    assert r.status_code == 200
    order = client.get(f"{ORDERS_URL}/{r.json()['orderId']}").json()
    assert order["paymentIntentId"] == "pi_1"
    assert order["customerName"] == "Sofía"


def test_payment_intent_with_unusable_metadata_is_acknowledged(client, caplog):
    """The sender gets a 2xx so it stops redelivering; the failure is logged."""
    event = {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_bad", "metadata": {}}}}
    r = client.post("/stripe-webhook-mobile-app", content=json.dumps(event))
    assert r.status_code == 200
    assert r.json() == {"received": True}
    assert "webhook event not reconciled" in caplog.text
    assert client.get(ORDERS_URL, params={"externalId": "pi_bad"}).json() == []

    partial = {"clientName": "Sofía", "items": []}
    event["data"]["object"]["metadata"] = {"pedido": json.dumps(partial)}
    assert client.post("/webhook", content=json.dumps(event)).json() == {"received": True}


def test_webhook_bad_payload_is_still_rejected(client):
    r = client.post("/webhook", content=b"not json")
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_PAYLOAD"


def test_simulate_payment(client):
    r = client.post(
        "/admin/simulate-payment",
        json={"sessionId": "cs_sim", "metadata": {"cliente": "Ana"}, "items": [{"nombre": "Té", "precio": 1000}]},
    )
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "paid"
    assert r.json()["order"]["customerName"] == "Ana"
    assert client.post("/admin/simulate-payment", json={"metadata": {}}).status_code == 400


def test_archive_flow(client):
    assert client.post("/api/admin/archive-today").json()["archivedCount"] == 0
    _create(client)
    _create(client, customerName="Luis")
    r = client.post("/api/admin/archive-today", headers={"X-Admin-Actor": "ana"})
    assert r.status_code == 200
    result = r.json()
    assert result["archivedCount"] == 2
    day = result["archiveRef"]
    assert client.get(ORDERS_URL).json() == []

    archives = client.get("/api/admin/archives").json()
    assert archives[0]["date"] == day and archives[0]["count"] == 2 and archives[0]["archivedBy"] == "ana"
    unit = client.get(f"/api/admin/archives/{day}").json()
    assert sorted(o["customerName"] for o in unit["orders"]) == ["Ana", "Luis"]
    assert {o["status"] for o in unit["orders"]} == {"archived"}

    assert client.delete(f"/api/admin/archives/{day}").status_code == 200
    assert client.get(f"/api/admin/archives/{day}").status_code == 404


def test_archive_malformed_date(client):
    r = client.get("/api/admin/archives/2024-13-40")
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_DATE"
    assert client.delete("/api/admin/archives/not-a-date").status_code == 400
