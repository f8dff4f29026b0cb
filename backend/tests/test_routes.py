"""
Route-level tests over ASGI with the in-memory DB and fake gateways.

Walks the buyer journey end to end: cart -> order -> checkout -> confirmation
(redirect and webhook) -> downloads.
"""
import json

import pytest


def webhook(client, provider: str, body: dict, signature: str = "valid"):
    return client.post(
        f"/payments/{provider}/webhook",
        content=json.dumps(body),
        headers={"x-fake-signature": signature, "content-type": "application/json"},
    )


@pytest.fixture
async def pending_order(client, auth_headers, product_a, product_b):
    """Cart of $25 x1 + $10 x2 turned into a PENDING stripe order."""
    await client.post("/cart", json={"productId": product_a.id, "quantity": 1}, headers=auth_headers)
    await client.post("/cart", json={"productId": product_b.id, "quantity": 2}, headers=auth_headers)
    resp = await client.post("/orders", json={"paymentMethod": "stripe"}, headers=auth_headers)
    assert resp.status_code == 201
    return resp.json()["data"]


class TestHealth:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_health_returns_200(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database_connected"] is True


class TestCart:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_requires_auth(self, client):
        response = await client.get("/cart")
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "unauthorized"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_cookie_auth_accepted(self, client, auth_headers):
        token = auth_headers["Authorization"].split(" ", 1)[1]
        response = await client.get("/cart", headers={"Cookie": f"auth-token={token}"})
        assert response.status_code == 200

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_add_update_remove(self, client, auth_headers, product_a, product_b):
        a_id, b_id = product_a.id, product_b.id

        resp = await client.post("/cart", json={"productId": a_id}, headers=auth_headers)
        assert resp.status_code == 200
        resp = await client.post("/cart", json={"productId": a_id, "quantity": 2}, headers=auth_headers)
        assert resp.json()["data"]["items"][0]["quantity"] == 3

        await client.post("/cart", json={"productId": b_id}, headers=auth_headers)
        resp = await client.put(f"/cart/{a_id}", json={"quantity": 1}, headers=auth_headers)
        data = resp.json()["data"]
        assert data["totalCents"] == 3500
        assert data["itemCount"] == 2

        resp = await client.put(f"/cart/{a_id}", json={"quantity": 0}, headers=auth_headers)
        assert [i["productId"] for i in resp.json()["data"]["items"]] == [b_id]

        resp = await client.delete(f"/cart/{b_id}", headers=auth_headers)
        assert resp.json()["data"]["items"] == []

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unknown_product_404(self, client, auth_headers):
        resp = await client.post("/cart", json={"productId": 9999}, headers=auth_headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "notfound"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_invalid_quantity_422(self, client, auth_headers, product_a):
        resp = await client.post("/cart", json={"productId": product_a.id, "quantity": 0}, headers=auth_headers)
        assert resp.status_code == 422
        assert resp.json()["success"] is False

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_clear(self, client, auth_headers, product_a, product_b):
        await client.post("/cart", json={"productId": product_a.id}, headers=auth_headers)
        await client.post("/cart", json={"productId": product_b.id}, headers=auth_headers)
        resp = await client.delete("/cart", headers=auth_headers)
        assert resp.json()["data"]["removed"] == 2


class TestOrders:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_empty_cart_rejected(self, client, auth_headers):
        resp = await client.post("/orders", json={"paymentMethod": "stripe"}, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "emptycart"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_create_order_snapshot(self, client, pending_order):
        assert pending_order["status"] == "PENDING"
        assert pending_order["totalCents"] == 4500
        assert sorted((i["quantity"], i["unitPriceCents"]) for i in pending_order["items"]) == [(1, 2500), (2, 1000)]

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unsupported_payment_method(self, client, auth_headers, product_a):
        await client.post("/cart", json={"productId": product_a.id}, headers=auth_headers)
        resp = await client.post("/orders", json={"paymentMethod": "cash"}, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_list_and_detail(self, client, auth_headers, pending_order):
        resp = await client.get("/orders", headers=auth_headers)
        body = resp.json()
        assert body["meta"]["total"] == 1
        assert body["data"][0]["id"] == pending_order["id"]

        resp = await client.get(f"/orders/{pending_order['id']}", headers=auth_headers)
        assert resp.json()["data"]["totalCents"] == 4500

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_other_buyer_cannot_see_order(self, client, pending_order, other_auth_headers):
        resp = await client.get(f"/orders/{pending_order['id']}", headers=other_auth_headers)
        assert resp.status_code == 404


class TestCheckoutAndConfirmation:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_checkout_returns_session(self, client, auth_headers, pending_order, fake_gateways):
        resp = await client.post("/payments/stripe/checkout", json={"orderId": pending_order["id"]}, headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["reference"] == f"stripe_session_{pending_order['id']}"
        assert data["redirectUrl"].startswith("https://pay.example.test/stripe/")
        assert fake_gateways["stripe"].initiated == [pending_order["id"]]

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_checkout_wrong_provider(self, client, auth_headers, pending_order):
        resp = await client.post("/payments/paypal/checkout", json={"orderId": pending_order["id"]}, headers=auth_headers)
        assert resp.status_code == 400

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unknown_provider(self, client, auth_headers, pending_order):
        resp = await client.post("/payments/venmo/checkout", json={"orderId": pending_order["id"]}, headers=auth_headers)
        assert resp.status_code == 404

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_redirect_confirmation_completes(self, client, auth_headers, pending_order, fake_gateways):
        order_id = pending_order["id"]
        await client.post("/payments/stripe/checkout", json={"orderId": order_id}, headers=auth_headers)

        resp = await client.post("/payments/stripe/confirm", json={"orderId": order_id}, headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["order"]["status"] == "COMPLETED"
        assert data["alreadyProcessed"] is False
        assert len(data["downloads"]) == 2
        assert fake_gateways["stripe"].captured == [(order_id, f"stripe_session_{order_id}")]

        cart = await client.get("/cart", headers=auth_headers)
        assert cart.json()["data"]["items"] == []

        downloads = await client.get("/downloads", headers=auth_headers)
        listed = downloads.json()["data"]
        assert len(listed) == 2
        assert all(d["remainingDays"] == 15 and d["maxDownloads"] == 10 for d in listed)

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_confirm_without_reference(self, client, auth_headers, pending_order):
        resp = await client.post("/payments/stripe/confirm", json={"orderId": pending_order["id"]}, headers=auth_headers)
        assert resp.status_code == 400

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_webhook_then_redirect_is_idempotent(self, client, auth_headers, pending_order):
        order_id = pending_order["id"]
        body = {"kind": "SUCCEEDED", "order_id": order_id, "transaction_id": "pi_hook", "amount_cents": 4500}

        first = await webhook(client, "stripe", body)
        assert first.status_code == 200
        assert first.json()["data"] == {"received": True, "processed": True, "orderId": order_id, "status": "COMPLETED"}

        repeat = await webhook(client, "stripe", body)
        assert repeat.json()["data"]["processed"] is False

        resp = await client.post(
            "/payments/stripe/confirm", json={"orderId": order_id, "reference": "cs_x"}, headers=auth_headers
        )
        assert resp.json()["data"]["alreadyProcessed"] is True

        downloads = await client.get("/downloads", headers=auth_headers)
        assert len(downloads.json()["data"]) == 2

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_webhook_bad_signature(self, client, pending_order):
        resp = await webhook(client, "stripe", {"kind": "SUCCEEDED", "order_id": pending_order["id"]}, signature="forged")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "providerverification"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_failure_webhook_cancels_then_confirm_conflicts(self, client, auth_headers, pending_order):
        order_id = pending_order["id"]
        resp = await webhook(client, "stripe", {"kind": "FAILED", "order_id": order_id, "reason": "expired"})
        assert resp.json()["data"]["status"] == "CANCELLED"

        late = await webhook(client, "stripe", {"kind": "SUCCEEDED", "order_id": order_id, "transaction_id": "pi_late"})
        assert late.status_code == 200
        assert late.json()["data"]["processed"] is False

        resp = await client.post(
            "/payments/stripe/confirm", json={"orderId": order_id, "reference": "cs_x"}, headers=auth_headers
        )
        assert resp.status_code == 409

        cart = await client.get("/cart", headers=auth_headers)
        assert len(cart.json()["data"]["items"]) == 2

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_webhook_burst_is_not_throttled(self, client, pending_order):
        for n in range(150):
            resp = await webhook(client, "stripe", {"kind": "IGNORED", "order_id": pending_order["id"], "type": f"evt.{n}"})
            assert resp.status_code == 200

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_repeated_forged_webhooks_are_throttled(self, client, pending_order):
        body = {"kind": "SUCCEEDED", "order_id": pending_order["id"], "transaction_id": "pi_forged"}
        for _ in range(20):
            resp = await webhook(client, "stripe", body, signature="forged")
            assert resp.status_code == 400

        resp = await webhook(client, "stripe", body, signature="forged")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "ratelimit"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_ignored_webhook(self, client, pending_order):
        resp = await webhook(client, "paypal", {"kind": "IGNORED", "order_id": pending_order["id"]})
        assert resp.json()["data"] == {"received": True, "processed": False}


class TestDownloads:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_redeem_until_limit(self, client, auth_headers, pending_order):
        order_id = pending_order["id"]
        await webhook(client, "stripe", {"kind": "SUCCEEDED", "order_id": order_id, "transaction_id": "pi_1"})
        token = (await client.get("/downloads", headers=auth_headers)).json()["data"][0]["token"]

        for n in range(10):
            resp = await client.get(f"/download/{token}")
            assert resp.status_code == 200
            assert resp.headers["content-type"] == "application/pdf"
            assert resp.headers["content-disposition"].startswith('attachment; filename="')
            assert resp.headers["x-downloads-remaining"] == str(9 - n)

        resp = await client.get(f"/download/{token}")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "limitexceeded"
        assert resp.json()["error"]["details"] == {"download_count": 10, "max_downloads": 10}

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unknown_token_404(self, client):
        resp = await client.get("/download/" + "a" * 64)
        assert resp.status_code == 404

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_owner_can_deactivate(self, client, auth_headers, other_auth_headers, pending_order):
        await webhook(client, "stripe", {"kind": "SUCCEEDED", "order_id": pending_order["id"], "transaction_id": "pi_1"})
        first = (await client.get("/downloads", headers=auth_headers)).json()["data"][0]

        resp = await client.post(f"/downloads/{first['id']}/deactivate", headers=other_auth_headers)
        assert resp.status_code == 404

        resp = await client.post(f"/downloads/{first['id']}/deactivate", headers=auth_headers)
        assert resp.json()["data"]["isActive"] is False

        resp = await client.get(f"/download/{first['token']}")
        assert resp.status_code == 404

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_redeem_is_rate_limited(self, client):
        for _ in range(30):
            await client.get("/download/" + "b" * 64)
        resp = await client.get("/download/" + "c" * 64)
        assert resp.status_code == 429
