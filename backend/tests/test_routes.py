"""
Tests for API route endpoints.

Tests: envelope format, auth on protected endpoints, and the
cart → checkout → payment → delivery flow over HTTP.
"""
import hashlib
import hmac
import json

import pytest

from config import settings
from tests.conftest import AGENT_X, AGENT_Y, BUYER_ID, SELLER_A


def _signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    signature = hmac.new(settings.webhook_secret.encode(), body, hashlib.sha512).hexdigest()
    return body, {"x-paystack-signature": signature, "Content-Type": "application/json"}


class TestHealthEndpoint:
    """Tests for GET /health."""

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_health_returns_200(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["database_connected"] is True

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_fulfillment_status(self, client):
        response = await client.get("/fulfillment/status")
        assert response.status_code == 200
        body = response.json()
        assert "eventBus" in body and "metrics" in body


class TestEnvelope:
    """Error envelope and auth on protected endpoints."""

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_protected_endpoint_requires_token(self, client):
        response = await client.get("/cart")
        assert response.status_code == 401
        assert response.json()["success"] is False

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_domain_error_code_from_class_name(self, client, auth_headers, products):
        response = await client.post("/cart/checkout", json={"deliveryOption": "pickup"}, headers=auth_headers(BUYER_ID))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "empty_cart"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_request_validation_is_wrapped(self, client, auth_headers):
        response = await client.post("/cart/items", json={"productId": 0}, headers=auth_headers(BUYER_ID))
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "request_validation"


class TestFulfillmentFlow:
    """End-to-end over HTTP with the fake gateway."""

    async def _checkout_and_pay(self, client, auth_headers, products, delivery_option="delivery"):
        buyer = auth_headers(BUYER_ID)
        r = await client.post("/cart/items", json={"productId": products["a1"], "quantity": 2}, headers=buyer)
        assert r.status_code == 200
        r = await client.post("/cart/items", json={"productId": products["b1"]}, headers=buyer)
        assert r.status_code == 200

        r = await client.post(
            "/cart/checkout",
            json={"deliveryOption": delivery_option, "sellerId": SELLER_A, "deliveryHallId": 2, "deliveryRoomNumber": "D4"},
            headers=buyer,
        )
        assert r.status_code == 200
        checkout = r.json()["data"]

        r = await client.post(
            "/payments/initialize",
            json={"amount": checkout["total_amount"], "email": "buyer@campus.test", "checkoutBatchId": checkout["checkout_batch_id"]},
            headers=buyer,
        )
        assert r.status_code == 200
        return checkout, r.json()["data"]

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_checkout_leaves_other_seller_in_cart(self, client, auth_headers, products):
        await self._checkout_and_pay(client, auth_headers, products, delivery_option="pickup")

        r = await client.get("/cart", headers=auth_headers(BUYER_ID))
        sellers = r.json()["data"]["sellers"]
        assert [s["seller_id"] for s in sellers] != [SELLER_A]
        assert len(sellers) == 1

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_webhook_signature_rejected(self, client, auth_headers, products):
        _, payment = await self._checkout_and_pay(client, auth_headers, products)
        body, headers = _signed({"event": "charge.success", "data": {"reference": payment["reference"]}})
        headers["x-paystack-signature"] = "deadbeef"

        r = await client.post("/payments/webhook", content=body, headers=headers)
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "invalid_signature"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_webhook_non_ascii_signature_header_is_401(self, client, auth_headers, products):
        _, payment = await self._checkout_and_pay(client, auth_headers, products)
        body, headers = _signed({"event": "charge.success", "data": {"reference": payment["reference"]}})
        headers["x-paystack-signature"] = "é".encode("latin-1") * 128

        r = await client.post("/payments/webhook", content=body, headers=headers)
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "invalid_signature"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_webhook_mismatch_is_409(self, client, auth_headers, products):
        _, payment = await self._checkout_and_pay(client, auth_headers, products)
        body, headers = _signed(
            {
                "event": "charge.success",
                "data": {"reference": payment["reference"], "amount": 1, "metadata": {"buyer_id": BUYER_ID}},
            }
        )
        r = await client.post("/payments/webhook", content=body, headers=headers)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "payment_mismatch"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_full_flow_to_delivered(self, client, auth_headers, products, fake_gateway):
        checkout, payment = await self._checkout_and_pay(client, auth_headers, products)
        buyer = auth_headers(BUYER_ID)

        body, headers = _signed(
            {
                "event": "charge.success",
                "data": {
                    "reference": payment["reference"],
                    "amount": payment["amount"],
                    "currency": "GHS",
                    "metadata": json.dumps({"buyer_id": BUYER_ID}),
                },
            }
        )
        r = await client.post("/payments/webhook", content=body, headers=headers)
        assert r.status_code == 200
        assert r.json()["data"]["processed"] is True

        r = await client.get("/payments/verify", params={"reference": payment["reference"]}, headers=buyer)
        assert r.json()["data"]["already_verified"] is True

        agent_x = auth_headers(AGENT_X, role="delivery", delivery_approved=True)
        agent_y = auth_headers(AGENT_Y, role="delivery", delivery_approved=True)
        r = await client.get("/deliveries/available", headers=agent_x)
        jobs = r.json()["data"]
        assert len(jobs) == 1
        delivery_id = jobs[0]["id"]

        r = await client.post(f"/deliveries/{delivery_id}/accept", headers=agent_x)
        assert r.status_code == 200
        r = await client.post(f"/deliveries/{delivery_id}/accept", headers=agent_y)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "already_assigned"

        r = await client.post(f"/deliveries/{delivery_id}/complete", headers=agent_y)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "not_assigned_agent"

        r = await client.post(f"/deliveries/{delivery_id}/complete", headers=agent_x)
        assert r.status_code == 200

        order_id = checkout["orders"][0]["id"]
        r = await client.get(f"/orders/{order_id}", headers=buyer)
        data = r.json()["data"]
        assert data["status"] == "delivered"
        assert data["delivery"]["status"] == "completed"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unapproved_agent_gets_403(self, client, auth_headers, products):
        r = await client.post("/deliveries/1/accept", headers=auth_headers(AGENT_X, role="delivery"))
        assert r.status_code == 403
        assert r.json()["error"]["code"] == "role_not_approved"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_student_cannot_see_job_board(self, client, auth_headers):
        r = await client.get("/deliveries/available", headers=auth_headers(BUYER_ID))
        assert r.status_code == 403
