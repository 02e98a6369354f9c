"""
Integration tests through the HTTP API.
"""
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict

import pytest
from httpx import AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from service_payments.core.ledger import utcnow
from service_payments.database.models import PaymentLink

SERVICE_REQUEST = {
    "userName": "Aisha Khan",
    "userEmail": "aisha@example.com",
    "userPhone": "+971500000000",
    "serviceName": "AC Maintenance",
    "categoryName": "Home Services",
    "requestType": "Scheduled",
    "requestedDate": "2026-11-02T09:00:00Z",
    "address": "Marina Walk, Dubai",
    "totalPrice": 5000,
    "paymentMethod": "Online Payment",
}


async def submit_order(client: AsyncClient, **overrides: Any) -> str:
    response = await client.post("/api/service-requests", json={**SERVICE_REQUEST, **overrides})
    assert response.status_code == 201, response.text
    return response.json()["content"]["id"]


async def generate_link(client: AsyncClient, headers: Dict[str, str], order_id: str, **body: Any) -> Dict[str, Any]:
    response = await client.post(
        "/api/admin/payments/generate-link",
        json={"orderId": order_id, **body},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()["content"]


class TestFullPaymentFlow:
    """End-to-end order payment through a link."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_5000_aed_order_paid_through_link(
        self,
        client: AsyncClient,
        admin_headers: Dict[str, str],
        gateway_response: Callable[..., str],
    ) -> None:
        order_id = await submit_order(client)

        before = utcnow()
        link = await generate_link(client, admin_headers, order_id)
        assert re.fullmatch(r"[0-9a-f]{64}", link["token"])
        assert link["amount"] == 5000.0
        assert link["currency"] == "AED"
        assert link["emailSent"] is True
        expires_at = datetime.fromisoformat(link["expiresAt"])
        assert timedelta(hours=47, minutes=59) < expires_at - before <= timedelta(hours=48, minutes=1)

        details = await client.get(f"/api/payments/link/{link['token']}")
        assert details.status_code == 200
        assert details.json()["content"]["alreadyPaid"] is False

        initiated = await client.post(f"/api/payments/link/{link['token']}/initiate")
        assert initiated.status_code == 200, initiated.text
        payment = initiated.json()["content"]
        assert payment["encRequest"]
        assert payment["access_code"] == "AVTEST00KL12AB34CD"
        assert payment["orderId"] == order_id
        assert payment["amount"] == 5000.0
        assert payment["paymentUrl"].startswith("https://")

        callback = await client.post(
            "/api/payments/callback",
            data={"encResponse": gateway_response(order_id, merchant_param1=order_id, merchant_param2="full")},
        )
        assert callback.status_code == 200
        assert "text/html" in callback.headers["content-type"]
        assert "https://app.example.test/payment/success?" in callback.text

        status = await client.get(f"/api/payments/status/{order_id}")
        content = status.json()["content"]
        assert content["paymentStatus"] == "Success"
        assert content["paymentDetails"]["transactionId"] == "310009876543"
        assert content["totalPrice"] == 5000.0

        details = await client.get(f"/api/payments/link/{link['token']}")
        assert details.json()["content"]["alreadyPaid"] is True

        again = await client.post(f"/api/payments/link/{link['token']}/initiate")
        assert again.status_code == 400
        assert again.json()["exception"] == "PAYMENT_ALREADY_COMPLETED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_link_rejected(
        self,
        client: AsyncClient,
        admin_headers: Dict[str, str],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        order_id = await submit_order(client)
        link = await generate_link(client, admin_headers, order_id, expiryHours=1)

        async with session_factory() as session:
            await session.execute(
                update(PaymentLink)
                .where(PaymentLink.token == link["token"])
                .values(expires_at=utcnow() - timedelta(minutes=5))
            )
            await session.commit()

        details = await client.get(f"/api/payments/link/{link['token']}")
        assert details.status_code == 400
        body = details.json()
        assert body["success"] is False
        assert body["exception"] == "LINK_EXPIRED"

        initiated = await client.post(f"/api/payments/link/{link['token']}/initiate")
        assert initiated.status_code == 400
        assert initiated.json()["exception"] == "LINK_EXPIRED"

        status = await client.get(f"/api/admin/payments/link-status/{order_id}", headers=admin_headers)
        assert status.json()["content"]["isExpired"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cash_on_delivery_order_cannot_get_link(
        self, client: AsyncClient, admin_headers: Dict[str, str]
    ) -> None:
        order_id = await submit_order(client, paymentMethod="Cash On Delivery")

        response = await client.post(
            "/api/admin/payments/generate-link", json={"orderId": order_id}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["exception"] == "INVALID_PAYMENT_METHOD"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_direct_initiation_and_cancel(self, client: AsyncClient) -> None:
        order_id = await submit_order(client)

        initiated = await client.post("/api/payments/initiate", json={"serviceRequestId": order_id})
        assert initiated.status_code == 200, initiated.text

        cancelled = await client.get("/api/payments/cancel", params={"orderId": order_id})
        assert cancelled.status_code == 200
        assert "/payment/cancelled?orderId=" in cancelled.text

        status = await client.get(f"/api/payments/status/{order_id}")
        assert status.json()["content"]["paymentStatus"] == "Cancelled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_without_order_id(self, client: AsyncClient) -> None:
        response = await client.get("/api/payments/cancel")
        assert response.status_code == 400
        assert response.json()["exception"] == "MISSING_ORDER_ID"


class TestCallbackEndpoint:
    """Callback requests always end in a browser redirect."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_undecryptable_payload(self, client: AsyncClient) -> None:
        response = await client.post("/api/payments/callback", data={"encResponse": "zz-not-hex"})
        assert response.status_code == 400
        assert "text/html" in response.headers["content-type"]
        assert "/payment/failure?reason=DECRYPTION_ERROR" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_payload(self, client: AsyncClient) -> None:
        response = await client.post("/api/payments/callback", data={"orderNo": "1"})
        assert response.status_code == 400
        assert "/payment/failure?reason=MISSING_PAYMENT_RESPONSE" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_response_without_order_id(
        self, client: AsyncClient, gateway_response: Callable[..., str]
    ) -> None:
        response = await client.post(
            "/api/payments/callback", data={"encResponse": gateway_response("")}
        )
        assert response.status_code == 400
        assert "/payment/failure?reason=ORDER_ID_NOT_FOUND" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_response_for_unknown_order(
        self, client: AsyncClient, gateway_response: Callable[..., str]
    ) -> None:
        response = await client.post(
            "/api/payments/callback",
            data={"encResponse": gateway_response(str(uuid.uuid4()))},
        )
        assert response.status_code == 404
        assert "/payment/failure?reason=SERVICE_REQUEST_NOT_FOUND" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_query_string_callback_accepted(
        self, client: AsyncClient, gateway_response: Callable[..., str]
    ) -> None:
        order_id = await submit_order(client)

        response = await client.get(
            "/api/payments/callback",
            params={"encResp": gateway_response(order_id, order_status="Aborted")},
        )

        assert "/payment/failure?" in response.text
        status = await client.get(f"/api/payments/status/{order_id}")
        assert status.json()["content"]["paymentStatus"] == "Failure"


class TestMilestoneFlow:
    """Milestone payments through the HTTP API."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sequential_milestone_payment(
        self,
        client: AsyncClient,
        admin_headers: Dict[str, str],
        gateway_response: Callable[..., str],
    ) -> None:
        order_id = await submit_order(client)
        created = await client.post(
            f"/api/service-requests/{order_id}/milestones",
            json={
                "milestones": [
                    {"name": "Deposit", "percentage": 30},
                    {"name": "Completion", "percentage": 70},
                ]
            },
            headers=admin_headers,
        )
        assert created.status_code == 201, created.text
        deposit, completion = created.json()["content"]["milestones"]

        blocked = await client.post(
            f"/api/service-requests/{order_id}/milestones/{completion['id']}/payment-link",
            json={},
            headers=admin_headers,
        )
        assert blocked.status_code == 400
        assert blocked.json()["exception"] == "PREVIOUS_MILESTONE_UNPAID"

        link = await client.post(
            f"/api/service-requests/{order_id}/milestones/{deposit['id']}/payment-link",
            headers=admin_headers,
        )
        assert link.status_code == 200, link.text
        token = link.json()["content"]["token"]

        details = await client.get(f"/api/milestones/payment-link/{token}")
        assert details.json()["content"]["canPay"] is True

        initiated = await client.post(f"/api/milestones/payment-link/{token}/initiate")
        assert initiated.status_code == 200, initiated.text
        payment = initiated.json()["content"]
        assert payment["orderId"] == f"{order_id}-M1"
        assert payment["amount"] == 1500.0

        callback = await client.post(
            "/api/payments/callback",
            data={"encResponse": gateway_response(f"{order_id}-M1", amount="1500.00")},
        )
        assert "/payment/success?" in callback.text
        assert "milestoneName=Deposit" in callback.text

        listing = await client.get(f"/api/service-requests/{order_id}/milestones", headers=admin_headers)
        content = listing.json()["content"]
        assert content["overallPaymentStatus"] == "Partially Paid (1/2)"

        unblocked = await client.post(
            f"/api/service-requests/{order_id}/milestones/{completion['id']}/payment-link",
            json={"expiryHours": 24},
            headers=admin_headers,
        )
        assert unblocked.status_code == 200, unblocked.text
        assert unblocked.json()["content"]["expiryHours"] == 24

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_token_is_not_a_milestone_token(
        self, client: AsyncClient, admin_headers: Dict[str, str]
    ) -> None:
        order_id = await submit_order(client)
        link = await generate_link(client, admin_headers, order_id)

        response = await client.get(f"/api/milestones/payment-link/{link['token']}")
        assert response.status_code == 404
        assert response.json()["exception"] == "INVALID_PAYMENT_LINK"


class TestApiSurface:
    """Authentication, validation and monitoring endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_key_required(self, client: AsyncClient) -> None:
        missing = await client.post("/api/admin/payments/generate-link", json={"orderId": "x"})
        assert missing.status_code == 401
        assert missing.json()["exception"] == "UNAUTHORIZED"

        wrong = await client.post(
            "/api/admin/payments/generate-link",
            json={"orderId": "x"},
            headers={"X-API-Key": "nope"},
        )
        assert wrong.status_code == 403
        assert wrong.json()["exception"] == "FORBIDDEN"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validation_error_envelope(
        self, client: AsyncClient, admin_headers: Dict[str, str]
    ) -> None:
        response = await client.post(
            "/api/admin/payments/generate-link", json={}, headers=admin_headers
        )
        assert response.status_code == 400
        body = response.json()
        assert body["exception"] == "VALIDATION_ERROR"
        assert body["content"]["errors"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_order_id(self, client: AsyncClient) -> None:
        response = await client.get("/api/payments/status/not-a-uuid")
        assert response.status_code == 400
        assert response.json()["exception"] == "INVALID_SERVICE_REQUEST_ID"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_header(self, client: AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        assert response.json()["status"] == "alive"
        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "payment_links_total" in response.text
