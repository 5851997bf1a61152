"""
End-to-end tests through the HTTP API.
"""
import asyncio
import json
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Tuple

import httpx
import pytest
import pytest_asyncio

from stablecoin_checkout.api.main import create_app, lifespan
from stablecoin_checkout.config import Settings
from stablecoin_checkout.database import Product, init_db
from stablecoin_checkout.services import ServiceRegistry, build_services

from conftest import PROVIDER_URL, FakeProviderAPI, make_settings

ApiFixture = Tuple[httpx.AsyncClient, ServiceRegistry]


@pytest_asyncio.fixture
async def api(
    test_settings: Settings, fake_provider: FakeProviderAPI
) -> AsyncGenerator[ApiFixture, Any]:
    """API client over a fully wired app with a seeded catalog."""
    provider_http = httpx.AsyncClient(
        base_url=PROVIDER_URL, transport=httpx.MockTransport(fake_provider)
    )
    services = build_services(test_settings, provider_http_client=provider_http)
    await init_db(services.engine)
    await services.ledger.add_products(
        [
            Product(name="Sticker", description="Vinyl sticker", price_micros=500_000),
            Product(name="Mug", description="Ceramic mug", price_micros=1_000_000),
        ]
    )
    app = create_app(test_settings, services)

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client, services

    await services.close()


async def catalog(client: httpx.AsyncClient) -> Dict[str, str]:
    response = await client.get("/products")
    assert response.status_code == 200
    return {product["name"]: product["id"] for product in response.json()}


def webhook_body(amount: str, tx_hash: str) -> bytes:
    return json.dumps(
        {
            "type": "account_credited",
            "token": {"tokenAmount": amount, "tokenSymbol": "USDC"},
            "transactionDetails": {"hash": tx_hash},
        }
    ).encode()


class TestCheckoutFlow:
    """Test suite for the customer and merchant flow."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_to_completed_payout(
        self, api: ApiFixture, fake_provider: FakeProviderAPI
    ) -> None:
        client, services = api
        products = await catalog(client)

        response = await client.post(
            "/orders",
            json={
                "customer_email": "buyer@example.com",
                "items": [
                    {"product_id": products["Sticker"], "quantity": 2},
                    {"product_id": products["Mug"], "quantity": 1},
                ],
            },
        )
        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "pending_payment"
        assert Decimal(created["total_amount"]) == Decimal("2.00")
        fingerprint = Decimal(created["fingerprint_amount"])
        assert Decimal("2.000001") <= fingerprint <= Decimal("2.000999")

        response = await client.post(
            "/webhooks/provider",
            content=webhook_body(created["fingerprint_amount"], "0xcustomer"),
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "matched": True,
            "order_id": created["order_id"],
        }

        await services.dispatcher.wait_idle()

        response = await client.get(f"/merchant/orders/{created['order_id']}")
        assert response.status_code == 200
        detail = response.json()
        assert detail["status"] == "withdrawal_initiated"
        assert detail["deposit_tx_hash"] == "0xcustomer"
        assert detail["withdrawal"]["status"] == "executing"
        assert Decimal(detail["withdrawal"]["amount"]) == Decimal("2.00")
        assert len(detail["items"]) == 2

        fake_provider.payout_status = "EXECUTED"
        response = await client.get("/merchant/withdrawals")
        assert response.status_code == 200
        [withdrawal] = response.json()
        assert withdrawal["status"] == "completed"
        assert withdrawal["provider_status"] == "EXECUTED"

        response = await client.get(f"/orders/{created['order_id']}")
        assert response.json()["status"] == "withdrawal_initiated"

        response = await client.get("/merchant/orders")
        assert [o["id"] for o in response.json()] == [created["order_id"]]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_replayed_webhook_does_not_match_twice(self, api: ApiFixture) -> None:
        client, services = api
        products = await catalog(client)
        created = (
            await client.post(
                "/orders",
                json={
                    "customer_email": "buyer@example.com",
                    "items": [{"product_id": products["Mug"], "quantity": 1}],
                },
            )
        ).json()
        body = webhook_body(created["fingerprint_amount"], "0xreplayed")

        first = await client.post("/webhooks/provider", content=body)
        second = await client.post("/webhooks/provider", content=body)
        await services.dispatcher.wait_idle()

        assert first.json()["matched"] is True
        assert second.json() == {"received": True, "matched": False}


class TestErrorMapping:
    """Test suite for HTTP error responses."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_cart_is_bad_request(self, api: ApiFixture) -> None:
        client, _ = api
        response = await client.post(
            "/orders", json={"customer_email": "buyer@example.com", "items": []}
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "At least one item required"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_quantity_is_bad_request(self, api: ApiFixture) -> None:
        client, _ = api
        products = await catalog(client)
        response = await client.post(
            "/orders",
            json={
                "customer_email": "buyer@example.com",
                "items": [{"product_id": products["Mug"], "quantity": 0}],
            },
        )
        assert response.status_code == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_request_is_bad_request(self, api: ApiFixture) -> None:
        client, _ = api
        response = await client.post("/orders", json={"items": "nope"})
        assert response.status_code == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order_is_not_found(self, api: ApiFixture) -> None:
        client, _ = api
        assert (await client.get("/orders/00000000-0000-0000-0000-000000000000")).status_code == 404
        assert (await client.get("/merchant/orders/not-a-uuid")).status_code == 404

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_webhook_is_bad_request(self, api: ApiFixture) -> None:
        client, _ = api
        response = await client.post("/webhooks/provider", content=b"{broken")
        assert response.status_code == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrelated_webhook_is_acknowledged(self, api: ApiFixture) -> None:
        client, _ = api
        response = await client.post(
            "/webhooks/provider", content=json.dumps({"type": "account_debited"}).encode()
        )
        assert response.status_code == 200
        assert response.json() == {"received": True}


class TestMonitoringEndpoints:
    """Test suite for health and metrics endpoints."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health(self, api: ApiFixture) -> None:
        client, _ = api
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["provider"]["signature_verification"] is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_liveness_and_request_id(self, api: ApiFixture) -> None:
        client, _ = api
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_metrics(self, api: ApiFixture) -> None:
        client, _ = api
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "checkout_orders_created_total" in response.text


class TestLifespan:
    """Test suite for application startup and shutdown."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_shutdown_stops_idle_dispatcher_promptly(
        self, tmp_path: Path, fake_provider: FakeProviderAPI
    ) -> None:
        """Shutdown does not wait out the poll interval or the shutdown grace period."""
        settings = make_settings(
            tmp_path, outbox_poll_interval_seconds=60, shutdown_timeout_seconds=30
        )
        services = build_services(
            settings,
            provider_http_client=httpx.AsyncClient(
                base_url=PROVIDER_URL, transport=httpx.MockTransport(fake_provider)
            ),
        )
        app = create_app(settings, services)

        async def run() -> None:
            async with lifespan(app):
                await asyncio.sleep(0.1)

        await asyncio.wait_for(run(), timeout=5)
        assert not services.dispatcher._running
