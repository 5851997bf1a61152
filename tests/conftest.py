"""
Pytest configuration and fixtures.
"""
import uuid
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Set

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from stablecoin_checkout.config import Settings
from stablecoin_checkout.database import (
    LedgerStore,
    Product,
    close_db,
    create_engine,
    create_session_factory,
    init_db,
)
from stablecoin_checkout.integrations import ProviderClient

PROVIDER_URL = "https://provider.test"


class FakeProviderAPI:
    """
    In-memory stand-in for the provider's payout endpoints.

    Used as an ``httpx.MockTransport`` handler; set the ``*_status_code``
    fields or ``payout_status`` to steer responses. ``execute_timeout`` makes
    execute time out either after the provider applied it ("applied") or
    before ("dropped").
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.payout_status = "PENDING"
        self.create_status_code = 201
        self.execute_status_code = 200
        self.get_status_code = 200
        self.execute_timeout: Optional[str] = None
        self.executed: Set[str] = set()
        self._created = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/api/payouts/payout":
            if self.create_status_code >= 400:
                return httpx.Response(self.create_status_code, json={"message": "rejected"})
            self._created += 1
            return httpx.Response(
                self.create_status_code,
                json={"id": f"payout-request-{self._created}", "status": "AWAITING_EXECUTION"},
            )

        if request.method == "POST" and path.endswith("/execute"):
            request_id = path.split("/")[-2]
            if request_id in self.executed:
                return httpx.Response(400, json={"message": "already executed"})
            if self.execute_timeout == "dropped":
                raise httpx.ReadTimeout("timed out", request=request)
            if self.execute_status_code >= 400:
                return httpx.Response(
                    self.execute_status_code, json={"message": "insufficient balance"}
                )
            self.executed.add(request_id)
            if self.execute_timeout == "applied":
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(
                self.execute_status_code,
                json={"id": request_id, "status": "PENDING"},
            )

        if request.method == "GET" and path.startswith("/api/payouts/payout/"):
            if self.get_status_code >= 400:
                return httpx.Response(self.get_status_code, json={"message": "unavailable"})
            return httpx.Response(
                200,
                json={
                    "id": path.rsplit("/", 1)[-1],
                    "status": self.payout_status,
                    "payouts": [
                        {
                            "id": "payout-leg-1",
                            "amount": {"tokenAmount": 2.0, "tokenSymbol": "USDC"},
                            "details": {"type": "fiat", "fiatAndRailCode": "cop"},
                        }
                    ],
                },
            )

        return httpx.Response(404, json={"message": "not found"})

    def calls(self, method: str, suffix: str = "") -> List[httpx.Request]:
        return [
            r for r in self.requests if r.method == method and r.url.path.endswith(suffix)
        ]


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        "app_name": "stablecoin-checkout-test",
        "app_env": "test",
        "log_level": "DEBUG",
        "provider_api_url": PROVIDER_URL,
        "provider_api_key": "test-api-key",
        "provider_transfer_api_key": "test-transfer-key",
        "provider_account_id": "account-test",
        "provider_retry_max_attempts": 3,
        "provider_retry_base_delay": 0,
        "deposit_address": "0xMerchantDepositAddress",
        "outbox_poll_interval_seconds": 0.05,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings backed by a per-test SQLite file."""
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create the test engine with all tables."""
    engine = create_engine(test_settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> LedgerStore:
    return LedgerStore(session_factory)


@pytest_asyncio.fixture
async def products(ledger: LedgerStore) -> Dict[str, Product]:
    """Seed a catalog priced at 0.50 and 1.00."""
    catalog = {
        "sticker": Product(
            id=uuid.uuid4(), name="Sticker", description="Vinyl sticker", price_micros=500_000
        ),
        "mug": Product(
            id=uuid.uuid4(), name="Mug", description="Ceramic mug", price_micros=1_000_000
        ),
    }
    await ledger.add_products(list(catalog.values()))
    return catalog


@pytest.fixture
def fake_provider() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest_asyncio.fixture
async def provider_client(
    test_settings: Settings, fake_provider: FakeProviderAPI
) -> AsyncGenerator[ProviderClient, Any]:
    """Provider client wired to the fake provider."""
    http_client = httpx.AsyncClient(
        base_url=PROVIDER_URL, transport=httpx.MockTransport(fake_provider)
    )
    client = ProviderClient(test_settings, http_client=http_client)
    yield client
    await client.close()


@pytest.fixture
def cart(products: Dict[str, Product]) -> Callable[..., List[Dict[str, Any]]]:
    """Build cart lines from ``name=quantity`` pairs."""

    def build(**quantities: int) -> List[Dict[str, Any]]:
        return [
            {"product_id": str(products[name].id), "quantity": quantity}
            for name, quantity in quantities.items()
        ]

    return build
