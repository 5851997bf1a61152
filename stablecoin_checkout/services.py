"""
Composition root.

Wires settings, storage, the provider client and the checkout components
together. The HTTP app and the standalone payout worker both start here.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .config import Settings
from .core import (
    DepositReconciler,
    OrderLifecycle,
    OrderService,
    PayoutDispatcher,
    PayoutOrchestrator,
    WithdrawalMonitor,
)
from .database import LedgerStore, close_db, create_engine, create_session_factory
from .integrations import ProviderClient, WebhookHandler
from .monitoring import HealthCheck


@dataclass
class ServiceRegistry:
    """Every long-lived component of one running process."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    ledger: LedgerStore
    provider: ProviderClient
    lifecycle: OrderLifecycle
    orders: OrderService
    orchestrator: PayoutOrchestrator
    dispatcher: PayoutDispatcher
    reconciler: DepositReconciler
    withdrawals: WithdrawalMonitor
    webhooks: WebhookHandler
    health: HealthCheck

    async def close(self) -> None:
        await self.dispatcher.wait_idle()
        await self.provider.close()
        await close_db(self.engine)


def build_services(
    settings: Settings,
    provider_http_client: Optional[httpx.AsyncClient] = None,
) -> ServiceRegistry:
    """
    Build the component graph for one process.

    Args:
        settings: Application settings
        provider_http_client: Optional preconfigured HTTP client for the provider
    """
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    ledger = LedgerStore(session_factory)
    lifecycle = OrderLifecycle(ledger)
    provider = ProviderClient(settings, http_client=provider_http_client)
    orchestrator = PayoutOrchestrator(settings, ledger, provider, lifecycle)
    dispatcher = PayoutDispatcher(
        settings, session_factory, orchestrator.convert, sweeper=orchestrator.sweep_stranded
    )
    reconciler = DepositReconciler(ledger, lifecycle, dispatcher)

    return ServiceRegistry(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        ledger=ledger,
        provider=provider,
        lifecycle=lifecycle,
        orders=OrderService(settings, ledger),
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        reconciler=reconciler,
        withdrawals=WithdrawalMonitor(ledger, provider, lifecycle),
        webhooks=WebhookHandler(settings, reconciler),
        health=HealthCheck(settings, session_factory),
    )
