"""
Payout orchestration.

``PayoutOrchestrator.convert`` turns a paid order into a fiat payout:
1. paid -> withdrawal_initiated (compare-and-set; a redelivered event stops here)
2. Payout amount = fingerprint amount truncated to cents
3. Stage the payout request with the provider, then execute it
4. Record the withdrawal as executing

Any failure in steps 2-4, cancellation included, moves the order to
withdrawal_failed and leaves no withdrawal row behind. Orders a dead process
left in withdrawal_initiated without a withdrawal are failed by
``sweep_stranded``. ``WithdrawalMonitor`` refreshes executing withdrawals
from the provider when they are listed.
"""
import asyncio
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog

from ..config import Settings
from ..database.ledger import LedgerStore
from ..database.models import Withdrawal, utcnow
from ..integrations.provider_client import (
    PayoutStatus,
    ProviderClient,
    ProviderError,
    ProviderErrorType,
)
from ..monitoring.metrics import metrics
from .lifecycle import OrderLifecycle, WithdrawalStatus
from .money import cents_decimal, truncate_to_cents
from .orders import withdrawal_to_dict

logger = structlog.get_logger(__name__)

PROVIDER_STATUS_MAP = {
    PayoutStatus.EXECUTED: WithdrawalStatus.COMPLETED,
    PayoutStatus.FAILED: WithdrawalStatus.FAILED,
}

# Provider statuses that prove a payout request was never executed.
NOT_EXECUTED_STATUSES = frozenset({PayoutStatus.AWAITING_EXECUTION, PayoutStatus.CANCELED})


class PayoutError(Exception):
    """Raised when a payout cannot be attempted at all."""

    pass


class PayoutOrchestrator:
    """Converts matched deposits into provider payouts."""

    def __init__(
        self,
        settings: Settings,
        ledger: LedgerStore,
        provider: ProviderClient,
        lifecycle: Optional[OrderLifecycle] = None,
    ):
        self.settings = settings
        self.ledger = ledger
        self.provider = provider
        self.lifecycle = lifecycle or OrderLifecycle(ledger)

    async def convert(self, order_id: uuid.UUID) -> Optional[Withdrawal]:
        """
        Run the payout for a paid order.

        Never raises for provider or persistence failures: the outcome is the
        order's status plus a log line.

        Returns:
            Optional[Withdrawal]: The executing withdrawal, or None if the
            order was not in paid or the payout failed
        """
        if not await self.lifecycle.begin_withdrawal(order_id):
            metrics.record_payout("skipped")
            logger.info("payout_skipped_not_paid", order_id=str(order_id))
            return None

        try:
            withdrawal = await self._stage_and_execute(order_id)
        except Exception as e:
            logger.error(
                "payout_failed",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.lifecycle.fail_withdrawal(order_id)
            metrics.record_payout("failed")
            return None
        except asyncio.CancelledError:
            logger.warning("payout_cancelled", order_id=str(order_id))
            await asyncio.shield(self.lifecycle.fail_withdrawal(order_id))
            metrics.record_payout("cancelled")
            raise

        metrics.record_payout("executing")
        logger.info(
            "payout_executing",
            order_id=str(order_id),
            withdrawal_id=str(withdrawal.id),
            payout_request_id=withdrawal.provider_payout_request_id,
            amount_micros=withdrawal.amount_micros,
        )
        return withdrawal

    async def _stage_and_execute(self, order_id: uuid.UUID) -> Withdrawal:
        if not self.settings.provider_account_id:
            raise PayoutError("Provider source account is not configured")

        order = await self.ledger.get_order(order_id)
        if order is None:
            raise PayoutError(f"Order {order_id} not found")

        payout_micros = truncate_to_cents(order.fingerprint_micros)
        amount = cents_decimal(payout_micros)

        request_id = await self.provider.create_payout_request(
            source_account_id=self.settings.provider_account_id,
            amount=amount,
            recipient=self.settings.payout_recipient,
            memo=self.settings.payout_memo,
        )
        logger.info(
            "payout_request_staged",
            order_id=str(order_id),
            payout_request_id=request_id,
            amount=str(amount),
        )

        try:
            provider_status = await self.provider.execute_payout_request(request_id)
        except ProviderError as e:
            if e.error_type != ProviderErrorType.TRANSIENT:
                raise
            provider_status = await self._confirm_execution(order_id, request_id, e)
        logger.info(
            "payout_request_execution_started",
            order_id=str(order_id),
            payout_request_id=request_id,
            provider_status=provider_status,
        )

        return await self.ledger.create_withdrawal(
            order_id=order_id,
            provider_payout_request_id=request_id,
            amount_micros=payout_micros,
            status=WithdrawalStatus.EXECUTING.value,
        )

    async def _confirm_execution(
        self, order_id: uuid.UUID, request_id: str, error: ProviderError
    ) -> str:
        """
        Ask the provider whether an execute call that failed in transit went through.

        Returns:
            str: Provider status when the request was executed

        Raises:
            ProviderError: The request was not executed or its state is unknown
        """
        logger.warning(
            "payout_execution_unconfirmed",
            order_id=str(order_id),
            payout_request_id=request_id,
            error=str(error),
        )
        try:
            payout = await self.provider.get_payout_request(request_id)
        except ProviderError as e:
            logger.error(
                "payout_execution_check_failed",
                order_id=str(order_id),
                payout_request_id=request_id,
                error=str(e),
            )
            raise error from e

        if not payout.status or payout.status in NOT_EXECUTED_STATUSES:
            raise error

        logger.info(
            "payout_execution_confirmed",
            order_id=str(order_id),
            payout_request_id=request_id,
            provider_status=payout.status,
        )
        return payout.status

    async def sweep_stranded(self) -> int:
        """
        Fail orders stuck in withdrawal_initiated with no withdrawal row.

        Only orders that have sat there longer than ``payout_stale_after_seconds``
        are touched, so a payout still talking to the provider is left alone.

        Returns:
            int: Number of orders moved to withdrawal_failed
        """
        cutoff = utcnow() - timedelta(seconds=self.settings.payout_stale_after_seconds)
        swept = 0
        for order_id in await self.ledger.find_stranded_withdrawals(cutoff):
            if await self.lifecycle.fail_withdrawal(order_id):
                swept += 1
                metrics.record_payout("stranded")
                logger.warning("payout_stranded_order_failed", order_id=str(order_id))
        return swept


class WithdrawalMonitor:
    """Lists withdrawals, refreshing in-flight ones from the provider."""

    def __init__(
        self,
        ledger: LedgerStore,
        provider: ProviderClient,
        lifecycle: Optional[OrderLifecycle] = None,
    ):
        self.ledger = ledger
        self.provider = provider
        self.lifecycle = lifecycle or OrderLifecycle(ledger)

    async def refresh(self, withdrawal: Withdrawal) -> Dict[str, Any]:
        """
        Bring one withdrawal up to date with the provider.

        Provider failures are logged and the last known status is returned.
        """
        view = withdrawal_to_dict(withdrawal)
        view["provider_status"] = None
        view["provider_payouts"] = None

        if withdrawal.status != WithdrawalStatus.EXECUTING.value:
            return view

        try:
            payout = await self.provider.get_payout_request(
                withdrawal.provider_payout_request_id
            )
        except ProviderError as e:
            metrics.record_withdrawal_refresh("error")
            logger.warning(
                "withdrawal_refresh_failed",
                withdrawal_id=str(withdrawal.id),
                payout_request_id=withdrawal.provider_payout_request_id,
                error=str(e),
            )
            return view

        view["provider_status"] = payout.status
        view["provider_payouts"] = payout.payouts

        target = PROVIDER_STATUS_MAP.get(payout.status)
        if target is None:
            metrics.record_withdrawal_refresh("unchanged")
            return view

        await self.lifecycle.settle_withdrawal(withdrawal.id, target)
        view["status"] = target.value
        metrics.record_withdrawal_refresh(target.value)
        return view

    async def list_withdrawals(self) -> List[Dict[str, Any]]:
        """All withdrawals, newest first, with executing ones refreshed."""
        return [await self.refresh(w) for w in await self.ledger.list_withdrawals()]
