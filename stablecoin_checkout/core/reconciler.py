"""
Deposit reconciliation: match an on-chain credit to a pending order.

A deposit matches when its token amount equals the fingerprint amount of an
order still in pending_payment. The match is claimed with a conditional
update, so two deliveries of the same credit (or two credits of the same
amount) produce at most one paid transition.
"""
import uuid
from decimal import Decimal
from typing import Optional, Union

import structlog

from ..database.ledger import LedgerStore
from ..monitoring.metrics import metrics
from .lifecycle import OrderLifecycle
from .money import AmountError, to_micros
from .outbox import PayoutDispatcher

logger = structlog.get_logger(__name__)


class DepositReconciler:
    """Turns credited deposits into paid orders and hands them to payout."""

    def __init__(
        self,
        ledger: LedgerStore,
        lifecycle: Optional[OrderLifecycle] = None,
        dispatcher: Optional[PayoutDispatcher] = None,
    ):
        self.ledger = ledger
        self.lifecycle = lifecycle or OrderLifecycle(ledger)
        self.dispatcher = dispatcher

    async def handle_deposit(
        self,
        token_amount: Union[Decimal, str, int, float],
        transaction_hash: Optional[str],
    ) -> Optional[uuid.UUID]:
        """
        Reconcile one credited deposit.

        Args:
            token_amount: Credited amount as reported by the provider
            transaction_hash: On-chain hash, may be empty

        Returns:
            Optional[uuid.UUID]: The order that became paid, or None for a
            duplicate, an unmatched amount or a lost race
        """
        if transaction_hash and await self.ledger.is_transaction_processed(transaction_hash):
            metrics.record_deposit("duplicate")
            logger.info("deposit_duplicate", transaction_hash=transaction_hash)
            return None

        try:
            amount_micros = to_micros(token_amount)
        except AmountError as e:
            metrics.record_deposit("unmatched")
            logger.warning(
                "deposit_amount_invalid",
                token_amount=str(token_amount),
                transaction_hash=transaction_hash,
                error=str(e),
            )
            return None

        order = await self.ledger.find_pending_order_by_fingerprint(amount_micros)
        if order is None:
            metrics.record_deposit("unmatched")
            logger.warning(
                "deposit_unmatched",
                amount_micros=amount_micros,
                transaction_hash=transaction_hash,
            )
            return None

        if not await self.lifecycle.mark_paid(order.id, transaction_hash):
            metrics.record_deposit("race_lost")
            logger.info(
                "deposit_match_lost",
                order_id=str(order.id),
                transaction_hash=transaction_hash,
            )
            return None

        metrics.record_deposit("matched")
        logger.info(
            "deposit_matched",
            order_id=str(order.id),
            amount_micros=amount_micros,
            transaction_hash=transaction_hash,
        )

        if self.dispatcher is not None:
            self.dispatcher.dispatch()
        return order.id
