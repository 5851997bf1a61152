"""
Order and withdrawal state machines.

Order:
    pending_payment -> paid -> withdrawal_initiated -> withdrawal_failed

Withdrawal:
    pending -> executing -> completed | failed

No transition ever returns an order to pending_payment. Final payout success
is recorded on the withdrawal (completed), not on the order.

Transitions are applied as compare-and-set updates against the ledger: a
transition whose source status no longer matches is reported as not applied
and changes nothing.
"""
import uuid
from enum import Enum
from typing import Dict, FrozenSet, Optional

import structlog

from ..database.ledger import LedgerStore

logger = structlog.get_logger(__name__)


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    WITHDRAWAL_INITIATED = "withdrawal_initiated"
    WITHDRAWAL_FAILED = "withdrawal_failed"


class WithdrawalStatus(str, Enum):
    """Withdrawal lifecycle states."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.PAID}),
    OrderStatus.PAID: frozenset({OrderStatus.WITHDRAWAL_INITIATED}),
    OrderStatus.WITHDRAWAL_INITIATED: frozenset({OrderStatus.WITHDRAWAL_FAILED}),
    OrderStatus.WITHDRAWAL_FAILED: frozenset(),
}

WITHDRAWAL_TRANSITIONS: Dict[WithdrawalStatus, FrozenSet[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({WithdrawalStatus.EXECUTING}),
    WithdrawalStatus.EXECUTING: frozenset(
        {WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED}
    ),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.FAILED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when code asks for a transition the state machine does not have."""

    pass


def check_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    if target not in ORDER_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Order cannot move from {current.value} to {target.value}"
        )


def check_withdrawal_transition(current: WithdrawalStatus, target: WithdrawalStatus) -> None:
    if target not in WITHDRAWAL_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Withdrawal cannot move from {current.value} to {target.value}"
        )


def is_terminal(status: WithdrawalStatus) -> bool:
    return not WITHDRAWAL_TRANSITIONS[status]


class OrderLifecycle:
    """
    Owner of every order and withdrawal status change.

    Each method performs one atomic compare-and-set against the ledger and
    returns whether the transition was applied.
    """

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    async def mark_paid(
        self, order_id: uuid.UUID, transaction_hash: Optional[str]
    ) -> bool:
        """
        Flip a pending order to paid, record its deposit hash and enqueue payout.

        Returns False when the order was no longer pending or the hash was
        already recorded against another order.
        """
        check_order_transition(OrderStatus.PENDING_PAYMENT, OrderStatus.PAID)
        applied = await self.ledger.mark_order_paid(
            order_id,
            transaction_hash=transaction_hash,
            expected_status=OrderStatus.PENDING_PAYMENT.value,
            new_status=OrderStatus.PAID.value,
        )
        self._log("order", order_id, OrderStatus.PENDING_PAYMENT, OrderStatus.PAID, applied)
        return applied

    async def begin_withdrawal(self, order_id: uuid.UUID) -> bool:
        return await self._transition_order(
            order_id, OrderStatus.PAID, OrderStatus.WITHDRAWAL_INITIATED
        )

    async def fail_withdrawal(self, order_id: uuid.UUID) -> bool:
        return await self._transition_order(
            order_id, OrderStatus.WITHDRAWAL_INITIATED, OrderStatus.WITHDRAWAL_FAILED
        )

    async def settle_withdrawal(
        self, withdrawal_id: uuid.UUID, target: WithdrawalStatus
    ) -> bool:
        """Move an executing withdrawal to a terminal status."""
        check_withdrawal_transition(WithdrawalStatus.EXECUTING, target)
        applied = await self.ledger.transition_withdrawal_status(
            withdrawal_id,
            expected_status=WithdrawalStatus.EXECUTING.value,
            new_status=target.value,
        )
        self._log("withdrawal", withdrawal_id, WithdrawalStatus.EXECUTING, target, applied)
        return applied

    async def _transition_order(
        self, order_id: uuid.UUID, current: OrderStatus, target: OrderStatus
    ) -> bool:
        check_order_transition(current, target)
        applied = await self.ledger.transition_order_status(
            order_id, expected_status=current.value, new_status=target.value
        )
        self._log("order", order_id, current, target, applied)
        return applied

    @staticmethod
    def _log(
        entity: str, entity_id: uuid.UUID, current: Enum, target: Enum, applied: bool
    ) -> None:
        if applied:
            logger.info(
                f"{entity}_status_changed",
                entity_id=str(entity_id),
                from_status=current.value,
                to_status=target.value,
            )
        else:
            logger.info(
                f"{entity}_status_change_skipped",
                entity_id=str(entity_id),
                expected_status=current.value,
                target_status=target.value,
            )
