"""
Tests for deposit reconciliation.
"""
import uuid
from typing import Any, Callable, Dict, List
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from stablecoin_checkout.config import Settings
from stablecoin_checkout.core.orders import OrderService
from stablecoin_checkout.core.reconciler import DepositReconciler
from stablecoin_checkout.database import LedgerStore, OutboxEvent


async def outbox_count(ledger: LedgerStore) -> int:
    async with ledger.session_factory() as db:
        return int(await db.scalar(select(func.count(OutboxEvent.id))))


class TestDepositReconciler:
    """Test suite for DepositReconciler."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_matching_deposit_marks_order_paid(
        self,
        test_settings: Settings,
        ledger: LedgerStore,
        cart: Callable[..., List[Dict[str, Any]]],
    ) -> None:
        created = await OrderService(test_settings, ledger).create_order(
            "buyer@example.com", cart(sticker=2, mug=1)
        )
        dispatcher = MagicMock()
        reconciler = DepositReconciler(ledger, dispatcher=dispatcher)

        order_id = await reconciler.handle_deposit(
            str(created["fingerprint_amount"]), "0xdeposit"
        )

        assert order_id == uuid.UUID(created["order_id"])
        order = await ledger.get_order(order_id)
        assert order.status == "paid"
        assert order.deposit_tx_hash == "0xdeposit"
        dispatcher.dispatch.assert_called_once_with()
        assert await outbox_count(ledger) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_float_amount_matches(
        self,
        test_settings: Settings,
        ledger: LedgerStore,
        cart: Callable[..., List[Dict[str, Any]]],
    ) -> None:
        """Provider JSON numbers are matched without float drift."""
        created = await OrderService(test_settings, ledger).create_order(
            "buyer@example.com", cart(mug=3)
        )
        reconciler = DepositReconciler(ledger)

        order_id = await reconciler.handle_deposit(
            float(created["fingerprint_amount"]), "0xfloat"
        )
        assert order_id == uuid.UUID(created["order_id"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_transaction_hash(
        self,
        test_settings: Settings,
        ledger: LedgerStore,
        cart: Callable[..., List[Dict[str, Any]]],
    ) -> None:
        created = await OrderService(test_settings, ledger).create_order(
            "buyer@example.com", cart(mug=1)
        )
        dispatcher = MagicMock()
        reconciler = DepositReconciler(ledger, dispatcher=dispatcher)
        amount = str(created["fingerprint_amount"])

        assert await reconciler.handle_deposit(amount, "0xsame") is not None
        assert await reconciler.handle_deposit(amount, "0xsame") is None

        assert dispatcher.dispatch.call_count == 1
        assert await outbox_count(ledger) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unmatched_amount_changes_nothing(
        self,
        test_settings: Settings,
        ledger: LedgerStore,
        cart: Callable[..., List[Dict[str, Any]]],
    ) -> None:
        created = await OrderService(test_settings, ledger).create_order(
            "buyer@example.com", cart(mug=1)
        )
        reconciler = DepositReconciler(ledger)

        assert await reconciler.handle_deposit("1.00", "0xexact-total") is None
        assert await reconciler.handle_deposit("not-an-amount", "0xbad") is None

        order = await ledger.get_order(uuid.UUID(created["order_id"]))
        assert order.status == "pending_payment"
        assert order.deposit_tx_hash is None
        assert await outbox_count(ledger) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_beyond_storage_range_is_unmatched(
        self,
        test_settings: Settings,
        ledger: LedgerStore,
        cart: Callable[..., List[Dict[str, Any]]],
    ) -> None:
        """An oversized credit is dropped before it reaches the database."""
        await OrderService(test_settings, ledger).create_order("buyer@example.com", cart(mug=1))

        assert await DepositReconciler(ledger).handle_deposit("10000000000000", "0xbig") is None
        assert not await ledger.is_transaction_processed("0xbig")
        assert await outbox_count(ledger) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_hash_for_paid_fingerprint_does_not_match(
        self,
        test_settings: Settings,
        ledger: LedgerStore,
        cart: Callable[..., List[Dict[str, Any]]],
    ) -> None:
        """Once paid, an order's fingerprint is no longer matchable."""
        created = await OrderService(test_settings, ledger).create_order(
            "buyer@example.com", cart(mug=1)
        )
        reconciler = DepositReconciler(ledger)
        amount = str(created["fingerprint_amount"])

        assert await reconciler.handle_deposit(amount, "0xfirst") is not None
        assert await reconciler.handle_deposit(amount, "0xsecond") is None

        order = await ledger.get_order(uuid.UUID(created["order_id"]))
        assert order.deposit_tx_hash == "0xfirst"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deposit_without_hash(
        self,
        test_settings: Settings,
        ledger: LedgerStore,
        cart: Callable[..., List[Dict[str, Any]]],
    ) -> None:
        created = await OrderService(test_settings, ledger).create_order(
            "buyer@example.com", cart(sticker=1)
        )
        reconciler = DepositReconciler(ledger)

        order_id = await reconciler.handle_deposit(str(created["fingerprint_amount"]), None)

        order = await ledger.get_order(order_id)
        assert order.status == "paid"
        assert order.deposit_tx_hash is None
