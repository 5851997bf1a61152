"""
Ledger store: durable storage for products, orders, withdrawals.

Every public method is its own unit of work (one session, one transaction),
so no order state survives between calls. Status changes are conditional
updates keyed on the current status.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from .models import Order, OrderItem, OutboxEvent, Product, Withdrawal

logger = structlog.get_logger(__name__)

PENDING_PAYMENT = "pending_payment"
WITHDRAWAL_INITIATED = "withdrawal_initiated"
ORDER_PAID_EVENT = "order.paid"


class FingerprintCollisionError(Exception):
    """Raised when an order insert loses the race for a pending fingerprint."""

    pass


class LedgerStore:
    """Query and write helpers over the checkout tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # --- Catalog ---

    async def list_products(self) -> List[Product]:
        async with self.session_factory() as db:
            result = await db.execute(select(Product).order_by(Product.price_micros))
            return list(result.scalars().all())

    async def get_products(self, product_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, Product]:
        """Fetch products by id; unknown ids are simply absent from the result."""
        if not product_ids:
            return {}
        async with self.session_factory() as db:
            result = await db.execute(select(Product).where(Product.id.in_(set(product_ids))))
            return {product.id: product for product in result.scalars().all()}

    async def add_products(self, products: Sequence[Product]) -> None:
        async with self.session_factory() as db, db.begin():
            db.add_all(products)

    # --- Orders ---

    async def create_order(
        self,
        customer_email: str,
        total_micros: int,
        fingerprint_micros: int,
        deposit_address: str,
        items: Sequence[Dict[str, Any]],
    ) -> Order:
        """
        Insert an order in pending_payment together with its items.

        Raises:
            FingerprintCollisionError: another pending order holds the fingerprint
        """
        order = Order(
            id=uuid.uuid4(),
            customer_email=customer_email,
            status=PENDING_PAYMENT,
            total_micros=total_micros,
            fingerprint_micros=fingerprint_micros,
            deposit_address=deposit_address,
            items=[
                OrderItem(
                    id=uuid.uuid4(),
                    product_id=item["product_id"],
                    quantity=item["quantity"],
                    unit_price_micros=item["unit_price_micros"],
                )
                for item in items
            ],
        )
        try:
            async with self.session_factory() as db, db.begin():
                db.add(order)
        except IntegrityError as e:
            raise FingerprintCollisionError(
                f"Fingerprint {fingerprint_micros} is already pending"
            ) from e
        return order

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        """Fetch an order with its items."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
            )
            return result.scalar_one_or_none()

    async def list_orders(self) -> List[Order]:
        async with self.session_factory() as db:
            result = await db.execute(select(Order).order_by(Order.created_at.desc()))
            return list(result.scalars().all())

    async def is_pending_fingerprint_taken(self, fingerprint_micros: int) -> bool:
        async with self.session_factory() as db:
            stmt = select(
                exists().where(
                    Order.status == PENDING_PAYMENT,
                    Order.fingerprint_micros == fingerprint_micros,
                )
            )
            return bool(await db.scalar(stmt))

    async def find_pending_order_by_fingerprint(self, fingerprint_micros: int) -> Optional[Order]:
        async with self.session_factory() as db:
            stmt = (
                select(Order)
                .where(
                    Order.status == PENDING_PAYMENT,
                    Order.fingerprint_micros == fingerprint_micros,
                )
                .order_by(Order.created_at)
                .limit(1)
            )
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def is_transaction_processed(self, transaction_hash: str) -> bool:
        async with self.session_factory() as db:
            stmt = select(exists().where(Order.deposit_tx_hash == transaction_hash))
            return bool(await db.scalar(stmt))

    async def transition_order_status(
        self, order_id: uuid.UUID, expected_status: str, new_status: str
    ) -> bool:
        """Compare-and-set an order status. Returns True if a row changed."""
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == expected_status)
                .values(status=new_status)
            )
            return result.rowcount == 1

    async def mark_order_paid(
        self,
        order_id: uuid.UUID,
        transaction_hash: Optional[str],
        expected_status: str,
        new_status: str,
    ) -> bool:
        """
        Flip an order to paid, store the deposit hash and write the payout event.

        All three writes share one transaction. Returns False if the order was
        no longer in ``expected_status`` or the hash is already recorded.
        """
        try:
            async with self.session_factory() as db, db.begin():
                result = await db.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == expected_status)
                    .values(status=new_status, deposit_tx_hash=transaction_hash or None)
                )
                if result.rowcount != 1:
                    return False

                db.add(
                    OutboxEvent(
                        aggregate_id=order_id,
                        aggregate_type="order",
                        event_type=ORDER_PAID_EVENT,
                        payload={
                            "order_id": str(order_id),
                            "transaction_hash": transaction_hash,
                        },
                        published=False,
                    )
                )
        except IntegrityError:
            logger.warning(
                "deposit_hash_conflict",
                order_id=str(order_id),
                transaction_hash=transaction_hash,
            )
            return False
        return True

    async def find_stranded_withdrawals(self, updated_before: datetime) -> List[uuid.UUID]:
        """Orders in withdrawal_initiated since before ``updated_before`` with no withdrawal row."""
        async with self.session_factory() as db:
            stmt = (
                select(Order.id)
                .where(
                    Order.status == WITHDRAWAL_INITIATED,
                    Order.updated_at < updated_before,
                    ~exists().where(Withdrawal.order_id == Order.id),
                )
                .order_by(Order.updated_at)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    # --- Withdrawals ---

    async def create_withdrawal(
        self,
        order_id: uuid.UUID,
        provider_payout_request_id: str,
        amount_micros: int,
        status: str,
    ) -> Withdrawal:
        withdrawal = Withdrawal(
            id=uuid.uuid4(),
            order_id=order_id,
            provider_payout_request_id=provider_payout_request_id,
            amount_micros=amount_micros,
            status=status,
        )
        async with self.session_factory() as db, db.begin():
            db.add(withdrawal)
        return withdrawal

    async def get_withdrawal_by_order(self, order_id: uuid.UUID) -> Optional[Withdrawal]:
        async with self.session_factory() as db:
            result = await db.execute(select(Withdrawal).where(Withdrawal.order_id == order_id))
            return result.scalar_one_or_none()

    async def list_withdrawals(self) -> List[Withdrawal]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Withdrawal).order_by(Withdrawal.created_at.desc())
            )
            return list(result.scalars().all())

    async def transition_withdrawal_status(
        self, withdrawal_id: uuid.UUID, expected_status: str, new_status: str
    ) -> bool:
        """Compare-and-set a withdrawal status. Returns True if a row changed."""
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                update(Withdrawal)
                .where(Withdrawal.id == withdrawal_id, Withdrawal.status == expected_status)
                .values(status=new_status)
            )
            return result.rowcount == 1
