"""
Checkout: order creation and order reads.

Flow of ``create_order``:
1. Validate the cart (non-empty, known products, quantity >= 1)
2. Snapshot unit prices and compute the total, rounded half-up to cents
3. Allocate a fingerprint amount and insert the order as one atomic claim
"""
import uuid
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..config import Settings
from ..database.ledger import LedgerStore
from ..database.models import Order, Product, Withdrawal
from ..monitoring.metrics import metrics
from .fingerprint import AllocationExhaustedError, FingerprintAllocator
from .money import cents_decimal, from_micros, round_half_up_to_cents

logger = structlog.get_logger(__name__)


class OrderError(Exception):
    """Base exception for checkout errors."""

    pass


class OrderValidationError(OrderError):
    """Raised when a checkout request is invalid. Not retryable."""

    pass


class CheckoutUnavailableError(OrderError):
    """Raised when the deposit address has not been provisioned."""

    pass


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def product_to_dict(product: Product) -> Dict[str, Any]:
    return {
        "id": str(product.id),
        "name": product.name,
        "description": product.description,
        "price": from_micros(product.price_micros, places=2),
    }


def order_to_dict(order: Order, include_items: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(order.id),
        "customer_email": order.customer_email,
        "status": order.status,
        "total_amount": cents_decimal(order.total_micros),
        "fingerprint_amount": from_micros(order.fingerprint_micros),
        "deposit_address": order.deposit_address,
        "deposit_tx_hash": order.deposit_tx_hash,
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
    }
    if include_items:
        data["items"] = [
            {
                "id": str(item.id),
                "product_id": str(item.product_id),
                "quantity": item.quantity,
                "unit_price": from_micros(item.unit_price_micros, places=2),
            }
            for item in order.items
        ]
    return data


def withdrawal_to_dict(withdrawal: Withdrawal) -> Dict[str, Any]:
    return {
        "id": str(withdrawal.id),
        "order_id": str(withdrawal.order_id),
        "provider_payout_request_id": withdrawal.provider_payout_request_id,
        "amount": cents_decimal(withdrawal.amount_micros),
        "status": withdrawal.status,
        "created_at": withdrawal.created_at.isoformat(),
        "updated_at": withdrawal.updated_at.isoformat(),
    }


class OrderService:
    """Creates orders and serves order reads for customers and the merchant."""

    def __init__(
        self,
        settings: Settings,
        ledger: LedgerStore,
        allocator: Optional[FingerprintAllocator] = None,
    ):
        self.settings = settings
        self.ledger = ledger
        self.allocator = allocator or FingerprintAllocator(
            max_attempts=settings.fingerprint_max_attempts
        )

    async def _resolve_items(
        self, items: Sequence[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """
        Validate cart lines and snapshot catalog prices.

        Raises:
            OrderValidationError: empty cart, unknown product or bad quantity
        """
        if not items:
            raise OrderValidationError("At least one item required")

        product_ids = []
        for item in items:
            product_id = _parse_uuid(item.get("product_id"))
            if product_id is None:
                raise OrderValidationError(f"Product {item.get('product_id')} not found")
            product_ids.append(product_id)

        products = await self.ledger.get_products(product_ids)

        resolved = []
        for item, product_id in zip(items, product_ids):
            product = products.get(product_id)
            if product is None:
                raise OrderValidationError(f"Product {item.get('product_id')} not found")

            quantity = item.get("quantity")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise OrderValidationError("Quantity must be >= 1")

            resolved.append(
                {
                    "product_id": product_id,
                    "quantity": quantity,
                    "unit_price_micros": product.price_micros,
                }
            )
        return resolved

    async def create_order(
        self, customer_email: str, items: Sequence[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Create an order awaiting a fingerprinted deposit.

        Args:
            customer_email: Customer contact
            items: Cart lines, each ``{"product_id": ..., "quantity": ...}``

        Returns:
            Dict[str, Any]: order id, status, total, fingerprint amount,
            deposit address and payment instructions

        Raises:
            OrderValidationError: If the cart is invalid
            AllocationExhaustedError: If no unique amount could be found
            CheckoutUnavailableError: If no deposit address is configured
        """
        if not customer_email or not customer_email.strip():
            raise OrderValidationError("Customer email is required")

        resolved = await self._resolve_items(items)

        if not self.settings.deposit_address:
            raise CheckoutUnavailableError("Deposit address is not configured")

        total_micros = round_half_up_to_cents(
            sum(line["unit_price_micros"] * line["quantity"] for line in resolved)
        )
        if total_micros <= 0:
            raise OrderValidationError("Order total must be at least 0.01")
        deposit_address = self.settings.deposit_address

        async def claim(fingerprint_micros: int) -> Order:
            return await self.ledger.create_order(
                customer_email=customer_email.strip(),
                total_micros=total_micros,
                fingerprint_micros=fingerprint_micros,
                deposit_address=deposit_address,
                items=resolved,
            )

        try:
            order = await self.allocator.allocate(
                total_micros,
                is_taken=self.ledger.is_pending_fingerprint_taken,
                claim=claim,
            )
        except AllocationExhaustedError:
            metrics.record_allocation_exhausted()
            raise

        metrics.record_order_created(total_micros)
        fingerprint_amount = from_micros(order.fingerprint_micros)

        logger.info(
            "order_created",
            order_id=str(order.id),
            total_micros=total_micros,
            fingerprint_micros=order.fingerprint_micros,
            item_count=len(resolved),
        )

        return {
            "order_id": str(order.id),
            "status": order.status,
            "total_amount": cents_decimal(total_micros),
            "fingerprint_amount": fingerprint_amount,
            "deposit_address": deposit_address,
            "message": (
                f"Send exactly {fingerprint_amount} {self.settings.token_symbol} "
                f"to {deposit_address} on {self.settings.deposit_network}"
            ),
        }

    async def get_order(self, order_id: str | uuid.UUID) -> Optional[Dict[str, Any]]:
        """Order detail with items, or None if unknown."""
        parsed = _parse_uuid(order_id)
        if parsed is None:
            return None
        order = await self.ledger.get_order(parsed)
        if order is None:
            return None
        return order_to_dict(order, include_items=True)

    async def get_order_with_withdrawal(
        self, order_id: str | uuid.UUID
    ) -> Optional[Dict[str, Any]]:
        """Merchant view: order detail plus its withdrawal, if any."""
        parsed = _parse_uuid(order_id)
        if parsed is None:
            return None
        order = await self.ledger.get_order(parsed)
        if order is None:
            return None
        withdrawal = await self.ledger.get_withdrawal_by_order(parsed)
        data = order_to_dict(order, include_items=True)
        data["withdrawal"] = withdrawal_to_dict(withdrawal) if withdrawal else None
        return data

    async def list_orders(self) -> List[Dict[str, Any]]:
        return [order_to_dict(order) for order in await self.ledger.list_orders()]

    async def list_products(self) -> List[Dict[str, Any]]:
        return [product_to_dict(product) for product in await self.ledger.list_products()]
