"""
Pydantic schemas for API request/response models.

Amounts are ``Decimal`` and serialize as strings, so fingerprint amounts keep
all six decimals on the wire.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProductResponse(BaseModel):
    """Catalog entry."""

    id: str = Field(..., description="Product ID")
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(default=None, description="Product description")
    price: Decimal = Field(..., description="Unit price in USD")


class OrderItemRequest(BaseModel):
    """One cart line."""

    product_id: str = Field(..., description="Product ID")
    quantity: int = Field(..., description="Quantity (at least 1)")


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    customer_email: str = Field(..., description="Customer contact email")
    items: List[OrderItemRequest] = Field(..., description="Cart lines")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "customer_email": "buyer@example.com",
                    "items": [
                        {"product_id": "123e4567-e89b-12d3-a456-426614174000", "quantity": 2}
                    ],
                }
            ]
        }
    }


class CreateOrderResponse(BaseModel):
    """Payment instructions for a new order."""

    order_id: str = Field(..., description="Order ID")
    status: str = Field(..., description="Order status")
    total_amount: Decimal = Field(..., description="Order total in USD")
    fingerprint_amount: Decimal = Field(
        ..., description="Exact token amount the customer must send"
    )
    deposit_address: str = Field(..., description="Merchant deposit address")
    message: str = Field(..., description="Human readable payment instructions")


class OrderItemResponse(BaseModel):
    id: str
    product_id: str
    quantity: int
    unit_price: Decimal


class WithdrawalResponse(BaseModel):
    """Withdrawal record, optionally refreshed from the provider."""

    id: str = Field(..., description="Withdrawal ID")
    order_id: str = Field(..., description="Order ID")
    provider_payout_request_id: str = Field(..., description="Provider payout request ID")
    amount: Decimal = Field(..., description="Payout amount in USD")
    status: str = Field(..., description="Withdrawal status")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")
    provider_status: Optional[str] = Field(
        default=None, description="Payout request status reported by the provider"
    )
    provider_payouts: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Payout legs reported by the provider"
    )


class OrderResponse(BaseModel):
    """Order detail."""

    id: str = Field(..., description="Order ID")
    customer_email: str = Field(..., description="Customer contact email")
    status: str = Field(..., description="Order status")
    total_amount: Decimal = Field(..., description="Order total in USD")
    fingerprint_amount: Decimal = Field(..., description="Expected token amount")
    deposit_address: str = Field(..., description="Merchant deposit address")
    deposit_tx_hash: Optional[str] = Field(default=None, description="Matched deposit hash")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")
    items: Optional[List[OrderItemResponse]] = Field(default=None, description="Cart lines")


class MerchantOrderResponse(OrderResponse):
    """Order detail with its withdrawal."""

    withdrawal: Optional[WithdrawalResponse] = Field(
        default=None, description="Payout for this order, if one was started"
    )


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the provider."""

    received: bool = Field(..., description="Always true once the body was read")
    matched: Optional[bool] = Field(default=None, description="Whether a deposit matched")
    order_id: Optional[str] = Field(default=None, description="Matched order ID")
    error: Optional[str] = Field(default=None, description="Rejection reason")


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Overall health status (healthy/degraded/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
