"""
API routes for checkout, webhooks, merchant views and monitoring.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..core import AllocationExhaustedError, CheckoutUnavailableError, OrderValidationError
from ..integrations.webhook_handler import SIGNATURE_HEADER, TIMESTAMP_HEADER, WebhookError
from ..services import ServiceRegistry
from .schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    HealthCheckResponse,
    MerchantOrderResponse,
    OrderResponse,
    ProductResponse,
    WebhookResponse,
    WithdrawalResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
catalog_router = APIRouter(prefix="/products", tags=["products"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
merchant_router = APIRouter(prefix="/merchant", tags=["merchant"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> ServiceRegistry:
    return request.app.state.services


@catalog_router.get("", response_model=List[ProductResponse], summary="List products")
async def list_products(
    services: ServiceRegistry = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.orders.list_products()


@order_router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create an order and get the exact token amount to send",
)
async def create_order(
    request: CreateOrderRequest,
    services: ServiceRegistry = Depends(get_services),
) -> Dict[str, Any]:
    try:
        return await services.orders.create_order(
            customer_email=request.customer_email,
            items=[item.model_dump() for item in request.items],
        )

    except OrderValidationError as e:
        logger.warning("api_create_order_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except AllocationExhaustedError as e:
        logger.warning("api_create_order_allocation_exhausted", error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    except CheckoutUnavailableError as e:
        logger.error("api_create_order_unavailable", error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@order_router.get("/{order_id}", response_model=OrderResponse, summary="Get order status")
async def get_order(
    order_id: str,
    services: ServiceRegistry = Depends(get_services),
) -> Dict[str, Any]:
    order = await services.orders.get_order(order_id)
    if order is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found"
        )
    return order


@webhook_router.post(
    "/provider",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Provider webhook endpoint",
    description="Receive balance activity events from the payment provider",
)
async def provider_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    timestamp: Optional[str] = Header(default=None, alias=TIMESTAMP_HEADER),
    services: ServiceRegistry = Depends(get_services),
) -> Dict[str, Any]:
    body = await request.body()
    try:
        return await services.webhooks.process(body, signature, timestamp)

    except WebhookError as e:
        logger.warning("api_webhook_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@merchant_router.get(
    "/orders", response_model=List[OrderResponse], summary="List all orders"
)
async def merchant_list_orders(
    services: ServiceRegistry = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.orders.list_orders()


@merchant_router.get(
    "/orders/{order_id}",
    response_model=MerchantOrderResponse,
    summary="Order detail with withdrawal",
)
async def merchant_get_order(
    order_id: str,
    services: ServiceRegistry = Depends(get_services),
) -> Dict[str, Any]:
    order = await services.orders.get_order_with_withdrawal(order_id)
    if order is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found"
        )
    return order


@merchant_router.get(
    "/withdrawals",
    response_model=List[WithdrawalResponse],
    summary="List withdrawals",
    description="List withdrawals, refreshing in-flight ones from the provider",
)
async def merchant_list_withdrawals(
    services: ServiceRegistry = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.withdrawals.list_withdrawals()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: ServiceRegistry = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: ServiceRegistry = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
