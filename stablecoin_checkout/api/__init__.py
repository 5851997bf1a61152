"""FastAPI application and routes."""
from .main import create_app
from .schemas import CreateOrderRequest, CreateOrderResponse, OrderResponse, WebhookResponse

__all__ = [
    "create_app",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "OrderResponse",
    "WebhookResponse",
]
