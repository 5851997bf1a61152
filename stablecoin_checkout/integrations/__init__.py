"""External integrations (payment provider, webhooks)."""
from .provider_client import ProviderClient, ProviderError, ProviderErrorType
from .webhook_handler import WebhookError, WebhookHandler

__all__ = [
    "ProviderClient",
    "ProviderError",
    "ProviderErrorType",
    "WebhookError",
    "WebhookHandler",
]
