"""Background workers for async processing."""
from .payout_worker import start_payout_worker

__all__ = ["start_payout_worker"]
