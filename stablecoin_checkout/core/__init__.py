"""Core checkout logic."""
from .fingerprint import AllocationExhaustedError, FingerprintAllocator
from .lifecycle import InvalidTransitionError, OrderLifecycle, OrderStatus, WithdrawalStatus
from .orders import CheckoutUnavailableError, OrderService, OrderValidationError
from .outbox import PayoutDispatcher
from .payouts import PayoutOrchestrator, WithdrawalMonitor
from .reconciler import DepositReconciler

__all__ = [
    "AllocationExhaustedError",
    "CheckoutUnavailableError",
    "DepositReconciler",
    "FingerprintAllocator",
    "InvalidTransitionError",
    "OrderLifecycle",
    "OrderService",
    "OrderStatus",
    "OrderValidationError",
    "PayoutDispatcher",
    "PayoutOrchestrator",
    "WithdrawalMonitor",
    "WithdrawalStatus",
]
