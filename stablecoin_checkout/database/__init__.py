"""Database package for stablecoin checkout."""
from .connection import close_db, create_engine, create_session_factory, init_db
from .ledger import FingerprintCollisionError, LedgerStore
from .models import Base, Order, OrderItem, OutboxEvent, Product, Withdrawal

__all__ = [
    "Base",
    "FingerprintCollisionError",
    "LedgerStore",
    "Order",
    "OrderItem",
    "OutboxEvent",
    "Product",
    "Withdrawal",
    "close_db",
    "create_engine",
    "create_session_factory",
    "init_db",
]
