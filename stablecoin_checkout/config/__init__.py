"""Configuration package for stablecoin checkout."""
from .settings import PayoutRecipient, Settings, get_settings

__all__ = ["PayoutRecipient", "Settings", "get_settings"]
