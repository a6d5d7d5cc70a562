"""Ledger client interface and adapters."""

from .base import LedgerClient  # noqa: F401
from .gateway import GatewayLedgerClient  # noqa: F401
from .retry import TransientRetry  # noqa: F401

__all__ = ["LedgerClient", "GatewayLedgerClient", "TransientRetry"]
