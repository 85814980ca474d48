"""
Shared Data Models
==================

Dataclasses used across the monitor.
"""

from .transaction import Direction, Transaction, TransactionKind
from .wallet import AlertRule, AlertType, MonitoredWallet, SeenHashes

__all__ = [
    "Direction",
    "Transaction",
    "TransactionKind",
    "AlertRule",
    "AlertType",
    "MonitoredWallet",
    "SeenHashes",
]
