"""
Wallet Watch
============

Polls a blockchain data provider for watched addresses and sends Telegram
alerts when new transactions match per-wallet rules.
"""

from .errors import InvalidAddressError, InvalidAlertError, ProviderError, WalletNotMonitoredError
from .models import AlertRule, AlertType, Direction, Transaction, TransactionKind
from .monitor import WalletMonitorService

__version__ = "0.1.0"

__all__ = [
    "WalletMonitorService",
    "AlertRule",
    "AlertType",
    "Direction",
    "Transaction",
    "TransactionKind",
    "InvalidAddressError",
    "InvalidAlertError",
    "ProviderError",
    "WalletNotMonitoredError",
]
