"""
API Package
===========

External API clients.

Components:
- nodit.py: NoditClient, the blockchain data provider (native + token transfers)
"""

from .nodit import (
    NoditClient,
    parse_native_transactions,
    parse_token_transfers,
)

__all__ = [
    "NoditClient",
    "parse_native_transactions",
    "parse_token_transfers",
]
