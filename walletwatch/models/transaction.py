"""
Transaction Models
==================

Normalized transaction shape produced by the data provider client.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class Direction(Enum):
    """Flow direction relative to the monitored wallet."""
    IN = "IN"
    OUT = "OUT"


class TransactionKind(Enum):
    NATIVE = "native"
    TOKEN = "token"
    # Reserved: the transaction feed never produces NFT transfers
    NFT = "nft"


@dataclass(frozen=True)
class Transaction:
    """A native transfer or token transfer touching a monitored wallet."""
    hash: str
    direction: Direction
    value: str                  # decimal string, already scaled by token decimals
    token_symbol: str           # "ETH", "USDC", ...
    from_address: str
    to_address: str
    timestamp: datetime         # timezone-aware UTC
    kind: TransactionKind
    token_name: Optional[str] = None
    token_address: Optional[str] = None
    block_number: Optional[int] = None

    @property
    def amount(self) -> Decimal:
        """Numeric value for threshold comparisons."""
        return Decimal(self.value)

    @property
    def counterparty(self) -> str:
        """The other side of the transfer."""
        return self.from_address if self.direction is Direction.IN else self.to_address
