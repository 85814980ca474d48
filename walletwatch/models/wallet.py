"""
Wallet Models
=============

Monitored wallet state, alert rules and the bounded seen-hash set.
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Iterable, Iterator, List, Optional

from ..errors import InvalidAlertError


class AlertType(Enum):
    INCOMING_FUNDS = "incoming_funds"
    OUTGOING_FUNDS = "outgoing_funds"
    NFT_RECEIVED = "nft_received"
    CUSTOM_AMOUNT = "custom_amount"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


@dataclass
class AlertRule:
    """A per-wallet rule deciding which new transactions raise an alert."""
    id: str
    type: AlertType
    token: str
    amount: Decimal
    enabled: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, alert_type, token: str, amount) -> "AlertRule":
        """
        Build a rule from user input.

        Args:
            alert_type: AlertType or its string value (e.g. "incoming_funds")
            token: Token symbol the rule applies to (e.g. "USDC")
            amount: Minimum amount, anything Decimal() accepts

        Raises:
            InvalidAlertError: unknown type, missing token or unusable amount
        """
        try:
            alert_type = alert_type if isinstance(alert_type, AlertType) else AlertType(alert_type)
        except ValueError:
            raise InvalidAlertError(f"Invalid alert type: {alert_type!r}") from None

        try:
            threshold = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise InvalidAlertError(f"Invalid alert amount: {amount!r}") from None
        if not threshold.is_finite() or threshold < 0:
            raise InvalidAlertError(f"Invalid alert amount: {amount!r}")

        if not token and alert_type is not AlertType.NFT_RECEIVED:
            raise InvalidAlertError("Alert token is required")

        return cls(id=uuid.uuid4().hex[:12], type=alert_type, token=token or "", amount=threshold)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "token": self.token,
            "amount": str(self.amount),
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
        }


class SeenHashes:
    """
    Insertion-ordered set of transaction hashes capped at `capacity`.

    Adding past capacity evicts the oldest hashes first.
    """

    def __init__(self, capacity: int = 100, hashes: Iterable[str] = ()):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._hashes: "OrderedDict[str, None]" = OrderedDict()
        for h in hashes:
            self.add(h)

    def add(self, tx_hash: str):
        self._hashes[tx_hash] = None
        self._hashes.move_to_end(tx_hash)
        while len(self._hashes) > self.capacity:
            self._hashes.popitem(last=False)

    def update(self, hashes: Iterable[str]):
        for h in hashes:
            self.add(h)

    def clear(self):
        self._hashes.clear()

    def __contains__(self, tx_hash: object) -> bool:
        return tx_hash in self._hashes

    def __len__(self) -> int:
        return len(self._hashes)

    def __iter__(self) -> Iterator[str]:
        return iter(self._hashes)


@dataclass
class MonitoredWallet:
    """
    A wallet under monitoring.

    `watermark` only moves forward between checks; registration and forced
    checks rewind it to now minus the lookback window. `generation` is bumped on
    every re-registration so in-flight checks can tell their baseline is stale.
    """
    address: str
    subscriber_id: str
    alerts: List[AlertRule]
    watermark: datetime
    seen_hashes: SeenHashes
    initialized: bool = False
    generation: int = 0
    last_checked: Optional[datetime] = None

    def rebaseline(self, now: datetime, lookback: timedelta):
        """Forget seen hashes and rewind the watermark (re-registration)."""
        self.seen_hashes.clear()
        self.watermark = now - lookback
        self.initialized = False
        self.generation += 1

    def is_due(self, now: datetime, min_spacing_sec: float) -> bool:
        """Whether enough time has passed since the watermark to re-fetch."""
        return (now - self.watermark).total_seconds() >= min_spacing_sec

    def status(self) -> dict:
        return {
            "address": self.address,
            "subscriber_id": self.subscriber_id,
            "is_monitored": True,
            "alerts": [rule.to_dict() for rule in self.alerts],
            "watermark": self.watermark.isoformat(),
            "initialized": self.initialized,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
        }
