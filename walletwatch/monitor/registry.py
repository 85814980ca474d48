"""
Wallet Registry
===============

In-memory table of monitored wallets keyed by normalized address.

The registry owns wallet state; the detector and scheduler receive it by
injection rather than reaching for a module-level map.
"""

import logging
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from ..config import config
from ..errors import InvalidAddressError, WalletNotMonitoredError
from ..models import AlertRule, MonitoredWallet, SeenHashes

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_address(address: str) -> str:
    """
    Validate and lower-case a chain address.

    Raises:
        InvalidAddressError: not 0x + 40 hex chars
    """
    if not isinstance(address, str) or not ADDRESS_RE.match(address.strip()):
        raise InvalidAddressError(f"Invalid wallet address format: {address!r}")
    return address.strip().lower()


class WalletRegistry:
    """
    Concurrency-safe mapping from address to MonitoredWallet.

    Registering an address that is already present is a deliberate
    re-baseline: subscriber and alerts are replaced, the seen set is cleared,
    the watermark rewinds to now minus the lookback and `initialized` resets.
    """

    def __init__(
        self,
        lookback: timedelta = None,
        seen_cap: int = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.lookback = lookback if lookback is not None else timedelta(minutes=config.lookback_minutes)
        self.seen_cap = seen_cap or config.seen_hashes_cap
        self.clock = clock
        self._wallets: Dict[str, MonitoredWallet] = {}
        self._lock = threading.Lock()

    def register(
        self, address: str, subscriber_id: str, alerts: Iterable[AlertRule] = ()
    ) -> MonitoredWallet:
        """Start monitoring `address`, or re-baseline it if already present."""
        key = normalize_address(address)
        now = self.clock()

        with self._lock:
            wallet = self._wallets.get(key)
            if wallet is None:
                wallet = MonitoredWallet(
                    address=key,
                    subscriber_id=str(subscriber_id),
                    alerts=list(alerts),
                    watermark=now - self.lookback,
                    seen_hashes=SeenHashes(self.seen_cap),
                )
                self._wallets[key] = wallet
                logger.info(f"Added wallet {key} to monitoring (watermark: {wallet.watermark.isoformat()})")
            else:
                wallet.subscriber_id = str(subscriber_id)
                wallet.alerts = list(alerts)
                wallet.rebaseline(now, self.lookback)
                logger.info(
                    f"Re-registered wallet {key} - cleared seen transactions "
                    f"(watermark: {wallet.watermark.isoformat()})"
                )
        return wallet

    def deregister(self, address: str) -> bool:
        """Stop monitoring. Returns False if the address was not monitored."""
        key = normalize_address(address)
        with self._lock:
            removed = self._wallets.pop(key, None)
        if removed is not None:
            logger.info(f"Removed wallet {key} from monitoring")
        return removed is not None

    def add_alert(self, address: str, rule: AlertRule) -> AlertRule:
        """
        Append a rule to a monitored wallet.

        Raises:
            WalletNotMonitoredError: unknown address
        """
        key = normalize_address(address)
        with self._lock:
            wallet = self._wallets.get(key)
            if wallet is None:
                raise WalletNotMonitoredError(key)
            # Replace rather than mutate so in-flight checks keep a stable list
            wallet.alerts = wallet.alerts + [rule]
        logger.info(f"Added alert for wallet {key}: {rule.type.value} {rule.amount} {rule.token}")
        return rule

    def remove_alert(self, address: str, rule_id: str) -> bool:
        """
        Delete a rule by id. Returns False if no such rule.

        Raises:
            WalletNotMonitoredError: unknown address
        """
        key = normalize_address(address)
        with self._lock:
            wallet = self._wallets.get(key)
            if wallet is None:
                raise WalletNotMonitoredError(key)
            remaining = [r for r in wallet.alerts if r.id != rule_id]
            removed = len(remaining) != len(wallet.alerts)
            wallet.alerts = remaining
        if removed:
            logger.info(f"Removed alert {rule_id} from wallet {key}")
        return removed

    def get(self, address: str) -> Optional[MonitoredWallet]:
        try:
            key = normalize_address(address)
        except InvalidAddressError:
            return None
        with self._lock:
            return self._wallets.get(key)

    def list_all(self) -> List[MonitoredWallet]:
        with self._lock:
            return list(self._wallets.values())

    def is_current(self, wallet: MonitoredWallet, generation: int) -> bool:
        """True if `wallet` is still registered and has not been re-baselined since `generation`."""
        with self._lock:
            return self._wallets.get(wallet.address) is wallet and wallet.generation == generation

    def __contains__(self, address: str) -> bool:
        return self.get(address) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._wallets)
