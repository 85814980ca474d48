"""
Change Detector
===============

Per-wallet check: fetch the provider's recent native and token transfers,
keep the ones that are new since the watermark and not already seen, run
them through the alert rules, notify, then commit the new watermark.

Checks for the same wallet are serialized by a per-wallet asyncio.Lock.
A check whose wallet was deregistered or re-registered while it was running
commits nothing.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..config import config
from ..errors import WalletNotMonitoredError
from ..models import AlertRule, MonitoredWallet, Transaction
from .events import EventStream
from .matcher import matching_rules
from .notifier import Notifier
from .registry import WalletRegistry, utc_now

logger = logging.getLogger(__name__)

COMPLETED = "completed"
SKIPPED = "skipped"
FAILED = "failed"
DISCARDED = "discarded"


@dataclass
class CheckResult:
    """Outcome of a single wallet check."""
    address: str
    status: str
    new_transactions: List[Transaction] = field(default_factory=list)
    alerts: List[Tuple[AlertRule, Transaction]] = field(default_factory=list)
    notifications_sent: int = 0
    fetch_errors: Dict[str, str] = field(default_factory=dict)
    watermark: Optional[datetime] = None


class ChangeDetector:
    """
    Detects new transactions for monitored wallets.

    Candidate filter, applied to the merged native + token lists:
    - timestamp strictly after the wallet's watermark
    - hash not in the wallet's seen set
    - no older than the recency window (guards against stale provider rows)

    Candidates are processed newest first and capped per check.
    """

    def __init__(
        self,
        registry: WalletRegistry,
        client,
        notifier: Notifier,
        events: EventStream = None,
        recency_window: timedelta = None,
        max_new: int = None,
        fetch_limit: int = None,
        min_spacing_sec: float = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            registry: Wallet registry owning per-wallet state
            client: Data provider with list_native_transactions / list_token_transfers
            notifier: Notifier for alert and summary messages
            events: Optional progress event stream
            recency_window: Max age of a transaction still treated as new
            max_new: Cap on new transactions handled per check
            fetch_limit: Rows requested per category
            min_spacing_sec: Minimum time since the watermark before a scheduled re-fetch
            clock: Returns the current aware UTC datetime
        """
        self.registry = registry
        self.client = client
        self.notifier = notifier
        self.events = events or EventStream()
        self.recency_window = recency_window or timedelta(minutes=config.recency_window_minutes)
        self.max_new = max_new or config.max_new_per_check
        self.fetch_limit = fetch_limit or config.fetch_limit
        self.min_spacing_sec = min_spacing_sec if min_spacing_sec is not None else config.min_check_spacing_sec
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = self._locks[address] = asyncio.Lock()
        return lock

    def is_checking(self, address: str) -> bool:
        lock = self._locks.get(address.lower())
        return lock is not None and lock.locked()

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def check(self, address: str, force: bool = False) -> CheckResult:
        """
        Check one wallet.

        Args:
            address: Monitored wallet address
            force: Bypass the spacing guard and rewind the watermark to
                now minus the lookback before fetching

        Raises:
            WalletNotMonitoredError: address is not registered
        """
        wallet = self.registry.get(address)
        if wallet is None:
            raise WalletNotMonitoredError(address)

        try:
            async with self._lock_for(wallet.address):
                return await self._check_locked(wallet, force)
        finally:
            self._prune_lock(wallet.address)

    async def ingest(self, address: str, transactions: Iterable[Transaction]) -> CheckResult:
        """
        Run externally pushed transactions through the same pipeline.

        No fetch and no spacing guard; the watermark and seen set still filter.
        The watermark is not advanced: transactions that only a poll would see
        must stay eligible for the next scheduled check.

        Raises:
            WalletNotMonitoredError: address is not registered
        """
        wallet = self.registry.get(address)
        if wallet is None:
            raise WalletNotMonitoredError(address)

        try:
            async with self._lock_for(wallet.address):
                wallet = self.registry.get(wallet.address) or wallet
                if not self.registry.is_current(wallet, wallet.generation):
                    return self._discard(wallet.address, "deregistered before ingest")
                return await self._process(
                    wallet, wallet.generation, list(transactions), self.clock(), commit_watermark=False
                )
        finally:
            self._prune_lock(wallet.address)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _check_locked(self, wallet: MonitoredWallet, force: bool) -> CheckResult:
        # May have changed while we waited for the lock
        wallet = self.registry.get(wallet.address) or wallet
        if not self.registry.is_current(wallet, wallet.generation):
            return self._discard(wallet.address, "deregistered before check")

        now = self.clock()
        previous = wallet.watermark
        if force:
            wallet.watermark = now - self.registry.lookback
            logger.info(f"Forced check for {wallet.address}: looking back to {wallet.watermark.isoformat()}")
        elif not wallet.is_due(now, self.min_spacing_sec):
            self.events.publish("check_skipped", wallet.address, reason="spacing")
            return CheckResult(wallet.address, SKIPPED, watermark=wallet.watermark)

        generation = wallet.generation
        if not wallet.initialized:
            logger.info(f"Initializing monitoring baseline for {wallet.address}")
        self.events.publish("check_started", wallet.address, forced=force)

        transactions, errors = await self._fetch(wallet.address)
        if len(errors) == 2:
            if self.registry.is_current(wallet, generation):
                wallet.watermark = previous
            logger.warning(f"All fetches failed for {wallet.address}; watermark left at {wallet.watermark.isoformat()}")
            self.events.publish("check_failed", wallet.address, errors=errors)
            return CheckResult(wallet.address, FAILED, fetch_errors=errors, watermark=wallet.watermark)

        result = await self._process(wallet, generation, transactions, now)
        result.fetch_errors = errors
        return result

    def _prune_lock(self, address: str):
        """Forget the lock of a wallet that is no longer monitored."""
        lock = self._locks.get(address)
        if lock is not None and not lock.locked() and address not in self.registry:
            del self._locks[address]

    async def _fetch(self, address: str) -> Tuple[List[Transaction], Dict[str, str]]:
        """
        Fetch both categories concurrently, always bypassing the response cache.

        A failed category degrades to an empty list and is reported in the
        returned error map.
        """
        native, token = await asyncio.gather(
            self.client.list_native_transactions(address, self.fetch_limit, use_cache=False),
            self.client.list_token_transfers(address, self.fetch_limit, use_cache=False),
            return_exceptions=True,
        )

        transactions: List[Transaction] = []
        errors: Dict[str, str] = {}
        for category, outcome in (("native", native), ("token", token)):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                errors[category] = f"{type(outcome).__name__}: {outcome}"
                logger.warning(f"Error fetching {category} transactions for {address}: {errors[category]}")
                self.events.publish("fetch_failed", address, category=category, error=errors[category])
                continue
            logger.debug(f"Found {len(outcome)} {category} transactions for {address}")
            transactions.extend(outcome)

        return transactions, errors

    def select_candidates(
        self, wallet: MonitoredWallet, transactions: Iterable[Transaction], now: datetime
    ) -> List[Transaction]:
        """Filter to new, unseen, recent transactions; newest first, capped."""
        candidates = []
        for tx in dict.fromkeys(transactions):
            if not tx.hash or tx.timestamp.tzinfo is None:
                logger.debug(f"Dropping malformed tx: {tx.hash!r}")
                continue
            age = now - tx.timestamp
            if age > self.recency_window:
                logger.debug(f"Filtered out old tx {tx.hash} ({int(age.total_seconds())}s old)")
            elif tx.timestamp <= wallet.watermark:
                logger.debug(f"Filtered out tx {tx.hash} at or before watermark")
            elif tx.hash in wallet.seen_hashes:
                logger.debug(f"Filtered out seen tx {tx.hash} (already processed)")
            else:
                candidates.append(tx)

        candidates.sort(key=lambda t: t.timestamp, reverse=True)
        return candidates[:self.max_new]

    async def _process(
        self,
        wallet: MonitoredWallet,
        generation: int,
        transactions: List[Transaction],
        now: datetime,
        commit_watermark: bool = True,
    ) -> CheckResult:
        candidates = self.select_candidates(wallet, transactions, now)
        result = CheckResult(wallet.address, COMPLETED, new_transactions=candidates)

        if not self.registry.is_current(wallet, generation):
            return self._discard(wallet.address, "deregistered during fetch")

        # Mark seen before notifying: delivery is at-most-once.
        # Oldest first, so trimming evicts the oldest hashes.
        wallet.seen_hashes.update(tx.hash for tx in reversed(candidates))
        if commit_watermark:
            wallet.initialized = True

        if candidates:
            logger.info(f"Found {len(candidates)} new transactions for {wallet.address}")
            self.events.publish(
                "transactions_detected", wallet.address, hashes=[tx.hash for tx in candidates]
            )

            rules = list(wallet.alerts)
            subscriber = wallet.subscriber_id
            for tx in candidates:
                for rule in matching_rules(rules, tx):
                    logger.info(
                        f"Alert fired for {wallet.address}: {rule.type.value} {rule.token} >= {rule.amount} "
                        f"({tx.direction.value} {tx.value} {tx.token_symbol}, {tx.hash})"
                    )
                    result.alerts.append((rule, tx))
                    self.events.publish("alert_fired", wallet.address, rule_id=rule.id, hash=tx.hash)
                    if await self.notifier.send_alert(subscriber, rule, tx):
                        result.notifications_sent += 1

            if await self.notifier.send_summary(subscriber, wallet.address, candidates):
                result.notifications_sent += 1
        else:
            logger.debug(f"No new transactions found for {wallet.address}")

        if not self.registry.is_current(wallet, generation):
            return self._discard(wallet.address, "deregistered during notify")

        if commit_watermark:
            wallet.watermark = max(wallet.watermark, now)
            wallet.last_checked = now
            logger.debug(f"Updated watermark for {wallet.address} to {now.isoformat()}")
        result.watermark = wallet.watermark
        self.events.publish(
            "check_completed", wallet.address, new=len(candidates), alerts=len(result.alerts)
        )
        return result

    def _discard(self, address: str, reason: str) -> CheckResult:
        logger.info(f"Discarding check result for {address}: {reason}")
        self.events.publish("check_discarded", address, reason=reason)
        return CheckResult(address, DISCARDED)
