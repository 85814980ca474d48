"""
Wallet Monitor Service
======================

Operational surface of the monitor: start/stop monitoring, manage alerts,
query status, force checks and send test notifications.

Wires together:
- WalletRegistry: monitored wallets and their dedup/watermark state
- NoditClient: blockchain data provider
- ChangeDetector + Notifier: detection, rule matching, delivery
- PollScheduler: fixed-interval driver
- EventStream: progress events for presentation layers
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set, Union

from ..alerts.telegram import DEFAULT_TEST_MESSAGE, TelegramAlerts
from ..api.nodit import NoditClient
from ..config import config
from ..errors import InvalidAlertError, WalletNotMonitoredError
from ..models import AlertRule
from .detector import ChangeDetector, CheckResult
from .events import EventStream
from .notifier import NotificationSink, Notifier
from .registry import WalletRegistry, normalize_address, utc_now
from .scheduler import PollScheduler

logger = logging.getLogger(__name__)

_NO_SINK = object()


def _to_rule(alert: Union[AlertRule, dict]) -> AlertRule:
    if isinstance(alert, AlertRule):
        return alert
    if isinstance(alert, dict):
        return AlertRule.create(alert.get("type"), alert.get("token"), alert.get("amount"))
    raise InvalidAlertError(f"Unsupported alert definition: {alert!r}")


class WalletMonitorService:
    """
    Main monitoring service.

    Coroutine methods must be awaited on the event loop that runs the
    scheduler; the query methods are plain calls.
    """

    def __init__(
        self,
        client=None,
        sink: Optional[NotificationSink] = _NO_SINK,
        registry: WalletRegistry = None,
        events: EventStream = None,
        poll_interval: float = None,
        catchup_delay: float = None,
        clock: Callable[[], datetime] = utc_now,
        dry_run: bool = False,
    ):
        """
        Initialize the service.

        Args:
            client: Data provider (default: NoditClient from config)
            sink: Notification sink (default: TelegramAlerts from env; None disables)
            registry: Wallet registry (default: new in-memory registry)
            events: Progress event stream (default: new stream)
            poll_interval: Scheduler tick in seconds
            catchup_delay: Delay before the check that follows an added alert
            clock: Returns the current aware UTC datetime
            dry_run: Print notifications instead of sending them
        """
        if sink is _NO_SINK:
            sink = TelegramAlerts.from_env(dry_run=dry_run)

        self.client = client or NoditClient()
        self.registry = registry or WalletRegistry(clock=clock)
        self.events = events or EventStream()
        self.notifier = Notifier(sink)
        self.detector = ChangeDetector(
            self.registry, self.client, self.notifier, events=self.events, clock=clock
        )
        self.scheduler = PollScheduler(self.registry, self.detector, interval=poll_interval)
        self.catchup_delay = catchup_delay if catchup_delay is not None else config.alert_catchup_delay_sec
        self._pending: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Monitoring lifecycle
    # -------------------------------------------------------------------------

    async def start_monitoring(
        self, address: str, subscriber_id: str, alerts: Iterable[Union[AlertRule, dict]] = ()
    ) -> dict:
        """
        Monitor a wallet, or re-baseline it if already monitored.

        Starts the scheduler if it is not running yet.
        """
        rules = [_to_rule(a) for a in alerts]
        wallet = self.registry.register(address, subscriber_id, rules)
        self.events.publish("registered", wallet.address, alerts=len(rules))
        self.scheduler.start()
        return wallet.status()

    def stop_monitoring(self, address: str) -> bool:
        """Stop monitoring. Safe while a check for the wallet is in flight."""
        removed = self.registry.deregister(address)
        if removed:
            self.events.publish("deregistered", normalize_address(address))
        return removed

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def add_alert(self, address: str, alert_type, token: str, amount) -> AlertRule:
        """
        Add a rule and schedule a catch-up check for the wallet.

        The catch-up check is forced, so a matching transfer that landed inside
        the lookback window shortly before the rule existed still alerts.

        Raises:
            WalletNotMonitoredError: address is not monitored
            InvalidAlertError: bad type or amount
        """
        key = normalize_address(address)
        if key not in self.registry:
            raise WalletNotMonitoredError(key)

        rule = self.registry.add_alert(key, AlertRule.create(alert_type, token, amount))

        task = asyncio.get_running_loop().create_task(self._catch_up(key, rule))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return rule

    def remove_alert(self, address: str, rule_id: str) -> bool:
        """
        Raises:
            WalletNotMonitoredError: address is not monitored
        """
        return self.registry.remove_alert(address, rule_id)

    async def _catch_up(self, address: str, rule: AlertRule):
        await asyncio.sleep(self.catchup_delay)
        logger.info(f"Triggering catch-up check for new alert: {rule.type.value} {rule.amount} {rule.token}")
        try:
            await self.detector.check(address, force=True)
        except WalletNotMonitoredError:
            logger.info(f"Catch-up check skipped: {address} no longer monitored")
        except Exception as e:
            logger.exception(f"Catch-up check failed for {address}: {e}")

    async def drain(self):
        """Wait for every scheduled catch-up check to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_status(self, address: str) -> dict:
        wallet = self.registry.get(address)
        if wallet is None:
            return {"address": address.lower(), "is_monitored": False}
        return wallet.status()

    def list_wallets(self) -> List[dict]:
        return [wallet.status() for wallet in self.registry.list_all()]

    # -------------------------------------------------------------------------
    # Manual operations
    # -------------------------------------------------------------------------

    async def trigger_check(self, address: str) -> CheckResult:
        """
        Check a wallet now, looking back over the full lookback window.

        Raises:
            WalletNotMonitoredError: address is not monitored
        """
        key = normalize_address(address)
        if key not in self.registry:
            raise WalletNotMonitoredError(key)
        logger.info(f"Triggering immediate check for {key}")
        return await self.detector.check(key, force=True)

    async def send_test_notification(self, subscriber_id: str, message: str = None) -> bool:
        """
        Raises:
            RuntimeError: no notification sink configured
        """
        if not self.notifier.enabled:
            raise RuntimeError("Notifications are not configured")
        return await self.notifier.deliver(subscriber_id, message or DEFAULT_TEST_MESSAGE)

    async def close(self):
        """Stop the scheduler, cancel pending catch-up checks and close the provider session."""
        await self.scheduler.stop()
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
