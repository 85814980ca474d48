"""
Monitor Package
===============

Polling-based wallet monitoring.

Components:
- registry.py: WalletRegistry, monitored wallets and their watermark/seen state
- detector.py: ChangeDetector, new-transaction detection per wallet
- matcher.py: alert rule evaluation
- notifier.py: alert and summary messages
- scheduler.py: PollScheduler, fixed-interval driver
- events.py: progress event stream
- service.py: WalletMonitorService, the operational surface
"""

from .detector import ChangeDetector, CheckResult
from .events import EventStream, MonitorEvent
from .matcher import matching_rules, rule_fires
from .notifier import Notifier, format_alert, format_summary
from .registry import WalletRegistry, normalize_address
from .scheduler import PollScheduler
from .service import WalletMonitorService

__all__ = [
    "ChangeDetector",
    "CheckResult",
    "EventStream",
    "MonitorEvent",
    "matching_rules",
    "rule_fires",
    "Notifier",
    "format_alert",
    "format_summary",
    "WalletRegistry",
    "normalize_address",
    "PollScheduler",
    "WalletMonitorService",
]
