"""
Notifier
========

Formats alert and batch-summary messages and hands them to the sink.

Delivery is at-most-once: a failed send is logged and forgotten. The
transaction is already in the wallet's seen set, so it is never re-sent.
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from html import escape
from typing import List, Optional, Protocol, Sequence

from ..config import config
from ..models import AlertRule, AlertType, Direction, Transaction, TransactionKind

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def send(self, subscriber_id: str, text: str) -> bool: ...


_ALERT_HEADERS = {
    AlertType.INCOMING_FUNDS: "💰 <b>Incoming Funds Alert!</b>",
    AlertType.OUTGOING_FUNDS: "📤 <b>Outgoing Funds Alert!</b>",
    AlertType.NFT_RECEIVED: "🎨 <b>NFT Received Alert!</b>",
    AlertType.CUSTOM_AMOUNT: "🔔 <b>Custom Amount Alert!</b>",
}


def _short(value: str, places: int = 6) -> str:
    try:
        return f"{Decimal(value):.{places}f}"
    except (InvalidOperation, ValueError):
        return value


def format_alert(rule: AlertRule, tx: Transaction) -> str:
    """One message per (rule, transaction) that fired."""
    verb = "Received" if tx.direction is Direction.IN else "Sent"
    party_label = "From" if tx.direction is Direction.IN else "To"
    symbol = escape(tx.token_symbol)
    asset = escape(tx.token_name or tx.token_symbol) if rule.type is AlertType.NFT_RECEIVED else f"{tx.value} {symbol}"

    lines = [
        _ALERT_HEADERS[rule.type],
        "",
        f"{verb} <b>{asset}</b>",
        "",
        "<i>Transaction Details:</i>",
        f"- Rule: {rule.type.label} ≥ {rule.amount} {escape(rule.token)}",
        f"- Amount: {tx.value} {symbol}",
        f"- {party_label}: <code>{escape(tx.counterparty)}</code>",
        f"- Hash: <code>{escape(tx.hash)}</code>",
        "",
        f"<a href=\"{config.tx_link(tx.hash)}\">🔗 View on explorer</a>",
    ]
    return "\n".join(lines)


def format_summary(address: str, transactions: Sequence[Transaction]) -> str:
    """Compact listing of everything new found by one check."""
    rows = []
    for tx in transactions:
        arrow = "📥" if tx.direction is Direction.IN else "📤"
        kind = "ETH" if tx.kind is TransactionKind.NATIVE else "Token"
        rows.append(f"{arrow} <b>{_short(tx.value)} {escape(tx.token_symbol)}</b> ({kind})")

    lines = [
        "📊 <b>New Transactions Detected!</b>",
        "",
        f"Wallet: <code>{address}</code>",
        "",
        *rows,
        "",
        f"<a href=\"{config.address_link(address)}\">🔗 View on explorer</a>",
    ]
    return "\n".join(lines)


class Notifier:
    """Sends formatted messages through a sink, never raising."""

    def __init__(self, sink: Optional[NotificationSink], timeout: float = None):
        self.sink = sink
        self.timeout = timeout or config.telegram_timeout_sec * 2

    @property
    def enabled(self) -> bool:
        return self.sink is not None

    async def deliver(self, subscriber_id: str, text: str) -> bool:
        """Send one message. Failures are logged and reported as False."""
        if self.sink is None:
            logger.warning(f"Notifications not configured - skipping message to {subscriber_id}")
            return False

        try:
            # The sink does blocking HTTP; keep it off the event loop
            delivered = await asyncio.wait_for(
                asyncio.to_thread(self.sink.send, subscriber_id, text),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Notification to {subscriber_id} timed out")
            return False
        except Exception as e:
            logger.error(f"Notification to {subscriber_id} failed: {type(e).__name__}")
            return False

        if not delivered:
            logger.error(f"Notification to {subscriber_id} was not delivered")
        return bool(delivered)

    async def send_alert(self, subscriber_id: str, rule: AlertRule, tx: Transaction) -> bool:
        return await self.deliver(subscriber_id, format_alert(rule, tx))

    async def send_summary(self, subscriber_id: str, address: str, transactions: List[Transaction]) -> bool:
        if not transactions:
            return False
        return await self.deliver(subscriber_id, format_summary(address, transactions))
