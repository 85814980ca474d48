import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from walletwatch.errors import ProviderError
from walletwatch.models import Direction, Transaction, TransactionKind
from walletwatch.monitor import ChangeDetector, EventStream, Notifier, WalletRegistry

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

WALLET_A = "0x" + "a" * 40
WALLET_B = "0x" + "b" * 40
OTHER = "0x" + "c" * 40
CHAT_ID = "12345"


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


def make_tx(
    tx_hash: str,
    minutes_ago: float = 1,
    value: str = "1",
    symbol: str = "ETH",
    direction: Direction = Direction.IN,
    kind: TransactionKind = None,
    wallet: str = WALLET_A,
    now: datetime = T0,
) -> Transaction:
    if kind is None:
        kind = TransactionKind.NATIVE if symbol == "ETH" else TransactionKind.TOKEN
    sender, recipient = (OTHER, wallet) if direction is Direction.IN else (wallet, OTHER)
    return Transaction(
        hash=tx_hash,
        direction=direction,
        value=value,
        token_symbol=symbol,
        from_address=sender,
        to_address=recipient,
        timestamp=now - timedelta(minutes=minutes_ago),
        kind=kind,
    )


class FakeProvider:
    """In-memory stand-in for NoditClient."""

    def __init__(self):
        self.native: Dict[str, List[Transaction]] = {}
        self.token: Dict[str, List[Transaction]] = {}
        self.fail_native = set()
        self.fail_token = set()
        self.calls: List[tuple] = []
        self.gate: asyncio.Event = None
        self.entered = asyncio.Event()
        self.closed = False

    async def _wait(self):
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()

    async def list_native_transactions(self, address, limit=20, use_cache=True):
        self.calls.append(("native", address, use_cache))
        await self._wait()
        if address in self.fail_native:
            raise ProviderError("native feed down")
        return list(self.native.get(address, []))

    async def list_token_transfers(self, address, limit=20, use_cache=True):
        self.calls.append(("token", address, use_cache))
        await self._wait()
        if address in self.fail_token:
            raise ProviderError("token feed down")
        return list(self.token.get(address, []))

    async def close(self):
        self.closed = True


class FakeSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: List[tuple] = []

    def send(self, subscriber_id, text):
        self.messages.append((subscriber_id, text))
        return not self.fail

    def texts(self, containing: str = ""):
        return [t for _, t in self.messages if containing in t]


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def events():
    return EventStream()


@pytest.fixture
def registry(clock):
    return WalletRegistry(lookback=timedelta(minutes=30), seen_cap=100, clock=clock)


@pytest.fixture
def detector(registry, provider, sink, events, clock):
    return ChangeDetector(
        registry,
        provider,
        Notifier(sink),
        events=events,
        recency_window=timedelta(minutes=30),
        max_new=10,
        fetch_limit=20,
        min_spacing_sec=5,
        clock=clock,
    )
