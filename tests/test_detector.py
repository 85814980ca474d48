import asyncio
from dataclasses import replace
from datetime import timedelta

from walletwatch.models import AlertRule, Direction
from walletwatch.monitor import ChangeDetector, Notifier, WalletRegistry
from walletwatch.monitor.detector import COMPLETED, DISCARDED, FAILED, SKIPPED

from .conftest import CHAT_ID, T0, WALLET_A, FakeSink, make_tx


def usdc_rule(amount="5"):
    return AlertRule.create("incoming_funds", "USDC", amount)


class TestFirstChecks:
    async def test_recent_transfer_fires_one_alert(self, registry, detector, provider, sink):
        registry.register(WALLET_A, CHAT_ID, [usdc_rule()])
        provider.token[WALLET_A] = [make_tx("0xusdc", minutes_ago=5, value="10", symbol="USDC")]

        result = await detector.check(WALLET_A)

        assert result.status == COMPLETED
        assert [tx.hash for tx in result.new_transactions] == ["0xusdc"]
        assert len(result.alerts) == 1
        assert len(sink.texts("Incoming Funds Alert")) == 1
        assert len(sink.texts("New Transactions Detected")) == 1
        assert all(chat == CHAT_ID for chat, _ in sink.messages)

        wallet = registry.get(WALLET_A)
        assert wallet.initialized
        assert "0xusdc" in wallet.seen_hashes
        assert wallet.watermark == T0

    async def test_second_check_without_new_data(self, registry, detector, provider, sink, clock):
        registry.register(WALLET_A, CHAT_ID, [usdc_rule()])
        provider.token[WALLET_A] = [make_tx("0xusdc", minutes_ago=5, value="10", symbol="USDC")]
        await detector.check(WALLET_A)
        sent = len(sink.messages)

        clock.advance(10)
        result = await detector.check(WALLET_A)

        assert result.status == COMPLETED
        assert result.new_transactions == []
        assert result.alerts == []
        assert len(sink.messages) == sent
        assert registry.get(WALLET_A).watermark == T0 + timedelta(seconds=10)

    async def test_empty_check_still_advances_watermark(self, registry, detector):
        registry.register(WALLET_A, CHAT_ID)

        result = await detector.check(WALLET_A)

        assert result.status == COMPLETED
        assert registry.get(WALLET_A).watermark == T0
        assert registry.get(WALLET_A).initialized


class TestCandidateFilter:
    async def test_idempotent_repoll(self, registry, detector, provider, sink, clock):
        registry.register(WALLET_A, CHAT_ID, [AlertRule.create("custom_amount", "ETH", "0")])
        provider.native[WALLET_A] = [make_tx("h1", minutes_ago=2), make_tx("h2", minutes_ago=1)]
        await detector.check(WALLET_A)
        sent = len(sink.messages)

        # Same list, but pretend the watermark was rewound: the seen set still dedups
        clock.advance(10)
        registry.get(WALLET_A).watermark = T0 - timedelta(minutes=30)
        result = await detector.check(WALLET_A)

        assert result.new_transactions == []
        assert len(sink.messages) == sent

    async def test_stale_transactions_ignored(self, clock, provider, sink):
        registry = WalletRegistry(lookback=timedelta(minutes=60), clock=clock)
        detector = ChangeDetector(
            registry, provider, Notifier(sink), recency_window=timedelta(minutes=30), clock=clock
        )
        registry.register(WALLET_A, CHAT_ID)
        provider.native[WALLET_A] = [make_tx("old", minutes_ago=45), make_tx("new", minutes_ago=10)]

        result = await detector.check(WALLET_A)

        assert [tx.hash for tx in result.new_transactions] == ["new"]

    async def test_transactions_at_watermark_excluded(self, registry, detector, provider):
        wallet = registry.register(WALLET_A, CHAT_ID)
        provider.native[WALLET_A] = [make_tx("edge", minutes_ago=30), make_tx("inside", minutes_ago=29)]

        result = await detector.check(WALLET_A)

        assert wallet.watermark == T0
        assert [tx.hash for tx in result.new_transactions] == ["inside"]

    async def test_sorted_newest_first_and_capped(self, registry, detector, provider):
        registry.register(WALLET_A, CHAT_ID)
        provider.native[WALLET_A] = [make_tx(f"h{i}", minutes_ago=i + 1) for i in range(12)]

        result = await detector.check(WALLET_A)

        assert [tx.hash for tx in result.new_transactions] == [f"h{i}" for i in range(10)]

    async def test_native_and_token_lists_merged(self, registry, detector, provider):
        registry.register(WALLET_A, CHAT_ID)
        provider.native[WALLET_A] = [make_tx("eth", minutes_ago=3)]
        provider.token[WALLET_A] = [make_tx("usdc", minutes_ago=1, symbol="USDC")]

        result = await detector.check(WALLET_A)

        assert [tx.hash for tx in result.new_transactions] == ["usdc", "eth"]


class TestDedupState:
    async def test_seen_set_bounded(self, clock, provider, sink):
        registry = WalletRegistry(lookback=timedelta(minutes=30), seen_cap=3, clock=clock)
        detector = ChangeDetector(registry, provider, Notifier(sink), clock=clock)
        registry.register(WALLET_A, CHAT_ID)
        provider.native[WALLET_A] = [make_tx(f"h{i}", minutes_ago=i + 1) for i in range(5)]

        await detector.check(WALLET_A)

        seen = registry.get(WALLET_A).seen_hashes
        assert len(seen) == 3
        # newest transactions survive trimming
        assert set(seen) == {"h0", "h1", "h2"}

    async def test_watermark_monotonic_across_scheduled_checks(self, registry, detector, provider, clock):
        registry.register(WALLET_A, CHAT_ID)
        previous = registry.get(WALLET_A).watermark
        for i in range(5):
            provider.native[WALLET_A] = [make_tx(f"h{i}", minutes_ago=0.01, now=clock.now)]
            clock.advance(6)
            await detector.check(WALLET_A)
            current = registry.get(WALLET_A).watermark
            assert current >= previous
            previous = current

    async def test_reregistration_resets_baseline(self, clock, provider, sink):
        registry = WalletRegistry(lookback=timedelta(minutes=10), clock=clock)
        detector = ChangeDetector(
            registry, provider, Notifier(sink), recency_window=timedelta(minutes=30), clock=clock
        )
        rules = [AlertRule.create("custom_amount", "ETH", "0")]
        registry.register(WALLET_A, CHAT_ID, rules)
        provider.native[WALLET_A] = [make_tx("recent", minutes_ago=5)]
        first = await detector.check(WALLET_A)
        assert len(first.alerts) == 1

        clock.advance(60)
        registry.register(WALLET_A, CHAT_ID, rules)
        # new watermark is T0 + 60s - 10min
        provider.native[WALLET_A] = [
            make_tx("recent", minutes_ago=5),
            make_tx("older", minutes_ago=9.5),
        ]
        clock.advance(1)
        second = await detector.check(WALLET_A)

        assert [tx.hash for tx in second.new_transactions] == ["recent"]
        assert len(second.alerts) == 1

    async def test_delivery_failure_is_not_retried(self, registry, provider, clock):
        failing = FakeSink(fail=True)
        detector = ChangeDetector(registry, provider, Notifier(failing), clock=clock)
        registry.register(WALLET_A, CHAT_ID, [usdc_rule()])
        provider.token[WALLET_A] = [make_tx("0xusdc", minutes_ago=5, value="10", symbol="USDC")]

        first = await detector.check(WALLET_A)
        clock.advance(10)
        second = await detector.check(WALLET_A)

        assert len(first.alerts) == 1
        assert first.notifications_sent == 0
        assert second.alerts == []
        assert "0xusdc" in registry.get(WALLET_A).seen_hashes


class TestRules:
    async def test_two_rules_two_alerts(self, registry, detector, provider, sink):
        registry.register(WALLET_A, CHAT_ID, [usdc_rule(), AlertRule.create("custom_amount", "USDC", "1")])
        provider.token[WALLET_A] = [make_tx("0xusdc", minutes_ago=1, value="10", symbol="USDC")]

        result = await detector.check(WALLET_A)

        assert len(result.alerts) == 2
        assert len(sink.texts("Incoming Funds Alert")) == 1
        assert len(sink.texts("Custom Amount Alert")) == 1

    async def test_no_sink_still_detects(self, registry, provider, clock):
        detector = ChangeDetector(registry, provider, Notifier(None), clock=clock)
        registry.register(WALLET_A, CHAT_ID, [usdc_rule()])
        provider.token[WALLET_A] = [make_tx("0xusdc", minutes_ago=1, value="10", symbol="USDC")]

        result = await detector.check(WALLET_A)

        assert result.status == COMPLETED
        assert len(result.alerts) == 1
        assert result.notifications_sent == 0
        assert registry.get(WALLET_A).watermark == T0


class TestProviderFailures:
    async def test_partial_failure_isolated(self, registry, detector, provider, sink):
        registry.register(WALLET_A, CHAT_ID, [usdc_rule()])
        provider.fail_native.add(WALLET_A)
        provider.token[WALLET_A] = [make_tx("0xusdc", minutes_ago=1, value="10", symbol="USDC")]

        result = await detector.check(WALLET_A)

        assert result.status == COMPLETED
        assert set(result.fetch_errors) == {"native"}
        assert len(result.alerts) == 1
        assert registry.get(WALLET_A).watermark == T0

    async def test_total_failure_keeps_watermark(self, registry, detector, provider, sink):
        wallet = registry.register(WALLET_A, CHAT_ID)
        before = wallet.watermark
        provider.fail_native.add(WALLET_A)
        provider.fail_token.add(WALLET_A)

        result = await detector.check(WALLET_A)

        assert result.status == FAILED
        assert set(result.fetch_errors) == {"native", "token"}
        assert wallet.watermark == before
        assert not wallet.initialized
        assert sink.messages == []

    async def test_forced_total_failure_restores_watermark(self, registry, detector, provider, clock):
        wallet = registry.register(WALLET_A, CHAT_ID)
        await detector.check(WALLET_A)
        provider.fail_native.add(WALLET_A)
        provider.fail_token.add(WALLET_A)
        clock.advance(60)

        result = await detector.check(WALLET_A, force=True)

        assert result.status == FAILED
        assert wallet.watermark == T0


class TestScheduling:
    async def test_spacing_guard(self, registry, detector, provider, clock):
        registry.register(WALLET_A, CHAT_ID)
        await detector.check(WALLET_A)
        calls = len(provider.calls)

        clock.advance(2)
        result = await detector.check(WALLET_A)

        assert result.status == SKIPPED
        assert len(provider.calls) == calls

    async def test_forced_check_bypasses_spacing_and_rewinds(self, registry, detector, provider, clock):
        registry.register(WALLET_A, CHAT_ID)
        await detector.check(WALLET_A)

        # Indexed late: timestamp is before the current watermark
        provider.native[WALLET_A] = [make_tx("late", minutes_ago=2)]
        clock.advance(2)
        assert (await detector.check(WALLET_A)).status == SKIPPED

        result = await detector.check(WALLET_A, force=True)

        assert [tx.hash for tx in result.new_transactions] == ["late"]
        assert registry.get(WALLET_A).watermark == clock.now

    async def test_fetch_always_bypasses_cache(self, registry, detector, provider):
        registry.register(WALLET_A, CHAT_ID)
        await detector.check(WALLET_A)
        assert provider.calls and all(use_cache is False for _, _, use_cache in provider.calls)


class TestConcurrency:
    async def test_same_wallet_checks_serialized(self, registry, detector, provider, sink):
        registry.register(WALLET_A, CHAT_ID, [usdc_rule()])
        provider.token[WALLET_A] = [make_tx("0xusdc", minutes_ago=1, value="10", symbol="USDC")]

        results = await asyncio.gather(
            detector.check(WALLET_A, force=True),
            detector.check(WALLET_A, force=True),
        )

        assert sum(len(r.alerts) for r in results) == 1
        assert len(sink.texts("Incoming Funds Alert")) == 1

    async def test_deregistered_mid_check_discards(self, registry, detector, provider, sink):
        wallet = registry.register(WALLET_A, CHAT_ID, [usdc_rule()])
        before = wallet.watermark
        provider.token[WALLET_A] = [make_tx("0xusdc", minutes_ago=1, value="10", symbol="USDC")]
        provider.gate = asyncio.Event()

        task = asyncio.ensure_future(detector.check(WALLET_A))
        await provider.entered.wait()
        registry.deregister(WALLET_A)
        provider.gate.set()
        result = await task

        assert result.status == DISCARDED
        assert sink.messages == []
        assert wallet.watermark == before
        assert len(wallet.seen_hashes) == 0
        assert WALLET_A not in detector._locks

    async def test_reregistered_mid_check_keeps_new_baseline(self, registry, detector, provider, sink, clock):
        wallet = registry.register(WALLET_A, CHAT_ID)
        provider.native[WALLET_A] = [make_tx("h1", minutes_ago=1)]
        provider.gate = asyncio.Event()

        task = asyncio.ensure_future(detector.check(WALLET_A))
        await provider.entered.wait()
        registry.register(WALLET_A, CHAT_ID)
        provider.gate.set()
        result = await task

        assert result.status == DISCARDED
        assert wallet.watermark == T0 - timedelta(minutes=30)
        assert "h1" not in wallet.seen_hashes
        assert not wallet.initialized


class TestIngest:
    async def test_pushed_transaction_alerts(self, registry, detector, provider, sink):
        registry.register(WALLET_A, CHAT_ID, [AlertRule.create("outgoing_funds", "ETH", "1")])
        tx = make_tx("pushed", minutes_ago=0.5, value="3", direction=Direction.OUT)

        result = await detector.ingest(WALLET_A, [tx])

        assert len(result.alerts) == 1
        assert provider.calls == []
        assert "pushed" in registry.get(WALLET_A).seen_hashes

        again = await detector.ingest(WALLET_A, [tx])
        assert again.alerts == []

    async def test_push_leaves_polled_transactions_eligible(self, registry, detector, provider, sink, clock):
        wallet = registry.register(WALLET_A, CHAT_ID, [AlertRule.create("incoming_funds", "ETH", "1")])
        watermark = wallet.watermark
        provider.native[WALLET_A] = [make_tx("polled", minutes_ago=1, value="5")]

        await detector.ingest(WALLET_A, [make_tx("pushed", minutes_ago=0.5, value="0.5")])

        assert wallet.watermark == watermark
        assert wallet.last_checked is None

        clock.advance(10)
        result = await detector.check(WALLET_A)

        assert [tx.hash for tx in result.new_transactions] == ["polled"]
        assert len(result.alerts) == 1

    async def test_malformed_pushed_records_dropped(self, registry, detector):
        registry.register(WALLET_A, CHAT_ID, [AlertRule.create("custom_amount", "ETH", "0")])
        good = make_tx("good", minutes_ago=0.5)
        naive = replace(make_tx("naive", minutes_ago=0.5), timestamp=(T0 - timedelta(seconds=20)).replace(tzinfo=None))
        unhashed = make_tx("", minutes_ago=0.5)

        result = await detector.ingest(WALLET_A, [naive, unhashed, good])

        assert result.status == COMPLETED
        assert [tx.hash for tx in result.new_transactions] == ["good"]
        assert len(result.alerts) == 1


async def test_events_published(registry, detector, provider, events):
    queue = events.subscribe()
    registry.register(WALLET_A, CHAT_ID, [usdc_rule()])
    provider.token[WALLET_A] = [make_tx("0xusdc", minutes_ago=1, value="10", symbol="USDC")]

    await detector.check(WALLET_A)

    kinds = []
    while not queue.empty():
        kinds.append(queue.get_nowait().kind)
    assert kinds == ["check_started", "transactions_detected", "alert_fired", "check_completed"]
