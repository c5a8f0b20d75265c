"""
Unit tests for webhook parsing and event processing.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeClock
from watchr.config import NATIVE_SOL
from watchr.errors import NoViableRoute, SwapFailed
from watchr.guards import BuyGuard, EventDedupCache
from watchr.ingest import EventProcessor, parse_events
from watchr.qualifier import Qualification
from watchr.router import SellOutcome
from watchr.settings import Settings, SettingsStore
from watchr.signals import SignalStore

WALLET = "WaLLet1111111111111111111111111111111111111"
OTHER_WALLET = "Other22222222222222222222222222222222222222"
MINT = "MiNT333333333333333333333333333333333333333"


def swap(actor=WALLET, signature="sig-1", transfers=None, **extra):
    event = {"type": "SWAP", "feePayer": actor, "signature": signature, "tokenTransfers": transfers or []}
    event.update(extra)
    return event


def received(mint, amount, actor=WALLET):
    return {"mint": mint, "tokenAmount": amount, "toUserAccount": actor, "fromUserAccount": "pool"}


def sent(mint, amount, actor=WALLET):
    return {"mint": mint, "tokenAmount": amount, "toUserAccount": "pool", "fromUserAccount": actor}


@pytest.fixture
def signals(tmp_path, clock):
    return SignalStore(str(tmp_path / "signals.json"), clock=clock)


@pytest.fixture
def settings(tmp_path):
    return SettingsStore(str(tmp_path / "settings.json"), defaults=Settings(-0.7, None, 15000))


def make_processor(signals, settings, verdict=None, trader=None, guard=None, snapshot=None):
    qualifier = MagicMock()
    qualifier.qualify = AsyncMock(
        return_value=verdict or Qualification(True, source="basic", price_usd=1.25, symbol="TKN")
    )
    qualifier.price_snapshot = AsyncMock(return_value=snapshot)
    notifier = MagicMock()
    notifier.send = AsyncMock(return_value=True)
    processor = EventProcessor(
        signals,
        settings,
        qualifier,
        notifier,
        EventDedupCache(ttl_seconds=300, clock=FakeClock()),
        guard or BuyGuard(clock=FakeClock()),
        buy_lock_seconds=180,
        trader=trader,
    )
    return processor, qualifier, notifier


def make_trader(buy=None, sell_all=None):
    trader = MagicMock()
    trader.sol_budget = 0.05
    trader.address = "Trader1111111111111111111111111111111111111"
    trader.buy = buy or AsyncMock(return_value="bot-buy-sig")
    trader.sell_all = sell_all or AsyncMock(return_value=SellOutcome("bot-sell-sig", "direct", 1000))
    return trader


class TestParseEvents:
    """Webhook payload parsing."""

    def test_single_object_and_list(self):
        body = swap(transfers=[received(MINT, 10)])

        assert len(parse_events(body)) == 1
        assert len(parse_events([body, body])) == 2

    def test_non_swap_types_ignored(self):
        assert parse_events(swap(type="TRANSFER", transfers=[received(MINT, 10)])) == []

    def test_actor_and_signature_fallbacks(self):
        event = {"type": "SWAP_EVENT", "account": WALLET, "txHash": "tx-9",
                 "tokenTransfers": [received(MINT, 1)]}

        parsed = parse_events(event)[0]

        assert parsed.actor == WALLET
        assert parsed.signature == "tx-9"

    def test_missing_actor_ignored(self):
        assert parse_events({"type": "SWAP", "tokenTransfers": [received(MINT, 1)]}) == []

    def test_aggregates_per_mint_and_side(self):
        parsed = parse_events(swap(transfers=[
            received(MINT, 10),
            received(MINT, 5.5),
            sent(NATIVE_SOL, 0.2),
            received("Other", 0),
            {"mint": MINT, "tokenAmount": None, "toUserAccount": WALLET},
        ]))[0]

        assert parsed.buys == {MINT: 15.5}
        assert parsed.sells == {NATIVE_SOL: 0.2}


class TestBuyProcessing:
    """Buy triggers."""

    @pytest.mark.asyncio
    async def test_qualified_buy_opens_signal_with_default_stop_loss(self, signals, settings):
        processor, qualifier, _ = make_processor(signals, settings)

        outcomes = await processor.process(swap(transfers=[received(MINT, 100)]))

        assert outcomes == ["qualified"]
        qualifier.qualify.assert_awaited_once_with(WALLET, MINT, 100.0)
        signal = await signals.find_open(MINT)
        assert signal.stop_loss_pct == -0.7
        assert signal.entry_price_usd == 1.25
        assert signal.symbol == "TKN"
        assert signal.source == "basic"

    @pytest.mark.asyncio
    async def test_native_mint_ignored(self, signals, settings):
        processor, qualifier, _ = make_processor(signals, settings)

        assert await processor.process(swap(transfers=[received(NATIVE_SOL, 1)])) == ["native_ignored"]
        qualifier.qualify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, signals, settings):
        trader = make_trader()
        processor, _, _ = make_processor(signals, settings, trader=trader)
        body = swap(transfers=[received(MINT, 100)])

        assert await processor.process(body) == ["bought"]
        assert await processor.process(body) == ["duplicate_event"]

        trader.buy.assert_awaited_once()
        assert len(await signals.load()) == 1

    @pytest.mark.asyncio
    async def test_not_qualified(self, signals, settings):
        processor, _, notifier = make_processor(signals, settings, verdict=Qualification(False, "no_route"))

        outcomes = await processor.process(swap(transfers=[received(MINT, 100)]))

        assert outcomes == ["not_qualified:no_route"]
        assert await signals.load() == []
        assert "Not qualified" in notifier.send.await_args.args[0]

    @pytest.mark.asyncio
    async def test_other_wallet_on_tracked_mint_rejected(self, signals, settings):
        trader = make_trader()
        processor, _, _ = make_processor(signals, settings, trader=trader)
        await processor.process(swap(transfers=[received(MINT, 100)]))

        outcomes = await processor.process(
            swap(actor=OTHER_WALLET, signature="sig-2", transfers=[received(MINT, 50, OTHER_WALLET)])
        )

        assert outcomes == ["already_tracking"]
        assert trader.buy.await_count == 1
        assert len(await signals.list_open()) == 1

    @pytest.mark.asyncio
    async def test_same_wallet_merges_without_second_buy(self, signals, settings, clock):
        trader = make_trader()
        processor, qualifier, _ = make_processor(signals, settings, trader=trader)
        await processor.process(swap(transfers=[received(MINT, 100)]))
        clock.advance(20)

        outcomes = await processor.process(swap(signature="sig-2", transfers=[received(MINT, 50)]))

        assert outcomes == ["merged"]
        assert trader.buy.await_count == 1
        assert qualifier.qualify.await_count == 1
        signal = await signals.find_open(MINT)
        assert signal.amount == 150
        assert signal.occurrences == 2
        assert signal.entry_price_usd == 1.25

    @pytest.mark.asyncio
    async def test_merge_reprices_entry(self, signals, settings, clock):
        processor, qualifier, _ = make_processor(
            signals,
            settings,
            verdict=Qualification(True, source="basic", price_usd=1.00, symbol="TKN"),
            snapshot=1.20,
        )
        await processor.process(swap(transfers=[received(MINT, 100)]))
        clock.advance(10)

        outcomes = await processor.process(swap(signature="sig-2", transfers=[received(MINT, 50)]))

        assert outcomes == ["merged"]
        qualifier.price_snapshot.assert_awaited_once_with(MINT)
        signal = await signals.find_open(MINT)
        assert signal.amount == 150
        assert signal.entry_price_usd == pytest.approx(1.0667, abs=1e-4)

    @pytest.mark.asyncio
    async def test_unpriced_supersede_keeps_tracked_entry(self, signals, settings, clock):
        processor, _, _ = make_processor(signals, settings)
        await processor.process(swap(transfers=[received(MINT, 100)]))
        clock.advance(61)

        outcomes = await processor.process(swap(signature="sig-2", transfers=[received(MINT, 40)]))

        assert outcomes == ["superseded"]
        signal = await signals.find_open(MINT)
        assert signal.amount == 40
        assert signal.entry_price_usd == 1.25

    @pytest.mark.asyncio
    async def test_locked_mint_rejected(self, signals, settings):
        guard = BuyGuard(clock=FakeClock())
        guard.acquire(MINT, 180)
        processor, qualifier, _ = make_processor(signals, settings, guard=guard)

        outcomes = await processor.process(swap(transfers=[received(MINT, 100)]))

        assert outcomes == ["locked"]
        qualifier.qualify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_guard_released_after_processing(self, signals, settings):
        guard = BuyGuard(clock=FakeClock())
        processor, _, _ = make_processor(signals, settings, verdict=Qualification(False, "no_route"), guard=guard)

        await processor.process(swap(transfers=[received(MINT, 100)]))

        assert not guard.is_held(MINT)

    @pytest.mark.asyncio
    async def test_overrunning_buy_leaves_newer_hold(self, signals, settings):
        guard_clock = FakeClock()
        guard = BuyGuard(clock=guard_clock)
        newer = []

        async def slow_buy(mint):
            guard_clock.advance(200)
            newer.append(guard.acquire(mint, 180))
            return "bot-buy-sig"

        trader = make_trader(buy=AsyncMock(side_effect=slow_buy))
        processor, _, _ = make_processor(signals, settings, trader=trader, guard=guard)

        assert await processor.process(swap(transfers=[received(MINT, 100)])) == ["bought"]

        assert newer[0] is not None
        assert guard.is_held(MINT)

    @pytest.mark.asyncio
    async def test_auto_buy_records_fill(self, signals, settings):
        trader = make_trader()
        processor, _, _ = make_processor(signals, settings, trader=trader)

        assert await processor.process(swap(transfers=[received(MINT, 100)])) == ["bought"]

        signal = await signals.find_open(MINT)
        assert signal.trader.buy_sigs == ["bot-buy-sig"]
        assert signal.trader.sol_spent == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_auto_buy_failure_keeps_signal(self, signals, settings):
        trader = make_trader(buy=AsyncMock(side_effect=NoViableRoute("no_viable_route")))
        processor, _, notifier = make_processor(signals, settings, trader=trader)

        assert await processor.process(swap(transfers=[received(MINT, 100)])) == ["buy_failed"]

        signal = await signals.find_open(MINT)
        assert signal.trader.buy_sigs == []
        assert "Auto-buy failed" in notifier.send.await_args.args[0]

    @pytest.mark.asyncio
    async def test_failure_text_is_escaped_for_telegram(self, signals, settings):
        trader = make_trader(buy=AsyncMock(side_effect=SwapFailed("swap_api 502: <html><body>Bad Gateway</body></html>")))
        processor, _, notifier = make_processor(signals, settings, trader=trader)

        await processor.process(swap(transfers=[received(MINT, 100)]))

        message = notifier.send.await_args.args[0]
        assert "&lt;html&gt;&lt;body&gt;Bad Gateway" in message
        assert "<html>" not in message


class TestSellProcessing:
    """Sell triggers."""

    @pytest.mark.asyncio
    async def test_wallet_sell_closes_signal(self, signals, settings):
        processor, _, _ = make_processor(signals, settings)
        await processor.process(swap(transfers=[received(MINT, 100)]))

        outcomes = await processor.process(swap(signature="sig-2", transfers=[sent(MINT, 100)]))

        assert outcomes == ["closed"]
        closed = await signals.latest_closed(WALLET, MINT)
        assert closed.close_reason == "sold_by_wallet"

    @pytest.mark.asyncio
    async def test_sell_without_position(self, signals, settings):
        processor, _, _ = make_processor(signals, settings)

        assert await processor.process(swap(transfers=[sent(MINT, 100)])) == ["no_position"]

    @pytest.mark.asyncio
    async def test_auto_sell_records_on_closed_signal(self, signals, settings):
        trader = make_trader()
        processor, _, _ = make_processor(signals, settings, trader=trader)
        await processor.process(swap(transfers=[received(MINT, 100)]))

        outcomes = await processor.process(swap(signature="sig-2", transfers=[sent(MINT, 100)]))

        assert outcomes == ["sold"]
        trader.sell_all.assert_awaited_once_with(MINT)
        closed = await signals.latest_closed(WALLET, MINT)
        assert closed.trader.sell_sigs == ["bot-sell-sig"]

    @pytest.mark.asyncio
    async def test_two_hop_exit_records_both_legs(self, signals, settings):
        outcome = SellOutcome("hop1", "two_hop", 1000, second_hop_signature="hop2")
        trader = make_trader(sell_all=AsyncMock(return_value=outcome))
        processor, _, notifier = make_processor(signals, settings, trader=trader)
        await processor.process(swap(transfers=[received(MINT, 100)]))

        outcomes = await processor.process(swap(signature="sig-2", transfers=[sent(MINT, 100)]))

        assert outcomes == ["sold"]
        closed = await signals.latest_closed(WALLET, MINT)
        assert closed.trader.sell_sigs == ["hop1", "hop2"]
        assert "hop2" in notifier.send.await_args.args[0]

    @pytest.mark.asyncio
    async def test_partial_exit_reported(self, signals, settings):
        outcome = SellOutcome("hop1", "two_hop_partial", 1000, output_mint="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")
        trader = make_trader(sell_all=AsyncMock(return_value=outcome))
        processor, _, notifier = make_processor(signals, settings, trader=trader)
        await processor.process(swap(transfers=[received(MINT, 100)]))

        outcomes = await processor.process(swap(signature="sig-2", transfers=[sent(MINT, 100)]))

        assert outcomes == ["sold_partial"]
        assert "USDC" in notifier.send.await_args.args[0]

    @pytest.mark.asyncio
    async def test_no_balance(self, signals, settings):
        trader = make_trader(sell_all=AsyncMock(return_value=None))
        processor, _, _ = make_processor(signals, settings, trader=trader)
        await processor.process(swap(transfers=[received(MINT, 100)]))

        outcomes = await processor.process(swap(signature="sig-2", transfers=[sent(MINT, 100)]))

        assert outcomes == ["closed_no_balance"]
        assert not await signals.has_open_for_mint(MINT)

    @pytest.mark.asyncio
    async def test_sell_failure_still_closes(self, signals, settings):
        trader = make_trader(sell_all=AsyncMock(side_effect=NoViableRoute("illiquid_or_dust_too_small")))
        processor, _, _ = make_processor(signals, settings, trader=trader)
        await processor.process(swap(transfers=[received(MINT, 100)]))

        outcomes = await processor.process(swap(signature="sig-2", transfers=[sent(MINT, 100)]))

        assert outcomes == ["sell_failed"]
        assert not await signals.has_open_for_mint(MINT)

    @pytest.mark.asyncio
    async def test_rotation_in_one_event(self, signals, settings):
        processor, _, _ = make_processor(signals, settings)
        await processor.process(swap(transfers=[received(MINT, 100)]))

        outcomes = await processor.process(swap(signature="sig-2", transfers=[
            sent(MINT, 100),
            received("NewMint", 7),
        ]))

        assert outcomes == ["qualified", "closed"]
