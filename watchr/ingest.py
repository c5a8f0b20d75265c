"""
Webhook ingestion: turns enhanced swap events into buy/sell triggers.

Each event is aggregated per mint for its actor, so a swap that touches a
mint through several transfers yields one buy or sell trigger for it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import structlog

from .config import NATIVE_SOL
from .guards import BuyGuard, EventDedupCache, event_key
from .notifier import TelegramNotifier, fmt_amount, fmt_error, money
from .qualifier import BasicQualifier
from .settings import SettingsStore
from .signals import REASON_SOLD_BY_WALLET, Signal, SignalStore
from .trader import AutoTrader

logger = structlog.get_logger()

SWAP_EVENT_TYPES = ("SWAP", "SWAP_EVENT")


@dataclass
class SwapEvent:
    """One swap by a watched wallet, with per-mint totals."""
    actor: str
    signature: Optional[str]
    buys: Dict[str, float] = field(default_factory=dict)  # mint -> amount received
    sells: Dict[str, float] = field(default_factory=dict)  # mint -> amount sent


def _amount(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def parse_events(payload: Any) -> List[SwapEvent]:
    """Parse a webhook body (one event or a list of them) into swap events."""
    raw_events = payload if isinstance(payload, list) else [payload]
    events = []

    for raw in raw_events:
        if not isinstance(raw, dict) or raw.get("type") not in SWAP_EVENT_TYPES:
            continue

        actor = raw.get("feePayer") or raw.get("account")
        if not actor:
            continue
        signature = raw.get("signature") or raw.get("txHash") or raw.get("sig") or None

        event = SwapEvent(actor=actor, signature=signature)
        transfers = raw.get("tokenTransfers")
        for transfer in transfers if isinstance(transfers, list) else []:
            if not isinstance(transfer, dict):
                continue
            mint = transfer.get("mint")
            amount = _amount(transfer.get("tokenAmount"))
            if not mint or not amount:
                continue

            if transfer.get("toUserAccount") == actor:
                event.buys[mint] = event.buys.get(mint, 0.0) + amount
            elif transfer.get("fromUserAccount") == actor:
                event.sells[mint] = event.sells.get(mint, 0.0) + amount

        events.append(event)

    return events


class EventProcessor:
    """
    Applies swap events to the signal store and the auto-trader.

    The bot holds at most one position per mint: a buy of a mint that is
    already tracked under another wallet is ignored, and a repeat buy by the
    same wallet only merges into its signal.
    """

    def __init__(
        self,
        signals: SignalStore,
        settings: SettingsStore,
        qualifier: BasicQualifier,
        notifier: TelegramNotifier,
        dedup: EventDedupCache,
        buy_guard: BuyGuard,
        buy_lock_seconds: float = 180.0,
        trader: Optional[AutoTrader] = None
    ):
        self.signals = signals
        self.settings = settings
        self.qualifier = qualifier
        self.notifier = notifier
        self.dedup = dedup
        self.buy_guard = buy_guard
        self.buy_lock_seconds = buy_lock_seconds
        self.trader = trader  # None = auto-trade off

    async def process(self, payload: Any) -> List[str]:
        """
        Handle one webhook delivery.

        Returns:
            One outcome reason per (event, mint, side) trigger
        """
        outcomes = []
        for event in parse_events(payload):
            for mint, amount in event.buys.items():
                outcomes.append(await self.handle_buy(event, mint, amount))
            for mint, amount in event.sells.items():
                outcomes.append(await self.handle_sell(event, mint, amount))
        return outcomes

    async def handle_buy(self, event: SwapEvent, mint: str, amount: float) -> str:
        if mint == NATIVE_SOL:
            return "native_ignored"
        if self.dedup.check_and_mark(event_key(event.signature, event.actor, mint, "buy", amount)):
            logger.debug("duplicate_event", mint=mint[:8], side="buy")
            return "duplicate_event"

        existing = await self.signals.find_open(mint)
        if existing is not None:
            return await self._merge_or_reject(existing, event.actor, amount)

        token = self.buy_guard.acquire(mint, self.buy_lock_seconds)
        if token is None:
            logger.info("buy_locked", mint=mint[:8], wallet=event.actor[:8])
            await self.notifier.send(f"⏳ Skipped duplicate buy (lock) - <code>{mint}</code>")
            return "locked"

        try:
            return await self._qualify_and_open(event.actor, mint, amount)
        finally:
            self.buy_guard.release(mint, token)

    async def _merge_or_reject(self, existing: Signal, actor: str, amount: float) -> str:
        mint = existing.mint
        if existing.wallet != actor:
            logger.info("already_tracking", mint=mint[:8], wallet=actor[:8], tracked_by=existing.wallet[:8])
            await self.notifier.send(f"⚠️ Duplicate signal ignored - already tracking <code>{mint}</code>")
            return "already_tracking"

        # No second bot buy; a superseding signal inherits the tracked entry when unpriced
        price = await self.qualifier.price_snapshot(mint)
        signal = await self.signals.open_or_merge(
            actor,
            mint,
            amount,
            price,
            existing.stop_loss_pct,
            symbol=existing.symbol,
            source=existing.source,
            fallback_price_usd=existing.entry_price_usd,
        )
        await self.notifier.send(
            f"➕ Added - <code>{actor}</code> got <b>{fmt_amount(amount)}</b> more of {signal.label}"
            f" (x{signal.occurrences})"
        )
        return "merged" if signal.occurrences > 1 else "superseded"

    async def _qualify_and_open(self, actor: str, mint: str, amount: float) -> str:
        verdict = await self.qualifier.qualify(actor, mint, amount)
        if not verdict.qualified:
            logger.info("not_qualified", mint=mint[:8], wallet=actor[:8], reason=verdict.reason)
            await self.notifier.send(
                f"❎ Not qualified - <code>{actor}</code> got <b>{fmt_amount(amount)}</b> of"
                f" <code>{mint}</code> ({verdict.reason})"
            )
            return f"not_qualified:{verdict.reason}"

        current = await self.settings.get()
        signal = await self.signals.open_or_merge(
            actor,
            mint,
            amount,
            verdict.price_usd,
            current.stop_loss_pct_default,
            symbol=verdict.symbol,
            source=verdict.source,
        )
        await self.notifier.send(
            f"✅ Qualified - <code>{actor}</code> got <b>{fmt_amount(amount)}</b> of {signal.label}"
            f" @ ~{money(verdict.price_usd)}"
        )

        if self.trader is None:
            return "qualified"

        try:
            signature = await self.trader.buy(mint)
        except Exception as e:
            logger.error("auto_buy_failed", mint=mint[:8], error=str(e) or type(e).__name__)
            await self.notifier.send(f"⚠️ Auto-buy failed - <code>{mint}</code>\n{fmt_error(e)}")
            return "buy_failed"

        await self.signals.record_trader_fill(signal, signature, "buy", sol_spent=self.trader.sol_budget)
        await self.notifier.send(
            f"🛒 Auto-buy executed - {signal.label}\n"
            f"🔑 Trader: <code>{self.trader.address}</code>\n🧾 {signature}"
        )
        return "bought"

    async def handle_sell(self, event: SwapEvent, mint: str, amount: float) -> str:
        if mint == NATIVE_SOL:
            return "native_ignored"
        if self.dedup.check_and_mark(event_key(event.signature, event.actor, mint, "sell", amount)):
            logger.debug("duplicate_event", mint=mint[:8], side="sell")
            return "duplicate_event"

        await self.notifier.send(
            f"📉 Sell - <code>{event.actor}</code> sent <b>{fmt_amount(amount)}</b> of <code>{mint}</code>"
        )

        closed = await self.signals.close_by_actor(event.actor, mint, REASON_SOLD_BY_WALLET)
        if not closed:
            return "no_position"

        if self.trader is None:
            await self.notifier.send(f"🔒 Close - Wallet-copy (auto-trade OFF)\n<code>{mint}</code>")
            return "closed"

        try:
            outcome = await self.trader.sell_all(mint)
        except Exception as e:
            logger.error("auto_sell_failed", mint=mint[:8], error=str(e) or type(e).__name__)
            await self.notifier.send(f"⚠️ Auto-sell (wallet-copy) failed for <code>{mint}</code>:\n{fmt_error(e)}")
            return "sell_failed"

        if outcome is None:
            await self.notifier.send(f"🔒 Close - Wallet-copy (no position)\n<code>{mint}</code>")
            return "closed_no_balance"

        recent = await self.signals.latest_closed(event.actor, mint)
        if recent is not None:
            for signature in outcome.signatures:
                await self.signals.record_trader_fill(recent, signature, "sell")

        if outcome.partial:
            await self.notifier.send(
                f"⚠️ Auto-sell - Wallet-copy (partial, exited into USDC)\n<code>{mint}</code>\n🧾 {outcome.signature}"
            )
            return "sold_partial"

        receipts = "\n".join(f"🧾 {signature}" for signature in outcome.signatures)
        await self.notifier.send(f"🔁 Auto-sell - Wallet-copy ({outcome.tier})\n<code>{mint}</code>\n{receipts}")
        return "sold"
