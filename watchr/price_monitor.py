"""
Price monitor: enforces stop-loss and take-profit on open signals.

One background task. Each cycle re-reads settings, prices every open mint
once, and closes signals whose PnL crossed a threshold. The next cycle is
scheduled only after the current one finishes, so cycles never overlap.
"""

import asyncio
from typing import Dict, Optional
import structlog

from .config import (
    MIN_PRICECHECK_INTERVAL_MS,
    PRICECHECK_FALLBACK_SECONDS,
    PRICECHECK_INITIAL_DELAY_SECONDS,
)
from .notifier import TelegramNotifier, fmt_pct, money
from .prices import BirdeyePriceClient
from .router import SellOutcome
from .settings import SettingsStore
from .signals import REASON_STOP_LOSS, REASON_TAKE_PROFIT, Signal, SignalStore, pnl_pct
from .trader import AutoTrader

logger = structlog.get_logger()


def evaluate_exit(
    pnl: float,
    stop_loss_pct: Optional[float],
    take_profit_pct: Optional[float]
) -> Optional[str]:
    """Exit reason for a PnL fraction, or None. Stop-loss wins when both apply."""
    if stop_loss_pct is not None and pnl <= stop_loss_pct:
        return REASON_STOP_LOSS
    if take_profit_pct is not None and take_profit_pct > 0 and pnl >= take_profit_pct:
        return REASON_TAKE_PROFIT
    return None


class PriceMonitor:
    """Periodic exit checker for open signals."""

    def __init__(
        self,
        signals: SignalStore,
        settings: SettingsStore,
        prices: BirdeyePriceClient,
        notifier: TelegramNotifier,
        trader: Optional[AutoTrader] = None,
        initial_delay_seconds: float = PRICECHECK_INITIAL_DELAY_SECONDS
    ):
        self.signals = signals
        self.settings = settings
        self.prices = prices
        self.notifier = notifier
        self.trader = trader  # None = auto-trade off
        self.initial_delay = initial_delay_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the monitor. Calling it twice does not start a second loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("price_monitor_started", auto_sell=self.trader is not None)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("price_monitor_stopped")

    async def _run(self) -> None:
        delay = self.initial_delay
        while True:
            await asyncio.sleep(delay)
            delay = await self.run_cycle()

    async def run_cycle(self) -> float:
        """
        Run one check over all open signals.

        Returns:
            Seconds to wait before the next cycle
        """
        try:
            current = await self.settings.get()
            interval = max(MIN_PRICECHECK_INTERVAL_MS, current.pricecheck_interval_ms) / 1000

            candidates = [
                s for s in await self.signals.list_open()
                if s.entry_price_usd is not None and s.entry_price_usd > 0
            ]
            if candidates:
                price_map = await self._fetch_prices({s.mint for s in candidates})
                for signal in candidates:
                    price = price_map.get(signal.mint)
                    if price is None or price <= 0:
                        continue
                    await self._check_signal(signal, price, current.take_profit_pct)

            return interval
        except Exception as e:
            logger.error("price_cycle_error", error=str(e))
            return PRICECHECK_FALLBACK_SECONDS

    async def _fetch_prices(self, mints: set) -> Dict[str, Optional[float]]:
        ordered = sorted(mints)
        results = await asyncio.gather(
            *(self.prices.get_price(mint) for mint in ordered),
            return_exceptions=True
        )
        price_map: Dict[str, Optional[float]] = {}
        for mint, result in zip(ordered, results):
            if isinstance(result, Exception):
                logger.warning("price_fetch_failed", mint=mint[:8], error=str(result))
                result = None
            price_map[mint] = result
        return price_map

    async def _check_signal(self, signal: Signal, price: float, take_profit_pct: Optional[float]) -> None:
        pnl = pnl_pct(signal.entry_price_usd, price)
        reason = evaluate_exit(pnl, signal.stop_loss_pct, take_profit_pct)
        if reason is None:
            return

        logger.info(
            "exit_triggered",
            reason=reason,
            wallet=signal.wallet[:8],
            mint=signal.mint[:8],
            pnl=round(pnl, 4)
        )

        outcome = await self._try_auto_sell(signal.mint)
        closed = await self.signals.close_with_exit(signal.wallet, signal.mint, price, reason)
        if not closed:
            return

        if outcome is not None:
            for signature in outcome.signatures:
                await self.signals.record_trader_fill(signal, signature, "sell")

        emoji = "🛑" if reason == REASON_STOP_LOSS else "🎯"
        action = "Auto-sell" if outcome is not None else "Close"
        title = "Stop-loss" if reason == REASON_STOP_LOSS else "Take-profit"
        message = (
            f"{emoji} <b>{action} - {title}</b>\n"
            f"<code>{signal.wallet}</code> | {signal.label}\n"
            f"Entry ~{money(signal.entry_price_usd)} → Exit ~{money(price)} ({fmt_pct(pnl)})"
        )
        if outcome is not None and outcome.partial:
            message += "\n⚠️ Exited into USDC (second hop failed)"
        await self.notifier.send(message)

    async def _try_auto_sell(self, mint: str) -> Optional[SellOutcome]:
        """Sell our balance; failures are logged and never block the close."""
        if self.trader is None:
            return None
        try:
            return await self.trader.sell_all(mint)
        except Exception as e:
            logger.warning("auto_sell_failed", mint=mint[:8], error=str(e))
            return None
