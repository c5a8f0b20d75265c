#!/usr/bin/env python3
"""
watchr - Solana copy-trading signal bot
Main entry point.
"""

import asyncio
import logging
import signal
import sys
from typing import List, Optional
import structlog
import uvicorn

from .commands import CommandHandler
from .config import LAMPORTS_PER_SOL, load_config, Config
from .executor import SwapExecutor
from .guards import BuyGuard, EventDedupCache, run_sweeper
from .ingest import EventProcessor
from .notifier import TelegramNotifier
from .price_monitor import PriceMonitor
from .prices import BirdeyePriceClient
from .qualifier import BasicQualifier
from .quotes import QuoteProvider
from .router import Router
from .rpc import RPCClient
from .server import create_app
from .settings import Settings, SettingsStore
from .signals import SignalStore
from .trader import AutoTrader
from .wallet import Wallet


def configure_logging(log_level: str) -> None:
    """Configure structured JSON logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )


logger = structlog.get_logger()


class WatchrBot:
    """Wires every component together and owns their lifetimes."""

    def __init__(self):
        self.config: Config = None
        self.wallet: Optional[Wallet] = None
        self.rpc: RPCClient = None
        self.quotes: QuoteProvider = None
        self.executor: Optional[SwapExecutor] = None
        self.trader: Optional[AutoTrader] = None
        self.prices: BirdeyePriceClient = None
        self.notifier: TelegramNotifier = None
        self.signals: SignalStore = None
        self.settings: SettingsStore = None
        self.dedup: EventDedupCache = None
        self.buy_guard: BuyGuard = None
        self.processor: EventProcessor = None
        self.monitor: PriceMonitor = None
        self.commands: CommandHandler = None
        self.server: uvicorn.Server = None
        self._tasks: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        """Initialize all components."""
        self.config = load_config()
        configure_logging(self.config.log_level)
        logger.info("initializing_watchr")

        config = self.config
        self.rpc = RPCClient(config.rpc_url, confirm_timeout_sec=config.confirm_timeout_sec)
        self.quotes = QuoteProvider(config.jupiter_quote_api, max_price_impact_bps=config.max_price_impact_bps)
        self.prices = BirdeyePriceClient(config.birdeye_api_key)
        self.notifier = TelegramNotifier(
            config.telegram_bot_token,
            config.telegram_chat_id,
            allowed_user_id=config.telegram_allowed_user_id
        )
        self.signals = SignalStore(config.signals_file)
        self.settings = SettingsStore(
            config.settings_file,
            defaults=Settings(
                stop_loss_pct_default=config.default_stop_loss_pct,
                take_profit_pct=config.default_take_profit_pct,
                pricecheck_interval_ms=config.default_pricecheck_interval_ms,
            )
        )
        self.dedup = EventDedupCache(ttl_seconds=config.dedup_ttl_sec)
        self.buy_guard = BuyGuard()

        if config.wallet_private_key:
            self.wallet = Wallet(config.wallet_private_key)

        if config.auto_trade:
            self.executor = SwapExecutor(
                config.jupiter_swap_api,
                self.wallet,
                self.rpc,
                priority_fee_lamports=config.priority_fee_lamports
            )
            router = Router(
                self.quotes,
                self.executor,
                slippage_bps=config.slippage_bps,
                max_slippage_bps=config.max_slippage_bps,
                slippage_step_bps=config.slippage_step_bps,
                probe_lamports=config.probe_lamports,
                retry_budget_seconds=config.buy_retry_budget_sec,
            )
            self.trader = AutoTrader(router, self.rpc, self.wallet, config.trade_sol_budget)
            await self._log_balance()

        qualifier = BasicQualifier(self.quotes, self.prices, config.trade_lamports, config.slippage_bps)
        self.processor = EventProcessor(
            self.signals,
            self.settings,
            qualifier,
            self.notifier,
            self.dedup,
            self.buy_guard,
            buy_lock_seconds=config.buy_lock_sec,
            trader=self.trader
        )
        self.monitor = PriceMonitor(self.signals, self.settings, self.prices, self.notifier, trader=self.trader)
        self.commands = CommandHandler(
            self.signals,
            self.settings,
            auto_trade=config.auto_trade,
            trader_address=self.wallet.address if self.wallet else None
        )
        self.server = uvicorn.Server(
            uvicorn.Config(create_app(self.processor), host="0.0.0.0", port=config.port, log_level="warning")
        )
        # Signal handling is ours, not uvicorn's
        self.server.install_signal_handlers = lambda: None

        logger.info(
            "watchr_initialized",
            auto_trade=config.auto_trade,
            wallet=self.wallet.address[:12] + "..." if self.wallet else None,
            trade_sol_budget=config.trade_sol_budget,
            port=config.port,
            telegram=self.notifier.enabled
        )

    async def _log_balance(self) -> None:
        try:
            balance = await self.rpc.get_balance(self.wallet.pubkey)
        except Exception as e:
            logger.warning("balance_check_failed", error=str(e))
            return

        balance_sol = balance / LAMPORTS_PER_SOL
        logger.info("wallet_balance", address=self.wallet.address, balance_sol=f"{balance_sol:.4f}")
        if balance_sol < self.config.trade_sol_budget:
            logger.warning("low_balance", balance_sol=balance_sol, trade_sol_budget=self.config.trade_sol_budget)

    async def announce(self) -> None:
        current = await self.settings.get()
        if not current.take_profit_enabled:
            await self.notifier.send("ℹ️ Take-profit is <b>disabled</b>. Use <code>/set takeprofit 1.0</code> for +100%.")

    async def cleanup(self) -> None:
        """Clean up resources."""
        logger.info("cleaning_up")

        if self.monitor:
            await self.monitor.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for client in (self.executor, self.quotes, self.prices, self.notifier, self.rpc):
            if client:
                await client.close()

    async def run(self) -> None:
        """Serve webhooks and run background loops until stopped."""
        await self.initialize()

        self.monitor.start()
        self._tasks = [
            asyncio.create_task(run_sweeper(
                self.dedup,
                self.buy_guard,
                interval_seconds=self.config.sweep_interval_sec
            )),
            asyncio.create_task(self.notifier.poll_commands(self.commands.handle)),
            asyncio.create_task(self.server.serve()),
        ]
        await self.announce()
        logger.info("watchr_listening", port=self.config.port)

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("bot_cancelled")
        finally:
            self.server.should_exit = True
            await self.cleanup()

    def stop(self) -> None:
        """Signal the bot to stop."""
        logger.info("stop_requested")
        self._shutdown_event.set()


async def main() -> None:
    """Main entry point."""
    bot = WatchrBot()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, bot.stop)

    try:
        await bot.run()
    except Exception as e:
        logger.error("fatal_error", error=str(e))
        raise
    finally:
        logger.info("watchr_shutdown_complete")


def run() -> None:
    """Entry point for the bot."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
