"""
Operator commands received over Telegram.
"""

import math
from datetime import datetime, timezone
from typing import Optional
import structlog

from .config import MIN_PRICECHECK_INTERVAL_MS
from .notifier import fmt_amount, fmt_pct, money
from .settings import SettingsStore
from .signals import SignalStore

logger = structlog.get_logger()

MAX_LISTED_SIGNALS = 20

SET_USAGE = "Usage:\n/set stoploss -0.8\n/set takeprofit 1.0\n/set interval 15000"


def _parse_number(raw: str) -> Optional[float]:
    try:
        value = float(raw)
    except ValueError:
        return None
    return None if math.isnan(value) else value


class CommandHandler:
    """Turns a command string into a reply. Invalid input changes nothing."""

    def __init__(
        self,
        signals: SignalStore,
        settings: SettingsStore,
        auto_trade: bool = False,
        trader_address: Optional[str] = None
    ):
        self.signals = signals
        self.settings = settings
        self.auto_trade = auto_trade
        self.trader_address = trader_address

    async def handle(self, text: str) -> Optional[str]:
        parts = text.split()
        if not parts:
            return None

        # "/signals@my_bot" in group chats
        command = parts[0].split("@", 1)[0].lower()
        logger.info("command_received", command=command)

        if command == "/signals":
            return await self.list_signals()
        if command == "/settings":
            return await self.show_settings()
        if command == "/set":
            if len(parts) < 3:
                return SET_USAGE
            return await self.set_value(parts[1].lower(), parts[2])
        return None

    async def list_signals(self) -> str:
        open_signals = await self.signals.list_open()
        if not open_signals:
            return "📭 No open signals."

        lines = []
        for i, s in enumerate(open_signals[:MAX_LISTED_SIGNALS], 1):
            since = datetime.fromtimestamp(s.opened_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
            lines.append(
                f"{i}. {s.label} - <b>{fmt_amount(s.amount)}</b> by <code>{s.wallet}</code>"
                f" - entry ~{money(s.entry_price_usd)} - SL {s.stop_loss_pct * 100:.0f}% - since {since}"
            )
        if len(open_signals) > MAX_LISTED_SIGNALS:
            lines.append(f"...and {len(open_signals) - MAX_LISTED_SIGNALS} more")

        return f"📈 Open signals ({len(open_signals)})\n" + "\n".join(lines)

    async def show_settings(self) -> str:
        current = await self.settings.get()
        take_profit = fmt_pct(current.take_profit_pct) if current.take_profit_enabled else "disabled"
        return (
            "⚙️ Settings\n"
            f"• Stop Loss (default): {fmt_pct(current.stop_loss_pct_default)}\n"
            f"• Take Profit: {take_profit}\n"
            f"• Price Check Interval: {current.pricecheck_interval_ms} ms\n"
            f"• Auto-Trade: {'ON' if self.auto_trade else 'OFF'}\n"
            f"• Trader: {self.trader_address or 'n/a'}"
        )

    async def set_value(self, key: str, raw: str) -> str:
        value = _parse_number(raw)

        if key == "stoploss":
            if value is None or value >= 0:
                return "❌ stoploss must be a negative decimal (e.g. -0.8 for -80%)."
            updated = await self.settings.update(stop_loss_pct_default=value)
            changed = await self.signals.bulk_update_open_stop_loss(value)
            return (
                f"✅ Updated stop loss default to {fmt_pct(updated.stop_loss_pct_default)}\n"
                f"🔧 Applied to {changed} open signal(s)."
            )

        if key == "takeprofit":
            if raw.lower() == "off" or value == 0:
                await self.settings.update(take_profit_pct=None)
                return "✅ Updated take profit to disabled."
            if value is None or value < 0:
                return "❌ takeprofit must be a positive number (e.g. 1.0 for +100%). Use 0 or 'off' to disable."
            updated = await self.settings.update(take_profit_pct=value)
            return f"✅ Updated take profit to {fmt_pct(updated.take_profit_pct)}."

        if key == "interval":
            if value is None or value < MIN_PRICECHECK_INTERVAL_MS:
                return f"❌ interval must be a number >= {MIN_PRICECHECK_INTERVAL_MS} (ms)."
            updated = await self.settings.update(pricecheck_interval_ms=int(value))
            return f"✅ Updated price check interval to {updated.pricecheck_interval_ms} ms."

        return "Unknown setting. Valid keys: stoploss, takeprofit, interval"
