#!/usr/bin/env python3
"""
List Signals - Print the persisted signal history.
Run: python -m watchr.list_signals [path]
"""

import asyncio
import os
import sys
from datetime import datetime, timezone
from typing import List

from .signals import Signal, SignalStore


def _when(ts) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _price(p) -> str:
    return f"${p:.8g}" if p else "n/a"


def print_signals(signals: List[Signal]) -> None:
    """Print open then closed signals."""
    if not signals:
        print("\n📭 No signals recorded yet.\n")
        return

    open_signals = [s for s in signals if s.is_open]
    closed = sorted((s for s in signals if not s.is_open), key=lambda s: s.closed_at or 0, reverse=True)

    print("\n" + "="*60)
    print(f"📈 OPEN SIGNALS ({len(open_signals)})")
    print("="*60)
    for s in open_signals:
        print(f"\n   {s.label}")
        print(f"   Wallet:      {s.wallet}")
        print(f"   Amount:      {s.amount:,.4f} (x{s.occurrences})")
        print(f"   Entry:       {_price(s.entry_price_usd)}")
        print(f"   Stop Loss:   {s.stop_loss_pct * 100:.0f}%")
        print(f"   Opened:      {_when(s.opened_at)}")
        if s.trader.buy_sigs:
            print(f"   Bot buys:    {len(s.trader.buy_sigs)} ({s.trader.sol_spent:.4f} SOL)")

    print("\n" + "="*60)
    print(f"🔒 CLOSED SIGNALS ({len(closed)})")
    print("="*60)
    for s in closed:
        pnl = f"{s.exit_pnl_pct * 100:+.2f}%" if s.exit_pnl_pct is not None else "n/a"
        print(f"\n   {s.label}")
        print(f"   Wallet:      {s.wallet}")
        print(f"   Reason:      {s.close_reason or '-'}")
        print(f"   Entry/Exit:  {_price(s.entry_price_usd)} → {_price(s.exit_price_usd)} ({pnl})")
        print(f"   Closed:      {_when(s.closed_at)}")

    print()


def main() -> None:
    path = sys.argv[1] if len(sys.argv) > 1 else os.getenv("SIGNALS_FILE", "signals.json")
    signals = asyncio.run(SignalStore(path).load())
    print_signals(signals)


if __name__ == "__main__":
    main()
