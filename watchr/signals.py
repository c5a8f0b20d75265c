"""
Signal store - durable record of tracked positions.

Every mutation is a read-modify-write of the whole JSON array, serialized
by one lock per store. Closed signals are kept for history.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import structlog

from .config import MERGE_WINDOW_SECONDS

logger = structlog.get_logger()

STATUS_OPEN = "open"
STATUS_CLOSED = "closed"

REASON_SOLD_BY_WALLET = "sold_by_wallet"
REASON_STOP_LOSS = "stop_loss"
REASON_TAKE_PROFIT = "take_profit"
REASON_SUPERSEDED = "superseded"


@dataclass
class TraderTrail:
    """The bot's own fills for a signal. Observational only."""
    buy_sigs: List[str] = field(default_factory=list)
    sell_sigs: List[str] = field(default_factory=list)
    sol_spent: float = 0.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TraderTrail":
        data = data or {}
        return cls(
            buy_sigs=list(data.get("buy_sigs") or []),
            sell_sigs=list(data.get("sell_sigs") or []),
            sol_spent=float(data.get("sol_spent") or 0.0),
        )


@dataclass
class Signal:
    """A tracked position mirrored from a source wallet."""
    id: str
    wallet: str
    mint: str
    amount: float  # Source wallet's size, not ours
    stop_loss_pct: float
    opened_at: float
    updated_at: float
    status: str = STATUS_OPEN
    entry_price_usd: Optional[float] = None
    priced_amount: float = 0.0  # Portion of amount that carried a price
    symbol: Optional[str] = None
    source: Optional[str] = None
    occurrences: int = 1
    closed_at: Optional[float] = None
    close_reason: Optional[str] = None
    exit_price_usd: Optional[float] = None
    exit_pnl_pct: Optional[float] = None
    trader: TraderTrail = field(default_factory=TraderTrail)

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    @property
    def label(self) -> str:
        return f"{self.symbol} ({self.mint})" if self.symbol else self.mint

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        """Build from a persisted row; unknown keys are ignored, missing optionals default."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}

        opened_at = float(values.get("opened_at") or 0.0)
        values["opened_at"] = opened_at
        values["updated_at"] = float(values.get("updated_at") or opened_at)
        values.setdefault("status", STATUS_OPEN)
        values["occurrences"] = int(values.get("occurrences") or 1)
        if "priced_amount" in values:
            values["priced_amount"] = float(values["priced_amount"] or 0.0)
        elif values.get("entry_price_usd"):
            values["priced_amount"] = float(values.get("amount") or 0.0)
        values["trader"] = TraderTrail.from_dict(values.get("trader"))
        if not values.get("id"):
            values["id"] = f"{values.get('wallet')}:{values.get('mint')}:{opened_at}"
        return cls(**values)


def merge_vwap(
    priced_amount: float,
    prev_price: Optional[float],
    add_amount: float,
    add_price: Optional[float]
) -> Optional[float]:
    """
    Volume-weighted entry price over priced buys only.

    priced_amount is the size already behind prev_price; unpriced buys never
    enter the weighting.
    """
    if not prev_price and not add_price:
        return None
    if not prev_price:
        return add_price
    if not add_price:
        return prev_price
    total = priced_amount + add_amount
    if total <= 0:
        return prev_price
    return (prev_price * priced_amount + add_price * add_amount) / total


def pnl_pct(entry_price: float, current_price: float) -> float:
    return (current_price - entry_price) / entry_price


class SignalStore:
    """JSON-file backed signal collection."""

    def __init__(
        self,
        path: str = "signals.json",
        merge_window_seconds: float = MERGE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        self.path = Path(path)
        self.merge_window = merge_window_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------ persistence

    def _read(self) -> List[Signal]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("signals_load_failed", path=str(self.path), error=str(e))
            return []
        if not isinstance(data, list):
            return []
        return [Signal.from_dict(row) for row in data if isinstance(row, dict)]

    def _write(self, signals: List[Signal]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, 'w') as f:
            json.dump([s.to_dict() for s in signals], f, indent=2)
        tmp.replace(self.path)

    async def load(self) -> List[Signal]:
        async with self._lock:
            return self._read()

    # ---------------------------------------------------------------- queries

    async def list_open(self) -> List[Signal]:
        return [s for s in await self.load() if s.is_open]

    async def find_open(self, mint: str, wallet: Optional[str] = None) -> Optional[Signal]:
        """First open signal for a mint, optionally restricted to one wallet."""
        for s in await self.load():
            if s.is_open and s.mint == mint and (wallet is None or s.wallet == wallet):
                return s
        return None

    async def has_open_for_mint(self, mint: str) -> bool:
        return await self.find_open(mint) is not None

    async def latest_closed(self, wallet: str, mint: str) -> Optional[Signal]:
        closed = [
            s for s in await self.load()
            if s.status == STATUS_CLOSED and s.wallet == wallet and s.mint == mint
        ]
        return max(closed, key=lambda s: s.closed_at or 0.0) if closed else None

    # -------------------------------------------------------------- mutations

    async def open_or_merge(
        self,
        wallet: str,
        mint: str,
        amount: float,
        price_usd: Optional[float],
        stop_loss_pct: float,
        symbol: Optional[str] = None,
        source: Optional[str] = None,
        fallback_price_usd: Optional[float] = None
    ) -> Signal:
        """
        Merge a buy into the open signal for (wallet, mint), or open a new one.

        An open signal idle for longer than the merge window is closed as
        superseded before the new one opens, so there is never more than one
        open signal per (wallet, mint).
        fallback_price_usd seeds the entry of a newly opened signal when
        price_usd is unknown; merges ignore it.
        """
        async with self._lock:
            now = self._clock()
            signals = self._read()

            for s in signals:
                if not (s.is_open and s.wallet == wallet and s.mint == mint):
                    continue

                if now - s.updated_at <= self.merge_window:
                    s.entry_price_usd = merge_vwap(s.priced_amount, s.entry_price_usd, amount, price_usd)
                    if price_usd:
                        s.priced_amount += amount
                    s.amount += amount
                    s.updated_at = now
                    s.occurrences += 1
                    if symbol and not s.symbol:
                        s.symbol = symbol
                    if source and not s.source:
                        s.source = source
                    self._write(signals)
                    logger.info(
                        "signal_merged",
                        wallet=wallet[:8],
                        mint=mint[:8],
                        amount=s.amount,
                        occurrences=s.occurrences
                    )
                    return s

                s.status = STATUS_CLOSED
                s.closed_at = now
                s.close_reason = REASON_SUPERSEDED
                logger.info("signal_superseded", wallet=wallet[:8], mint=mint[:8], signal_id=s.id)

            if not price_usd:
                price_usd = fallback_price_usd
            signal = Signal(
                id=uuid.uuid4().hex,
                wallet=wallet,
                mint=mint,
                amount=amount,
                stop_loss_pct=stop_loss_pct,
                opened_at=now,
                updated_at=now,
                entry_price_usd=price_usd or None,
                priced_amount=amount if price_usd else 0.0,
                symbol=symbol,
                source=source,
            )
            signals.append(signal)
            self._write(signals)
            logger.info("signal_opened", wallet=wallet[:8], mint=mint[:8], amount=amount, price=price_usd)
            return signal

    async def record_trader_fill(
        self,
        signal: Signal,
        signature: str,
        side: str,
        sol_spent: Optional[float] = None
    ) -> bool:
        """Append one of our own fills to a signal's trail. Never touches status or amount."""
        if side not in ("buy", "sell"):
            raise ValueError(f"side must be 'buy' or 'sell', got {side!r}")

        async with self._lock:
            signals = self._read()
            target = next((s for s in signals if s.id == signal.id), None)
            if target is None:
                logger.warning("trader_fill_signal_missing", signal_id=signal.id)
                return False

            if side == "buy":
                if not target.is_open:
                    logger.warning("trader_fill_on_closed_signal", signal_id=signal.id)
                    return False
                target.trader.buy_sigs.append(signature)
                if sol_spent is not None:
                    target.trader.sol_spent += sol_spent
            else:
                target.trader.sell_sigs.append(signature)

            self._write(signals)
            return True

    async def _close_matching(
        self,
        wallet: str,
        mint: str,
        reason: str,
        exit_price_usd: Optional[float] = None
    ) -> int:
        async with self._lock:
            now = self._clock()
            signals = self._read()
            closed = 0
            for s in signals:
                if not (s.is_open and s.wallet == wallet and s.mint == mint):
                    continue
                s.status = STATUS_CLOSED
                s.closed_at = now
                s.close_reason = reason
                if exit_price_usd is not None:
                    s.exit_price_usd = exit_price_usd
                    if s.entry_price_usd and s.entry_price_usd > 0:
                        s.exit_pnl_pct = pnl_pct(s.entry_price_usd, exit_price_usd)
                closed += 1

            if closed:
                self._write(signals)
                logger.info("signals_closed", wallet=wallet[:8], mint=mint[:8], reason=reason, count=closed)
            return closed

    async def close_by_actor(self, wallet: str, mint: str, reason: str = REASON_SOLD_BY_WALLET) -> int:
        """Close every open signal for (wallet, mint). Returns how many closed."""
        return await self._close_matching(wallet, mint, reason)

    async def close_with_exit(self, wallet: str, mint: str, exit_price_usd: float, reason: str) -> int:
        """Close with an exit price and the resulting PnL fraction."""
        return await self._close_matching(wallet, mint, reason, exit_price_usd=exit_price_usd)

    async def bulk_update_open_stop_loss(self, new_pct: float) -> int:
        """Apply a stop-loss fraction to every open signal. Returns how many changed."""
        async with self._lock:
            signals = self._read()
            changed = 0
            for s in signals:
                if s.is_open and s.stop_loss_pct != new_pct:
                    s.stop_loss_pct = new_pct
                    changed += 1
            if changed:
                self._write(signals)
            return changed
