"""
Token qualification: decides whether a source-wallet buy is worth mirroring.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional
import structlog

from .config import NATIVE_SOL, STABLECOIN_MINTS
from .errors import WatchrError
from .prices import BirdeyePriceClient
from .quotes import QuoteProvider

logger = structlog.get_logger()


@dataclass
class Qualification:
    """Verdict plus a best-effort price/symbol snapshot."""
    qualified: bool
    reason: Optional[str] = None
    source: Optional[str] = None
    price_usd: Optional[float] = None
    symbol: Optional[str] = None


class BasicQualifier:
    """
    Rejects SOL, stablecoins and tokens with no route at our budget.

    Security screening (honeypots, freeze authority, transfer fees) is not
    done here; plug in another object with the same `qualify` coroutine to
    add it.
    """

    source = "basic"

    def __init__(
        self,
        quotes: QuoteProvider,
        prices: BirdeyePriceClient,
        budget_lamports: int,
        slippage_bps: int
    ):
        self.quotes = quotes
        self.prices = prices
        self.budget_lamports = budget_lamports
        self.slippage_bps = slippage_bps

    async def has_route(self, mint: str) -> bool:
        quote = await self.quotes.get_quote(NATIVE_SOL, mint, self.budget_lamports, self.slippage_bps)
        return quote is not None

    async def price_snapshot(self, mint: str) -> Optional[float]:
        return await self.prices.get_price(mint)

    async def qualify(self, wallet: str, mint: str, amount: float) -> Qualification:
        if mint == NATIVE_SOL:
            return Qualification(False, "sol_ignored")
        if mint in STABLECOIN_MINTS:
            return Qualification(False, "stablecoin_ignored")

        try:
            viable = await self.has_route(mint)
        except (WatchrError, asyncio.TimeoutError) as e:
            logger.warning("route_check_failed", mint=mint[:8], error=str(e))
            return Qualification(False, "route_check_failed", source=self.source)

        if not viable:
            return Qualification(False, "no_route", source=self.source)

        price, symbol = await asyncio.gather(self.prices.get_price(mint), self.prices.get_symbol(mint))
        logger.info("token_qualified", wallet=wallet[:8], mint=mint[:8], price=price, symbol=symbol)
        return Qualification(True, source=self.source, price_usd=price, symbol=symbol)
