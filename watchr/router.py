"""
Route resolution for watchr.

Buys are budget-fixed: probing for liquidity is kept apart from execution
so a buy never silently resizes. Sells degrade (smaller size, extra hop,
stable-coin exit) until the position is out.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple
import structlog

from .config import (
    LAMPORTS_PER_SOL,
    NATIVE_SOL,
    PARTIAL_SELL_DENOMINATOR,
    PARTIAL_SELL_NUMERATOR,
    USDC_MINT,
    buy_retry_delays,
)
from .errors import NoViableRoute, SwapFailed, is_transient
from .executor import SwapExecutor
from .quotes import Quote, QuoteProvider

logger = structlog.get_logger()


@dataclass
class SellOutcome:
    """How a position was liquidated."""
    signature: str
    tier: str  # direct | direct_95 | two_hop | two_hop_partial
    sold_amount: int
    output_mint: str = NATIVE_SOL
    second_hop_signature: Optional[str] = None

    @property
    def partial(self) -> bool:
        """True when the exit ended in the stable asset instead of SOL."""
        return self.output_mint != NATIVE_SOL

    @property
    def signatures(self) -> List[str]:
        """Every transaction of the exit, first hop first."""
        if self.second_hop_signature:
            return [self.signature, self.second_hop_signature]
        return [self.signature]


class Router:
    """Layered retry/fallback policy over the quote provider and executor."""

    def __init__(
        self,
        quotes: QuoteProvider,
        executor: SwapExecutor,
        slippage_bps: int,
        max_slippage_bps: int,
        slippage_step_bps: int = 300,
        probe_lamports: int = LAMPORTS_PER_SOL // 10,
        retry_budget_seconds: float = 120.0,
        stable_mint: str = USDC_MINT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.quotes = quotes
        self.executor = executor
        self.slippage_bps = slippage_bps
        self.max_slippage_bps = max_slippage_bps
        self.slippage_step_bps = slippage_step_bps
        self.probe_lamports = probe_lamports
        self.retry_delays = buy_retry_delays(retry_budget_seconds)
        self.stable_mint = stable_mint
        self._sleep = sleep

    def escalate_slippage(self, current_bps: int) -> Optional[int]:
        """Next slippage step, or None once the ceiling is reached."""
        bumped = min(self.max_slippage_bps, current_bps + self.slippage_step_bps)
        return bumped if bumped > current_bps else None

    def slippage_ladder(self) -> List[int]:
        """Ascending slippages from base to the ceiling."""
        ladder = [self.slippage_bps]
        while True:
            nxt = self.escalate_slippage(ladder[-1])
            if nxt is None:
                return ladder
            ladder.append(nxt)

    # ------------------------------------------------------------------ buy

    async def buy(self, mint: str, sol_budget: float) -> str:
        """
        Spend a fixed SOL budget on `mint`.

        Retries transient failures (no route, rate limits, server and
        network errors) with growing delays; anything else aborts.

        Returns:
            Confirmed transaction signature
        """
        lamports = int(sol_budget * LAMPORTS_PER_SOL)
        attempt = 0

        while True:
            attempt += 1
            try:
                signature = await self._buy_once(mint, lamports)
                logger.info("buy_executed", mint=mint[:8], attempt=attempt, signature=signature[:16])
                return signature
            except Exception as e:
                if not is_transient(e):
                    logger.error("buy_aborted", mint=mint[:8], attempt=attempt, error=str(e))
                    raise
                if attempt > len(self.retry_delays):
                    logger.error("buy_retries_exhausted", mint=mint[:8], attempts=attempt, error=str(e))
                    raise

                delay = self.retry_delays[attempt - 1]
                logger.warning(
                    "buy_retry",
                    mint=mint[:8],
                    attempt=attempt,
                    next_retry_sec=delay,
                    error=str(e) or type(e).__name__
                )
                await self._sleep(delay)

    async def _buy_once(self, mint: str, lamports: int) -> str:
        quote = await self.quotes.get_quote(NATIVE_SOL, mint, lamports, self.slippage_bps)

        if quote is None:
            probe_amount = max(lamports, self.probe_lamports)
            probe = await self.quotes.get_quote(NATIVE_SOL, mint, probe_amount, self.slippage_bps)
            if probe is None:
                raise NoViableRoute("no_viable_route")

            logger.info("buy_probe_found_route", mint=mint[:8], probe_lamports=probe_amount)
            # Liquidity at the probe size says nothing about the budget size
            quote = await self.quotes.get_quote(NATIVE_SOL, mint, lamports, self.slippage_bps)
            if quote is None:
                raise NoViableRoute("no_viable_route_at_budget")

        try:
            return await self.executor.execute(quote)
        except SwapFailed as e:
            bumped = self.escalate_slippage(quote.slippage_bps)
            if bumped is None:
                raise

            logger.warning(
                "buy_slippage_escalated",
                mint=mint[:8],
                from_bps=quote.slippage_bps,
                to_bps=bumped,
                error=str(e)
            )
            requote = await self.quotes.get_quote(NATIVE_SOL, mint, lamports, bumped)
            if requote is None:
                raise NoViableRoute("no_viable_route_after_escalation") from e
            return await self.executor.execute(requote)

    # ----------------------------------------------------------------- sell

    async def sell(self, mint: str, amount: int) -> SellOutcome:
        """
        Liquidate `amount` base units of `mint`.

        Tiers: full size to SOL, 95% to SOL, then two hops through the
        stable mint. Only "no route" moves to the next tier; every other
        error propagates immediately.
        """
        if amount <= 0:
            raise NoViableRoute("nothing_to_sell")

        partial = amount * PARTIAL_SELL_NUMERATOR // PARTIAL_SELL_DENOMINATOR
        for tier, size in (("direct", amount), ("direct_95", partial)):
            if size <= 0:
                continue
            try:
                signature, _ = await self._execute_ladder(mint, NATIVE_SOL, size)
            except NoViableRoute as e:
                logger.info("sell_tier_failed", mint=mint[:8], tier=tier, error=str(e))
                continue
            logger.info("sell_executed", mint=mint[:8], tier=tier, amount=size, signature=signature[:16])
            return SellOutcome(signature=signature, tier=tier, sold_amount=size)

        try:
            first_sig, first_quote = await self._execute_ladder(mint, self.stable_mint, amount)
        except NoViableRoute as e:
            logger.error("sell_no_route", mint=mint[:8], error=str(e))
            raise NoViableRoute("illiquid_or_dust_too_small") from e

        outcome = SellOutcome(
            signature=first_sig,
            tier="two_hop_partial",
            sold_amount=amount,
            output_mint=self.stable_mint,
        )

        # Second hop is best-effort: the position is already out of the token
        try:
            second_sig, _ = await self._execute_ladder(
                self.stable_mint, NATIVE_SOL, first_quote.other_amount_threshold
            )
        except Exception as e:
            logger.warning("sell_second_hop_failed", mint=mint[:8], error=str(e))
            return outcome

        outcome.tier = "two_hop"
        outcome.output_mint = NATIVE_SOL
        outcome.second_hop_signature = second_sig
        logger.info("sell_executed", mint=mint[:8], tier="two_hop", signature=second_sig[:16])
        return outcome

    async def _execute_ladder(self, input_mint: str, output_mint: str, amount: int) -> Tuple[str, Quote]:
        """
        Walk the slippage ladder for one size and direction.

        A missing quote or a rejected swap moves up a rung. Ending on
        missing quotes raises NoViableRoute; ending on a rejected swap
        re-raises it.
        """
        last_failure: Optional[SwapFailed] = None

        for slippage in self.slippage_ladder():
            quote = await self.quotes.get_quote(input_mint, output_mint, amount, slippage)
            if quote is None:
                last_failure = None
                continue
            try:
                return await self.executor.execute(quote), quote
            except SwapFailed as e:
                logger.warning(
                    "sell_swap_failed",
                    input_mint=input_mint[:8],
                    output_mint=output_mint[:8],
                    slippage_bps=slippage,
                    error=str(e)
                )
                last_failure = e

        if last_failure is not None:
            raise last_failure
        raise NoViableRoute(f"no_route {input_mint[:8]}->{output_mint[:8]}")
