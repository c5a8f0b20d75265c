"""
Quote provider for watchr.
Fetches priced routes from the Jupiter quote API and normalizes them.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import aiohttp
import structlog

from .config import QUOTE_TIMEOUT_SECONDS
from .errors import QuoteError, RateLimited, TransientError

logger = structlog.get_logger()

# Upstream error codes that mean "there is no route", not "the request was bad"
NO_ROUTE_MARKERS = (
    "COULD_NOT_FIND_ANY_ROUTE",
    "NO_ROUTES_FOUND",
    "TOKEN_NOT_TRADABLE",
    "ROUTE_PLAN_DOES_NOT_CONSUME_ALL_THE_AMOUNT",
    "no route",
)


@dataclass
class Quote:
    """A priced route, normalized from the upstream payload."""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    other_amount_threshold: int  # Minimum out after slippage
    slippage_bps: int
    price_impact_pct: float
    route_plan: List[Dict[str, Any]]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def price_impact_bps(self) -> int:
        return int(round(self.price_impact_pct * 10000))

    @property
    def hops(self) -> int:
        return len(self.route_plan)


def _unwrap(payload: Any) -> Any:
    """Strip the optional envelope some upstream versions put around the quote."""
    if isinstance(payload, dict):
        for key in ("data", "quoteResponse"):
            inner = payload.get(key)
            if isinstance(inner, dict) and "routePlan" not in payload:
                return inner
    return payload


def parse_quote(payload: Any, fallback_slippage_bps: int = 0) -> Optional[Quote]:
    """
    Normalize a quote response into a Quote.

    Returns None when the payload does not carry a non-empty route plan
    or its amounts are not readable.
    """
    body = _unwrap(payload)
    if not isinstance(body, dict):
        return None

    route_plan = body.get("routePlan")
    if not isinstance(route_plan, list) or not route_plan:
        return None

    try:
        in_amount = int(body["inAmount"])
        out_amount = int(body["outAmount"])
        threshold = int(body.get("otherAmountThreshold") or out_amount)
        slippage = int(body.get("slippageBps", fallback_slippage_bps))
        impact = float(body.get("priceImpactPct") or 0)
    except (KeyError, TypeError, ValueError):
        return None

    if out_amount <= 0:
        return None

    return Quote(
        input_mint=body.get("inputMint", ""),
        output_mint=body.get("outputMint", ""),
        in_amount=in_amount,
        out_amount=out_amount,
        other_amount_threshold=threshold,
        slippage_bps=slippage,
        price_impact_pct=impact,
        route_plan=route_plan,
        raw=body,
    )


def _is_no_route(text: str) -> bool:
    lowered = text.lower()
    return any(marker.lower() in lowered for marker in NO_ROUTE_MARKERS)


class QuoteProvider:
    """Requests quotes from Jupiter."""

    def __init__(
        self,
        quote_api: str,
        max_price_impact_bps: int = 1500,
        timeout_seconds: float = QUOTE_TIMEOUT_SECONDS
    ):
        self.quote_api = quote_api
        self.max_price_impact_bps = max_price_impact_bps
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        max_accounts: Optional[int] = None,
        only_direct_routes: bool = False
    ) -> Optional[Quote]:
        """
        Get a swap quote from Jupiter.

        Args:
            input_mint: Mint spent
            output_mint: Mint received
            amount: Input amount in base units
            slippage_bps: Slippage tolerance
            max_accounts: Optional cap on accounts touched by the route
            only_direct_routes: Restrict to single-hop routes

        Returns:
            Quote, or None when no usable route exists

        Raises:
            TransientError: timeouts, network errors, 5xx (RateLimited on 429)
            QuoteError: any other upstream rejection
        """
        if amount < 0:
            raise ValueError(f"amount must be non-negative, got {amount}")
        if amount == 0:
            return None

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "swapMode": "ExactIn",
            "onlyDirectRoutes": "true" if only_direct_routes else "false",
        }
        if max_accounts is not None:
            params["maxAccounts"] = str(max_accounts)

        session = await self._get_session()
        try:
            async with session.get(self.quote_api, params=params, timeout=self.timeout) as response:
                if response.status == 429:
                    raise RateLimited("quote rate limited")
                if response.status >= 500:
                    raise TransientError(f"quote upstream {response.status}")
                if response.status != 200:
                    error_text = await response.text()
                    if _is_no_route(error_text):
                        logger.debug(
                            "quote_no_route",
                            input_mint=input_mint[:8],
                            output_mint=output_mint[:8],
                            amount=amount
                        )
                        return None
                    raise QuoteError(f"quote {response.status}: {error_text[:200]}")

                payload = await response.json()
        except asyncio.TimeoutError as e:
            raise TransientError("quote_timeout") from e
        except aiohttp.ClientError as e:
            raise TransientError(f"quote request failed: {e}") from e

        if isinstance(payload, dict) and payload.get("error"):
            if _is_no_route(str(payload.get("error")) + str(payload.get("errorCode", ""))):
                return None
            raise QuoteError(f"quote error: {payload.get('error')}")

        quote = parse_quote(payload, fallback_slippage_bps=slippage_bps)
        if quote is None:
            logger.debug("quote_invalid_shape", input_mint=input_mint[:8], output_mint=output_mint[:8])
            return None

        if quote.price_impact_bps > self.max_price_impact_bps:
            logger.info(
                "quote_price_impact_too_high",
                output_mint=output_mint[:8],
                impact_bps=quote.price_impact_bps,
                max_bps=self.max_price_impact_bps
            )
            return None

        return quote
