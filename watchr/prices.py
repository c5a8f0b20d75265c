"""
Price and token metadata lookup via Birdeye.
Best-effort: every failure is logged and returned as None.
"""

import asyncio
from typing import Any, Optional
import aiohttp
import structlog

from .config import PRICE_TIMEOUT_SECONDS

logger = structlog.get_logger()

BIRDEYE_API = "https://public-api.birdeye.so"


def _extract_price(payload: Any) -> Optional[float]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if isinstance(data, dict):
        price = data.get("value", data.get("price"))
    else:
        price = data
    # bool is an int subclass
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return None
    return float(price)


class BirdeyePriceClient:
    """Birdeye public price/metadata endpoints."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = BIRDEYE_API,
        timeout_seconds: float = PRICE_TIMEOUT_SECONDS
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
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

    @property
    def headers(self) -> dict:
        headers = {"accept": "application/json", "x-chain": "solana"}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key
        return headers

    async def _get_json(self, path: str, mint: str) -> Optional[Any]:
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.base_url}{path}",
                params={"address": mint},
                headers=self.headers,
                timeout=self.timeout
            ) as response:
                if response.status != 200:
                    logger.debug("birdeye_http_error", path=path, mint=mint[:8], status=response.status)
                    return None
                return await response.json()
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
            logger.debug("birdeye_request_failed", path=path, mint=mint[:8], error=str(e) or type(e).__name__)
            return None

    async def get_price(self, mint: str) -> Optional[float]:
        """Current USD price of `mint`, or None."""
        payload = await self._get_json("/defi/price", mint)
        return _extract_price(payload) if payload is not None else None

    async def get_symbol(self, mint: str) -> Optional[str]:
        """Ticker symbol of `mint`, or None."""
        payload = await self._get_json("/defi/v3/token/meta-data/single", mint)
        data = payload.get("data") if isinstance(payload, dict) else None
        symbol = data.get("symbol") if isinstance(data, dict) else None
        return symbol if isinstance(symbol, str) and symbol else None
