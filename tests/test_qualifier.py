"""
Unit tests for the basic qualifier and the price client.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeResponse, FakeSession
from watchr.config import NATIVE_SOL, USDC_MINT
from watchr.errors import TransientError
from watchr.prices import BirdeyePriceClient
from watchr.qualifier import BasicQualifier

MINT = "MiNT333333333333333333333333333333333333333"


def make_qualifier(quote=object(), quote_error=None):
    quotes = MagicMock()
    quotes.get_quote = AsyncMock(return_value=quote, side_effect=quote_error)
    prices = MagicMock()
    prices.get_price = AsyncMock(return_value=0.0042)
    prices.get_symbol = AsyncMock(return_value="TKN")
    return BasicQualifier(quotes, prices, budget_lamports=50_000_000, slippage_bps=200), quotes, prices


class TestBasicQualifier:
    """Qualification rules."""

    @pytest.mark.asyncio
    async def test_native_sol_ignored(self):
        qualifier, quotes, _ = make_qualifier()

        verdict = await qualifier.qualify("w", NATIVE_SOL, 1)

        assert not verdict.qualified
        assert verdict.reason == "sol_ignored"
        quotes.get_quote.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stablecoin_ignored(self):
        qualifier, _, _ = make_qualifier()

        assert (await qualifier.qualify("w", USDC_MINT, 1)).reason == "stablecoin_ignored"

    @pytest.mark.asyncio
    async def test_no_route(self):
        qualifier, quotes, prices = make_qualifier(quote=None)

        verdict = await qualifier.qualify("w", MINT, 1)

        assert verdict.reason == "no_route"
        quotes.get_quote.assert_awaited_once_with(NATIVE_SOL, MINT, 50_000_000, 200)
        prices.get_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_route_check_failure(self):
        qualifier, _, _ = make_qualifier(quote_error=TransientError("quote_timeout"))

        assert (await qualifier.qualify("w", MINT, 1)).reason == "route_check_failed"

    @pytest.mark.asyncio
    async def test_qualified_with_snapshot(self):
        qualifier, _, _ = make_qualifier()

        verdict = await qualifier.qualify("w", MINT, 1)

        assert verdict.qualified
        assert verdict.source == "basic"
        assert verdict.price_usd == 0.0042
        assert verdict.symbol == "TKN"

    @pytest.mark.asyncio
    async def test_price_snapshot(self):
        qualifier, quotes, prices = make_qualifier()

        assert await qualifier.price_snapshot(MINT) == 0.0042
        prices.get_price.assert_awaited_once_with(MINT)
        quotes.get_quote.assert_not_awaited()


class TestBirdeyePriceClient:
    """Price and symbol lookups."""

    @pytest.mark.asyncio
    async def test_price_value_shape_and_api_key(self):
        client = BirdeyePriceClient(api_key="k")
        session = FakeSession(FakeResponse(200, {"data": {"value": 1.5}}))
        client._get_session = AsyncMock(return_value=session)

        assert await client.get_price(MINT) == 1.5
        assert session.last_call["headers"]["X-API-KEY"] == "k"
        assert session.last_call["params"] == {"address": MINT}

    @pytest.mark.asyncio
    async def test_price_alternative_shapes(self):
        client = BirdeyePriceClient()
        client._get_session = AsyncMock(return_value=FakeSession(
            FakeResponse(200, {"data": {"price": 2}}),
            FakeResponse(200, {"data": 3.25}),
            FakeResponse(200, {"data": {"value": "n/a"}}),
        ))

        assert await client.get_price(MINT) == 2.0
        assert await client.get_price(MINT) == 3.25
        assert await client.get_price(MINT) is None

    @pytest.mark.asyncio
    async def test_failures_return_none(self):
        client = BirdeyePriceClient()
        client._get_session = AsyncMock(return_value=FakeSession(
            FakeResponse(500),
            asyncio.TimeoutError(),
        ))

        assert await client.get_price(MINT) is None
        assert await client.get_price(MINT) is None

    @pytest.mark.asyncio
    async def test_symbol(self):
        client = BirdeyePriceClient()
        client._get_session = AsyncMock(return_value=FakeSession(
            FakeResponse(200, {"data": {"symbol": "TKN", "name": "Token"}}),
            FakeResponse(200, {"data": {}}),
        ))

        assert await client.get_symbol(MINT) == "TKN"
        assert await client.get_symbol(MINT) is None
