"""
Error taxonomy for trade execution.

Primitives (quotes, executor, rpc) raise these; only the router classifies
and retries them.
"""

import asyncio

import aiohttp


class WatchrError(Exception):
    """Base class for watchr errors."""


class NoViableRoute(WatchrError):
    """No tradable path at any attempted size, slippage or hop count."""


class TransientError(WatchrError):
    """Timeouts, network resets and upstream server errors. Retryable."""


class RateLimited(TransientError):
    """Upstream answered 429."""


class SwapFailed(WatchrError):
    """Upstream execution rejected the swap, or it failed on-chain."""


class QuoteError(WatchrError):
    """Quote request rejected for a reason other than a missing route."""


class ConfigurationError(ValueError):
    """Missing or invalid configuration. Fatal at startup."""


def is_transient(error: BaseException) -> bool:
    """Whether the buy backoff loop may retry after this error."""
    return isinstance(
        error,
        (NoViableRoute, TransientError, asyncio.TimeoutError, aiohttp.ClientError),
    )
