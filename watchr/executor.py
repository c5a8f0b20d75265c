"""
Swap executor for watchr.
Builds, signs, sends and confirms Jupiter swap transactions.
"""

import asyncio
import base64
from typing import Optional, Dict, Any
import aiohttp
from solders.transaction import VersionedTransaction
import structlog

from .config import SWAP_TIMEOUT_SECONDS
from .errors import SwapFailed, TransientError
from .quotes import Quote
from .rpc import RPCClient
from .wallet import Wallet

logger = structlog.get_logger()


class SwapExecutor:
    """Executes a single quoted swap. Never retries on its own."""

    def __init__(
        self,
        swap_api: str,
        wallet: Wallet,
        rpc_client: RPCClient,
        priority_fee_lamports: Optional[int] = None,
        timeout_seconds: float = SWAP_TIMEOUT_SECONDS
    ):
        self.swap_api = swap_api
        self.wallet = wallet
        self.rpc = rpc_client
        self.priority_fee_lamports = priority_fee_lamports
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

    def build_swap_request(self, quote: Quote) -> Dict[str, Any]:
        """Swap request carrying the quote verbatim."""
        return {
            "quoteResponse": quote.raw,
            "userPublicKey": self.wallet.address,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": (
                self.priority_fee_lamports if self.priority_fee_lamports is not None else "auto"
            ),
        }

    async def get_swap_transaction(self, quote: Quote) -> VersionedTransaction:
        """
        Get an unsigned swap transaction from Jupiter.

        Raises:
            SwapFailed: non-200 answer or no transaction in the response
            TransientError: timeout or network error
        """
        session = await self._get_session()
        payload = self.build_swap_request(quote)

        try:
            async with session.post(
                self.swap_api,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error("swap_api_error", status=response.status, error=error_text[:200])
                    raise SwapFailed(f"swap_api {response.status}: {error_text[:400]}")

                data = await response.json()
        except asyncio.TimeoutError as e:
            raise TransientError("swap_api_timeout") from e
        except aiohttp.ClientError as e:
            raise TransientError(f"swap_api request failed: {e}") from e

        swap_tx_b64 = data.get("swapTransaction") if isinstance(data, dict) else None
        if not swap_tx_b64:
            logger.error("no_swap_transaction_in_response")
            raise SwapFailed("no_swap_transaction")

        try:
            return VersionedTransaction.from_bytes(base64.b64decode(swap_tx_b64))
        except ValueError as e:
            raise SwapFailed(f"undecodable swap transaction: {e}") from e

    async def execute(self, quote: Quote) -> str:
        """
        Execute a quote and return the confirmed transaction signature.

        Side effect: irreversible on-chain transfer. Call once per intended trade.
        """
        transaction = await self.get_swap_transaction(quote)
        signed_tx = self.wallet.sign_versioned_transaction(transaction)

        signature = await self.rpc.send_transaction(signed_tx, skip_preflight=True, max_retries=3)

        logger.info(
            "swap_sent",
            signature=signature[:16],
            input_mint=quote.input_mint[:8],
            output_mint=quote.output_mint[:8],
            slippage_bps=quote.slippage_bps
        )

        if not await self.rpc.confirm_transaction(signature):
            # The transaction may still land; the caller decides whether to retry
            raise TransientError(f"confirmation_timeout {signature}")

        return signature
