"""
RPC client wrapper for Solana.
Submits and confirms swap transactions and reads token balances.
"""

import asyncio
import base64
import time
from typing import Optional, Dict, Any, List
import aiohttp
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
import structlog

from .config import RPC_TIMEOUT_SECONDS
from .errors import RateLimited, SwapFailed, TransientError

logger = structlog.get_logger()


class RPCClient:
    """Async JSON-RPC client for Solana."""

    def __init__(self, rpc_url: str, confirm_timeout_sec: float = 60.0):
        self.rpc_url = rpc_url
        self.confirm_timeout_sec = confirm_timeout_sec
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=RPC_TIMEOUT_SECONDS)
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC request."""
        session = await self._get_session()
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params
        }

        try:
            async with session.post(
                self.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"}
            ) as response:
                if response.status == 429:
                    raise RateLimited(f"RPC rate limited ({method})")
                if response.status >= 500:
                    raise TransientError(f"RPC {response.status} ({method})")
                response.raise_for_status()
                result = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("rpc_request_failed", method=method, error=str(e))
            raise TransientError(f"RPC {method} failed: {e}") from e

        if "error" in result:
            error = result["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise TransientError(f"RPC error: {message}")

        return result.get("result")

    async def get_balance(self, pubkey: Pubkey) -> int:
        """Get SOL balance in lamports."""
        result = await self._request("getBalance", [str(pubkey)])
        return (result or {}).get("value", 0)

    async def get_token_balance(self, owner: Pubkey, mint: str) -> int:
        """Total balance (base units) across all of the owner's accounts for a mint."""
        result = await self._request(
            "getTokenAccountsByOwner",
            [str(owner), {"mint": mint}, {"encoding": "jsonParsed"}]
        )
        total = 0
        for account in (result or {}).get("value", []):
            info = account.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
            total += int(info.get("tokenAmount", {}).get("amount", 0))
        return total

    async def send_transaction(
        self,
        transaction: VersionedTransaction,
        skip_preflight: bool = True,
        max_retries: int = 3
    ) -> str:
        """Send a signed transaction and return its signature."""
        tx_base64 = base64.b64encode(bytes(transaction)).decode('utf-8')

        options = {
            "skipPreflight": skip_preflight,
            "preflightCommitment": "confirmed",
            "encoding": "base64",
            "maxRetries": max_retries,
        }

        result = await self._request("sendTransaction", [tx_base64, options])

        if isinstance(result, str):
            return result

        raise TransientError(f"Unexpected sendTransaction result: {result}")

    async def confirm_transaction(
        self,
        signature: str,
        timeout_seconds: Optional[float] = None
    ) -> bool:
        """
        Wait for transaction confirmation.

        Returns:
            True once confirmed, False if the wait timed out

        Raises:
            SwapFailed: if the transaction landed with an error
        """
        timeout_seconds = timeout_seconds or self.confirm_timeout_sec
        start_time = time.monotonic()

        while time.monotonic() - start_time < timeout_seconds:
            try:
                result = await self._request(
                    "getSignatureStatuses",
                    [[signature], {"searchTransactionHistory": True}]
                )
            except TransientError as e:
                logger.warning("confirm_transaction_error", signature=signature[:16], error=str(e))
                await asyncio.sleep(1.0)
                continue

            statuses = (result or {}).get("value", [])
            if statuses and statuses[0]:
                status = statuses[0]
                if status.get("err"):
                    logger.error("transaction_failed", signature=signature[:16], error=status["err"])
                    raise SwapFailed(f"transaction {signature} failed: {status['err']}")

                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    logger.info(
                        "transaction_confirmed",
                        signature=signature[:16],
                        status=status["confirmationStatus"]
                    )
                    return True

            await asyncio.sleep(0.5)

        logger.warning("transaction_timeout", signature=signature[:16])
        return False
