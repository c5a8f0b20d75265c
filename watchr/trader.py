"""
Auto-trader: the bot's own buys and sells, sized from its wallet.
"""

from typing import Optional
import structlog

from .router import Router, SellOutcome
from .rpc import RPCClient
from .wallet import Wallet

logger = structlog.get_logger()


class AutoTrader:
    """Fixed-budget buys and full-balance sells for the trading wallet."""

    def __init__(self, router: Router, rpc_client: RPCClient, wallet: Wallet, sol_budget: float):
        self.router = router
        self.rpc = rpc_client
        self.wallet = wallet
        self.sol_budget = sol_budget

    @property
    def address(self) -> str:
        return self.wallet.address

    async def buy(self, mint: str) -> str:
        """Spend the configured budget on `mint`. Returns the confirmed signature."""
        return await self.router.buy(mint, self.sol_budget)

    async def token_balance(self, mint: str) -> int:
        return await self.rpc.get_token_balance(self.wallet.pubkey, mint)

    async def sell_all(self, mint: str) -> Optional[SellOutcome]:
        """
        Liquidate the wallet's whole balance of `mint`.

        Returns:
            SellOutcome, or None when there is nothing to sell
        """
        balance = await self.token_balance(mint)
        if balance <= 0:
            logger.info("sell_skipped_no_balance", mint=mint[:8])
            return None
        return await self.router.sell(mint, balance)
