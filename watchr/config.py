"""
Configuration loader for watchr.
Loads settings from environment variables with sensible defaults.
"""

import math
import os
from dataclasses import dataclass
from typing import List, Optional
from dotenv import load_dotenv

from .errors import ConfigurationError


# Native SOL (wrapped/unwrapped automatically by Jupiter)
NATIVE_SOL = "So11111111111111111111111111111111111111112"

# Stablecoins
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
STABLECOIN_MINTS = frozenset({USDC_MINT, USDT_MINT})

LAMPORTS_PER_SOL = 1_000_000_000

# Repeated buys of the same (wallet, mint) inside this window merge into one signal
MERGE_WINDOW_SECONDS = 60.0

# Price monitor cadence
MIN_PRICECHECK_INTERVAL_MS = 3000
PRICECHECK_FALLBACK_SECONDS = 15.0
PRICECHECK_INITIAL_DELAY_SECONDS = 2.0

# Buy backoff ladder: 5s, 8s, 11s, 14s, then 15s until the budget runs out
BUY_RETRY_BASE_SECONDS = 5.0
BUY_RETRY_STEP_SECONDS = 3.0
BUY_RETRY_MAX_SECONDS = 15.0

# Sell cascade: second tier sells this fraction of the balance
PARTIAL_SELL_NUMERATOR = 95
PARTIAL_SELL_DENOMINATOR = 100

# HTTP timeouts (seconds)
QUOTE_TIMEOUT_SECONDS = 1.5
SWAP_TIMEOUT_SECONDS = 4.0
PRICE_TIMEOUT_SECONDS = 1.2
TELEGRAM_TIMEOUT_SECONDS = 5.0
RPC_TIMEOUT_SECONDS = 4.5

# Slack per confirmation wait: the last status poll and its sleep
CONFIRM_POLL_SLACK_SECONDS = RPC_TIMEOUT_SECONDS + 1.0


@dataclass
class Config:
    """Bot configuration loaded from environment variables."""

    # Network
    rpc_url: str

    # Wallet (only required when auto-trading)
    wallet_private_key: str

    # Trading
    auto_trade: bool
    trade_sol_budget: float  # SOL spent per mirrored buy
    slippage_bps: int  # Base slippage
    max_slippage_bps: int  # Escalation ceiling
    slippage_step_bps: int  # Escalation step
    max_price_impact_bps: int  # Quotes above this impact are treated as no route
    priority_fee_lamports: Optional[int]  # None = "auto"
    buy_probe_sol: float  # Probe size used to test if any route exists
    buy_retry_budget_sec: float  # Total backoff delay allowed for one buy
    buy_lock_sec: float  # Buy guard hold, must outlast the worst-case buy
    confirm_timeout_sec: float

    # Jupiter API
    jupiter_quote_api: str
    jupiter_swap_api: str

    # Event deduplication
    dedup_ttl_sec: float
    sweep_interval_sec: float

    # Price lookup
    birdeye_api_key: Optional[str]

    # Alerts
    telegram_bot_token: Optional[str]
    telegram_chat_id: Optional[str]
    telegram_allowed_user_id: Optional[str]

    # Ingress
    port: int

    # Persistence
    signals_file: str
    settings_file: str

    # Settings defaults (runtime-changeable via /set)
    default_stop_loss_pct: float
    default_take_profit_pct: Optional[float]
    default_pricecheck_interval_ms: int

    # Ops
    log_level: str

    @property
    def trade_lamports(self) -> int:
        return int(self.trade_sol_budget * LAMPORTS_PER_SOL)

    @property
    def probe_lamports(self) -> int:
        return int(self.buy_probe_sol * LAMPORTS_PER_SOL)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def buy_retry_delays(budget_seconds: float) -> List[float]:
    """Backoff delays growing from 5s to 15s, with a total under the budget."""
    delays: List[float] = []
    total = 0.0
    delay = BUY_RETRY_BASE_SECONDS
    while total + delay <= budget_seconds:
        delays.append(delay)
        total += delay
        delay = min(delay + BUY_RETRY_STEP_SECONDS, BUY_RETRY_MAX_SECONDS)
    return delays


def worst_case_buy_seconds(retry_budget_sec: float, confirm_timeout_sec: float) -> float:
    """
    Longest a single Router.buy can run.

    One attempt is up to four quotes (base, probe, re-quote, escalation) and
    two executions, each a swap build, a send and a full confirmation wait.
    Every backoff delay adds one more attempt.
    """
    execution = (
        SWAP_TIMEOUT_SECONDS
        + RPC_TIMEOUT_SECONDS
        + confirm_timeout_sec
        + CONFIRM_POLL_SLACK_SECONDS
    )
    attempt = 4 * QUOTE_TIMEOUT_SECONDS + 2 * execution
    delays = buy_retry_delays(retry_budget_sec)
    return attempt * (len(delays) + 1) + sum(delays)


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    return None if math.isnan(value) else value


def load_config() -> Config:
    """Load configuration from environment variables."""
    load_dotenv()

    rpc_url = os.getenv('RPC_URL', '')
    if not rpc_url:
        helius_key = os.getenv('HELIUS_API_KEY', '')
        if helius_key:
            rpc_url = f"https://mainnet.helius-rpc.com/?api-key={helius_key}"
    if not rpc_url:
        raise ConfigurationError("RPC_URL or HELIUS_API_KEY environment variable is required")

    auto_trade = os.getenv('AUTO_TRADE', 'false').lower() == 'true'
    wallet_private_key = os.getenv('TRADER_PRIVATE_KEY', '').strip()
    if auto_trade and not wallet_private_key:
        raise ConfigurationError("TRADER_PRIVATE_KEY is required when AUTO_TRADE=true")

    slippage_bps = _env_int('JUP_SLIPPAGE_BPS', '200')
    max_slippage_bps = _env_int('MAX_SLIPPAGE_BPS', '1100')
    if max_slippage_bps < slippage_bps:
        raise ConfigurationError("MAX_SLIPPAGE_BPS must be >= JUP_SLIPPAGE_BPS")

    priority_fee = _env_optional_float('PRIORITY_FEE_LAMPORTS')

    buy_retry_budget = _env_float('BUY_RETRY_BUDGET_SEC', '120')
    confirm_timeout_sec = _env_float('CONFIRM_TIMEOUT_SEC', '60')
    min_buy_lock = worst_case_buy_seconds(buy_retry_budget, confirm_timeout_sec) + 60
    buy_lock_sec = _env_float('BUY_LOCK_SEC', str(min_buy_lock))
    if buy_lock_sec < min_buy_lock:
        raise ConfigurationError(
            f"BUY_LOCK_SEC must cover the worst-case buy ({min_buy_lock:.0f}s for this retry budget)"
        )

    stop_loss = _env_float('STOP_LOSS_PCT', '-0.8')
    if stop_loss >= 0:
        raise ConfigurationError("STOP_LOSS_PCT must be a negative fraction (e.g. -0.8)")

    return Config(
        # Network
        rpc_url=rpc_url,

        # Wallet
        wallet_private_key=wallet_private_key,

        # Trading
        auto_trade=auto_trade,
        trade_sol_budget=_env_float('TRADE_SOL_BUDGET', '0.05'),
        slippage_bps=slippage_bps,
        max_slippage_bps=max_slippage_bps,
        slippage_step_bps=_env_int('SLIPPAGE_STEP_BPS', '300'),
        max_price_impact_bps=_env_int('MAX_PRICE_IMPACT_BPS', '1500'),  # 15%
        priority_fee_lamports=int(priority_fee) if priority_fee is not None else None,
        buy_probe_sol=_env_float('BUY_PROBE_SOL', '0.1'),
        buy_retry_budget_sec=buy_retry_budget,
        buy_lock_sec=buy_lock_sec,
        confirm_timeout_sec=confirm_timeout_sec,

        # Jupiter API
        jupiter_quote_api=os.getenv('JUPITER_QUOTE_API', 'https://quote-api.jup.ag/v6/quote'),
        jupiter_swap_api=os.getenv('JUPITER_SWAP_API', 'https://quote-api.jup.ag/v6/swap'),

        # Event deduplication
        dedup_ttl_sec=_env_float('DEDUP_TTL_SEC', '300'),  # Outlives webhook redelivery
        sweep_interval_sec=_env_float('SWEEP_INTERVAL_SEC', '60'),

        # Price lookup
        birdeye_api_key=os.getenv('BIRDEYE_API_KEY') or None,

        # Alerts
        telegram_bot_token=os.getenv('TELEGRAM_BOT_TOKEN') or None,
        telegram_chat_id=os.getenv('TELEGRAM_CHAT_ID') or None,
        telegram_allowed_user_id=os.getenv('TELEGRAM_ALLOWED_USER_ID') or None,

        # Ingress
        port=_env_int('PORT', '3000'),

        # Persistence
        signals_file=os.getenv('SIGNALS_FILE', 'signals.json'),
        settings_file=os.getenv('SETTINGS_FILE', 'settings.json'),

        # Settings defaults
        default_stop_loss_pct=stop_loss,
        default_take_profit_pct=_env_optional_float('TAKE_PROFIT_PCT'),
        default_pricecheck_interval_ms=_env_int('PRICECHECK_INTERVAL_MS', '15000'),

        # Ops
        log_level=os.getenv('LOG_LEVEL', 'INFO'),
    )
