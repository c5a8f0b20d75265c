"""
Wallet abstraction for watchr.
Holds the trader signing key and signs swap transactions.
"""

import json
from typing import Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
import structlog

from .errors import ConfigurationError

logger = structlog.get_logger()


def parse_keypair(private_key: str) -> Keypair:
    """
    Decode a private key given as base58 or as a JSON byte array.

    Raises:
        ConfigurationError: if the key is missing or cannot be decoded
    """
    if not private_key or not private_key.strip():
        raise ConfigurationError("TRADER_PRIVATE_KEY missing")

    raw = private_key.strip()
    try:
        if raw.startswith("["):
            key_bytes = bytes(json.loads(raw))
        else:
            key_bytes = base58.b58decode(raw)

        # Solana keypairs are 64 bytes (32 byte private + 32 byte public)
        if len(key_bytes) == 64:
            return Keypair.from_bytes(key_bytes)
        if len(key_bytes) == 32:
            return Keypair.from_seed(key_bytes)
        raise ValueError(f"invalid key length {len(key_bytes)}")
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid TRADER_PRIVATE_KEY: {e}") from e


class Wallet:
    """Wallet abstraction for signing Solana transactions."""

    def __init__(self, private_key: str):
        self._keypair: Optional[Keypair] = parse_keypair(private_key)
        logger.info("wallet_loaded", address=self.address)

    @property
    def keypair(self) -> Keypair:
        if self._keypair is None:
            raise ConfigurationError("Wallet not initialized")
        return self._keypair

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self.pubkey)

    def sign_versioned_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        """Sign a versioned transaction."""
        # Versioned transactions are re-created with the signer list
        return VersionedTransaction(transaction.message, [self.keypair])
