"""
Signing capability for unlock transactions.

The relayer never stores raw key material; it holds an AccountSigner built
either from a local private key or from a key derived by the ROFL daemon.
"""

import logging
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .rofl_utility import RoflUtility

logger = logging.getLogger(__name__)


class AccountSigner:
    """Signs transactions for one signing identity."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "AccountSigner":
        if not private_key:
            raise ValueError("A private key is required to sign unlock transactions")
        return cls(Account.from_key(private_key))

    @classmethod
    async def from_rofl(cls, key_id: str, rofl_util: RoflUtility | None = None) -> "AccountSigner":
        """Build a signer from the key the ROFL daemon derives for `key_id`."""
        rofl_util = rofl_util or RoflUtility()
        logger.debug(f"Fetching signing key '{key_id}' from ROFL...")
        key = await rofl_util.fetch_key(key_id)
        signer = cls.from_key(key if key.startswith("0x") else f"0x{key}")
        logger.info(f"Signing identity {signer.address} loaded from ROFL")
        return signer

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, tx: dict[str, Any]) -> tuple[str, bytes]:
        """Sign `tx`; returns (transaction hash, raw signed bytes)."""
        signed = self._account.sign_transaction(tx)
        return Web3.to_hex(signed.hash), bytes(signed.raw_transaction)
