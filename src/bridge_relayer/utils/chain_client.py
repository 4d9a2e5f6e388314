"""
Async JSON-RPC client for one EVM chain.

Wraps web3's AsyncWeb3 and translates its exceptions into the relayer's error
taxonomy: transport and node problems become TransientRpcError, a revert
during gas estimation becomes ExecutionReverted.
"""

import asyncio
import logging
from typing import Any

from aiohttp import ClientError, ClientTimeout
from web3 import AsyncWeb3, Web3
from web3.exceptions import (
    BlockNotFound,
    ContractLogicError,
    TransactionNotFound,
    Web3Exception,
)
from web3.types import LogReceipt, TxParams

from ..errors import NonceConflict, TransientRpcError
from ..models import Receipt

logger = logging.getLogger(__name__)

# Exceptions that mean "the node or the network let us down"
_TRANSPORT_ERRORS = (Web3Exception, ClientError, OSError, asyncio.TimeoutError, ValueError)


class ExecutionReverted(Exception):
    """The node evaluated the call and it reverted."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ChainClient:
    """
    Chain RPC capability for a single chain.

    All methods are coroutines; they are the relayer's suspension points.
    """

    def __init__(self, rpc_url: str, name: str = "", request_timeout: int = 30):
        """
        Initialize the client.

        Args:
            rpc_url: HTTP(S) RPC endpoint URL
            name: Chain name used in log messages
            request_timeout: Per-request timeout in seconds
        """
        self.rpc_url = rpc_url
        self.name = name or rpc_url
        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": ClientTimeout(total=request_timeout)})
        )

    async def _call(self, description: str, coro) -> Any:
        try:
            return await coro
        except _TRANSPORT_ERRORS as e:
            raise TransientRpcError(f"{self.name}: {description} failed: {e}") from e

    async def get_chain_id(self) -> int:
        return await self._call("eth_chainId", self.w3.eth.chain_id)

    async def get_block_number(self) -> int:
        return await self._call("eth_blockNumber", self.w3.eth.block_number)

    async def get_block_hash(self, block_number: int) -> str:
        try:
            block = await self.w3.eth.get_block(block_number)
        except BlockNotFound as e:
            raise TransientRpcError(f"{self.name}: block {block_number} not found") from e
        except _TRANSPORT_ERRORS as e:
            raise TransientRpcError(f"{self.name}: eth_getBlockByNumber failed: {e}") from e
        return Web3.to_hex(block["hash"])

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: str,
        topics: list[str],
    ) -> list[LogReceipt]:
        return await self._call(
            f"eth_getLogs [{from_block}, {to_block}]",
            self.w3.eth.get_logs({
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": Web3.to_checksum_address(address),
                "topics": topics,
            }),
        )

    async def estimate_gas(self, tx: TxParams) -> int:
        try:
            return await self.w3.eth.estimate_gas(tx)
        except ContractLogicError as e:
            raise ExecutionReverted(getattr(e, "message", None) or str(e)) from e
        except _TRANSPORT_ERRORS as e:
            raise TransientRpcError(f"{self.name}: eth_estimateGas failed: {e}") from e

    async def get_gas_price(self) -> int:
        return await self._call("eth_gasPrice", self.w3.eth.gas_price)

    async def get_transaction_count(self, address: str) -> int:
        """Next nonce for `address`, counting transactions still in the mempool."""
        return await self._call(
            "eth_getTransactionCount",
            self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending"),
        )

    async def send_raw_transaction(self, raw_tx: bytes, tx_hash: str) -> str:
        """
        Broadcast a signed transaction.

        A node that already has the transaction counts as success.

        Raises:
            NonceConflict: If the nonce was used by another transaction
            TransientRpcError: On any other failure
        """
        try:
            sent = await self.w3.eth.send_raw_transaction(raw_tx)
            return Web3.to_hex(sent)
        except _TRANSPORT_ERRORS as e:
            message = str(e).lower()
            if "already known" in message or "known transaction" in message:
                logger.info(f"{self.name}: {tx_hash} already known to node")
                return tx_hash
            if "nonce too low" in message or "nonce is too low" in message:
                raise NonceConflict(f"{self.name}: {e}") from e
            raise TransientRpcError(f"{self.name}: eth_sendRawTransaction failed: {e}") from e

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        """Receipt for `tx_hash`, or None while the transaction is pending or unknown."""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except _TRANSPORT_ERRORS as e:
            raise TransientRpcError(f"{self.name}: eth_getTransactionReceipt failed: {e}") from e
        if receipt is None:
            return None
        return Receipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            success=receipt.get("status", 0) == 1,
            gas_used=receipt.get("gasUsed", 0),
        )

    async def get_transaction(self, tx_hash: str) -> dict | None:
        """The transaction as the node knows it, or None if it has never seen it."""
        try:
            return dict(await self.w3.eth.get_transaction(tx_hash))
        except TransactionNotFound:
            return None
        except _TRANSPORT_ERRORS as e:
            raise TransientRpcError(f"{self.name}: eth_getTransactionByHash failed: {e}") from e
