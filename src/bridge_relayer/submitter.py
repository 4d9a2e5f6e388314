"""Unlock transaction submission for one destination chain.

This module turns a LockEvent into a signed unlockTokens transaction on the
destination chain, broadcasts it, waits for its receipt, and reconciles
transactions left behind by a previous run without ever signing a second
transaction for the same event while the first one can still land.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from .errors import NonceConflict, PermanentSubmissionError, TransientRpcError
from .models import LockEvent, Receipt, ReconcileResult, ReconcileState, SignedUnlock
from .utils.chain_client import ChainClient, ExecutionReverted
from .utils.contract_utility import BridgeContract
from .utils.nonce_manager import NonceManager
from .utils.retry import RetryPolicy
from .utils.signer import AccountSigner

logger = logging.getLogger(__name__)

OnSigned = Callable[[SignedUnlock], Awaitable[None] | None]


class TransactionSubmitter:
    """Submits unlock transactions for one (destination chain, signing identity)."""

    def __init__(
        self,
        chain_id: int,
        client: ChainClient,
        contract: BridgeContract,
        signer: AccountSigner,
        nonce_manager: NonceManager,
        retry: RetryPolicy | None = None,
        max_gas_price: int | None = None,
        gas_limit_multiplier: float = 1.2,
        receipt_timeout: float = 120.0,
        receipt_poll_interval: float = 2.0,
        name: str = "",
    ) -> None:
        """
        Initialize the TransactionSubmitter.

        Args:
            chain_id: Destination chain id (signed into every transaction)
            client: RPC client for the destination chain
            contract: Bridge contract interface on the destination chain
            signer: Signing identity used for unlocks
            nonce_manager: Shared registry of nonce lanes
            retry: Backoff policy for each RPC step
            max_gas_price: Gas price ceiling in wei (None disables the ceiling)
            gas_limit_multiplier: Headroom applied to the gas estimate
            receipt_timeout: Seconds to wait for a receipt before leaving it pending
            receipt_poll_interval: Initial delay between receipt polls
            name: Chain name used in log messages
        """
        if receipt_poll_interval <= 0:
            raise ValueError(f"Receipt poll interval must be positive, got {receipt_poll_interval}")

        self.chain_id = chain_id
        self.client = client
        self.contract = contract
        self.signer = signer
        self.retry = retry or RetryPolicy()
        self.max_gas_price = max_gas_price
        self.gas_limit_multiplier = gas_limit_multiplier
        self.receipt_timeout = receipt_timeout
        self.receipt_poll_interval = receipt_poll_interval
        self.name = name or str(chain_id)
        self.lane = nonce_manager.lane(chain_id, signer.address, client.get_transaction_count)

        logger.info(
            f"TransactionSubmitter for {self.name} (chain {chain_id}) "
            f"signing as {signer.address}, bridge {contract.address}"
        )

    @property
    def lane_key(self) -> tuple[int, str]:
        return self.lane.key

    async def submit(self, event: LockEvent, on_signed: OnSigned | None = None) -> SignedUnlock:
        """
        Sign and broadcast the unlock for `event`.

        `on_signed` is awaited after signing and before broadcasting, while the
        nonce lane is still held, so the caller can persist the transaction.

        Returns:
            The broadcast transaction

        Raises:
            PermanentSubmissionError: Revert during estimation or fee above ceiling
            TransientRpcError: Retries exhausted
            NonceConflict: The node says the nonce was already used
        """
        call_data = self.contract.encode_unlock_call(event.recipient, event.amount)
        tx = {
            "from": self.signer.address,
            "to": self.contract.address,
            "data": call_data,
            "value": 0,
            "chainId": self.chain_id,
        }

        gas = await self._estimate_gas(event, tx)
        gas_price = await self.retry.run(self.client.get_gas_price, f"{self.name} gas price")
        if self.max_gas_price is not None and gas_price > self.max_gas_price:
            raise PermanentSubmissionError(
                f"Gas price {gas_price} wei on {self.name} exceeds ceiling {self.max_gas_price} wei"
            )

        async with self.lane.reserve() as ticket:
            unsigned = {k: v for k, v in tx.items() if k != "from"}
            unsigned.update({"gas": gas, "gasPrice": gas_price, "nonce": ticket.nonce})
            tx_hash, raw_tx = self.signer.sign(unsigned)
            signed = SignedUnlock(tx_hash=tx_hash, raw_tx=raw_tx, nonce=ticket.nonce, gas=gas, gas_price=gas_price)

            if on_signed is not None:
                result = on_signed(signed)
                if asyncio.iscoroutine(result):
                    await result

            await self.broadcast(signed)
            ticket.mark_used()

        logger.info(
            f"Unlock for {event.event_id} broadcast on {self.name}: {tx_hash} "
            f"(nonce={signed.nonce}, gas={gas}, gasPrice={gas_price})"
        )
        return signed

    async def _estimate_gas(self, event: LockEvent, tx: dict) -> int:
        async def estimate() -> int:
            try:
                return await self.client.estimate_gas(tx)
            except ExecutionReverted as e:
                raise PermanentSubmissionError(
                    f"unlockTokens for {event.event_id} reverts on {self.name}: {e.reason}"
                ) from e

        estimate_value = await self.retry.run(estimate, f"{self.name} gas estimate")
        return int(estimate_value * self.gas_limit_multiplier)

    async def broadcast(self, signed: SignedUnlock) -> str:
        """Send already-signed bytes; re-sending the same bytes is harmless."""
        async def send() -> str:
            return await self.client.send_raw_transaction(signed.raw_tx, signed.tx_hash)

        return await self.retry.run(send, f"{self.name} broadcast {signed.tx_hash[:10]}...")

    async def wait_for_receipt(self, tx_hash: str, timeout: float | None = None) -> Receipt | None:
        """
        Poll for a receipt with backoff.

        Returns:
            The receipt, or None if none appeared within the timeout
        """
        deadline = time.monotonic() + (self.receipt_timeout if timeout is None else timeout)
        # The poll interval is a floor even when the retry cap is lower
        max_delay = max(self.retry.max_delay, self.receipt_poll_interval)
        delay = self.receipt_poll_interval
        while True:
            try:
                receipt = await self.client.get_receipt(tx_hash)
            except TransientRpcError as e:
                logger.warning(f"Receipt lookup for {tx_hash[:10]}... on {self.name} failed: {e}")
                receipt = None
            if receipt is not None:
                return receipt
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info(f"No receipt yet for {tx_hash[:10]}... on {self.name}")
                return None
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, max_delay)

    async def reconcile(self, tx_hash: str, raw_tx: bytes | None) -> ReconcileResult:
        """
        Find out what happened to a transaction sent by an earlier run.

        Never signs anything new. If the node has forgotten the transaction the
        identical signed bytes are re-broadcast; only when its nonce has been
        taken by some other transaction is it reported as DROPPED.
        """
        receipt = await self.retry.run(
            lambda: self.client.get_receipt(tx_hash), f"{self.name} receipt {tx_hash[:10]}..."
        )
        if receipt is not None:
            state = ReconcileState.CONFIRMED if receipt.success else ReconcileState.REVERTED
            return ReconcileResult(state=state, receipt=receipt)

        known = await self.retry.run(
            lambda: self.client.get_transaction(tx_hash), f"{self.name} lookup {tx_hash[:10]}..."
        )
        if known is not None:
            return ReconcileResult(state=ReconcileState.PENDING)

        if raw_tx is None:
            # Signed bytes were never persisted, so nothing could have been sent
            return ReconcileResult(state=ReconcileState.DROPPED)

        logger.info(f"{tx_hash[:10]}... unknown to {self.name}; re-broadcasting the signed bytes")
        try:
            await self.client.send_raw_transaction(raw_tx, tx_hash)
        except NonceConflict:
            # The nonce is used; either by this transaction (mined since the
            # receipt lookup) or by a different one
            receipt = await self.client.get_receipt(tx_hash)
            if receipt is not None:
                state = ReconcileState.CONFIRMED if receipt.success else ReconcileState.REVERTED
                return ReconcileResult(state=state, receipt=receipt)
            self.lane.invalidate()
            return ReconcileResult(state=ReconcileState.DROPPED)
        return ReconcileResult(state=ReconcileState.PENDING)

    def get_status(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "signer": self.signer.address,
            "bridge_address": self.contract.address,
            "max_gas_price": self.max_gas_price,
            "lane_busy": self.lane.locked,
        }
