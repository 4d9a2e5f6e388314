"""
Polling-based watcher for TokensLocked events on one source chain.

The watcher keeps no cursor of its own: the caller passes the block to start
after, so a poll that fails can simply be repeated with the same argument and
will reproduce the same events from the chain.
"""

import logging

from .errors import ReorgInvalidation
from .models import LockEvent, PollResult
from .utils.chain_client import ChainClient
from .utils.contract_utility import BridgeContract


class ChainWatcher:
    """
    Finds confirmed lock events on a source chain.

    Events are only returned once `confirmation_depth` blocks have been built
    on top of them.
    """

    def __init__(
        self,
        chain_id: int,
        client: ChainClient,
        contract: BridgeContract,
        confirmation_depth: int,
        max_block_range: int = 2000,
        name: str = "",
    ):
        """
        Initialize the chain watcher.

        Args:
            chain_id: Source chain id, part of every event id
            client: RPC client for the source chain
            contract: Bridge contract interface on the source chain
            confirmation_depth: Blocks required on top of an event's block
            max_block_range: Largest block span requested per eth_getLogs call
            name: Chain name used in log messages
        """
        if confirmation_depth < 0:
            raise ValueError(f"Confirmation depth must be non-negative, got {confirmation_depth}")
        if max_block_range <= 0:
            raise ValueError(f"Max block range must be positive, got {max_block_range}")

        self.chain_id = chain_id
        self.client = client
        self.contract = contract
        self.confirmation_depth = confirmation_depth
        self.max_block_range = max_block_range
        self.name = name or str(chain_id)

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}.{self.name}")

    async def safe_height(self) -> int:
        """Highest block considered final enough to act on."""
        current_block = await self.client.get_block_number()
        return current_block - self.confirmation_depth

    async def poll(self, from_block: int) -> PollResult:
        """
        Fetch lock events in (from_block, safe height].

        Args:
            from_block: Last block already processed

        Returns:
            PollResult with events sorted by (block number, log index)

        Raises:
            TransientRpcError: On transport or node failure
            DecodeError: If a log is not a TokensLocked event
        """
        safe_height = await self.safe_height()
        if safe_height <= from_block:
            return PollResult(events=(), safe_height=from_block)

        events: list[LockEvent] = []
        start = from_block + 1
        while start <= safe_height:
            end = min(start + self.max_block_range - 1, safe_height)
            raw_logs = await self.client.get_logs(
                start, end, self.contract.address, [self.contract.lock_topic]
            )
            for raw_log in raw_logs:
                if raw_log.get("removed"):
                    raise ReorgInvalidation(
                        self.chain_id,
                        int(raw_log.get("blockNumber", start)),
                        str(raw_log.get("blockHash", "")),
                        "removed",
                    )
                events.append(self.contract.decode_lock_event(raw_log, self.chain_id))
            start = end + 1

        events.sort(key=lambda event: event.position)
        safe_block_hash = await self.client.get_block_hash(safe_height)

        if events:
            self.logger.info(
                f"Found {len(events)} TokensLocked events in blocks {from_block + 1}-{safe_height}"
            )
        return PollResult(events=tuple(events), safe_height=safe_height, safe_block_hash=safe_block_hash)

    async def block_hash(self, block_number: int) -> str:
        return await self.client.get_block_hash(block_number)

    async def verify_anchor(self, block_number: int, block_hash: str | None) -> None:
        """
        Check that a checkpointed block is still canonical.

        Raises:
            ReorgInvalidation: If the chain's hash at `block_number` differs
        """
        if not block_hash:
            return
        actual = await self.client.get_block_hash(block_number)
        if actual.lower() != block_hash.lower():
            raise ReorgInvalidation(self.chain_id, block_number, block_hash, actual)

    def get_status(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "bridge_address": self.contract.address,
            "confirmation_depth": self.confirmation_depth,
            "rpc_url": self.client.rpc_url,
        }
