"""
Per-(chain, signing identity) nonce lanes.

A lane is held from the moment a nonce is handed out until the broadcast
outcome is known, so two unlocks on the same lane can never share a nonce.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class NonceLane:
    """Serialized nonce counter for one signing identity on one chain."""

    def __init__(self, chain_id: int, address: str, fetch_pending_count: Callable[[str], Awaitable[int]]):
        self.chain_id = chain_id
        self.address = address
        self._fetch = fetch_pending_count
        self._lock = asyncio.Lock()
        self._next: int | None = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.chain_id, self.address.lower())

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def reserve(self) -> AsyncIterator["NonceTicket"]:
        """
        Hold the lane and hand out the next nonce.

        The nonce is consumed only if the caller marks the ticket as used.
        Any failure forces a resync from the chain's pending count, since the
        node may or may not have accepted the transaction.
        """
        async with self._lock:
            if self._next is None:
                self._next = await self._fetch(self.address)
                logger.debug(f"Nonce lane {self.chain_id}/{self.address[:10]} synced at {self._next}")
            ticket = NonceTicket(self._next)
            try:
                yield ticket
            except BaseException:
                self._next = None
                raise
            if ticket.used:
                self._next = ticket.nonce + 1

    def invalidate(self) -> None:
        self._next = None


class NonceTicket:
    __slots__ = ("nonce", "used")

    def __init__(self, nonce: int):
        self.nonce = nonce
        self.used = False

    def mark_used(self) -> None:
        self.used = True


class NonceManager:
    """Registry of nonce lanes, one per (chain id, address)."""

    def __init__(self) -> None:
        self._lanes: dict[tuple[int, str], NonceLane] = {}

    def lane(self, chain_id: int, address: str, fetch_pending_count: Callable[[str], Awaitable[int]]) -> NonceLane:
        key = (chain_id, address.lower())
        if key not in self._lanes:
            self._lanes[key] = NonceLane(chain_id, address, fetch_pending_count)
        return self._lanes[key]
