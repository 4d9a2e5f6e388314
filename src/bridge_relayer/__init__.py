"""
Bridge Relayer package.

Relays TokensLocked events from a source chain to unlockTokens calls on a
destination chain, exactly once, across crashes and restarts.
"""

from .config import RelayerConfig
from .event_processor import EventProcessor
from .ledger import Ledger
from .models import EventId, EventStatus, LockEvent
from .relayer import BridgeRelayer

__all__ = ["RelayerConfig", "BridgeRelayer", "EventProcessor", "Ledger", "EventId", "EventStatus", "LockEvent"]
__version__ = "0.1.0"
