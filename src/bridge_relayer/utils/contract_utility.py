import json
from pathlib import Path
from typing import Any

from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3.exceptions import Web3Exception

from ..errors import DecodeError
from ..models import EventId, LockEvent

LOCK_EVENT_SIGNATURE = "TokensLocked(address,address,uint256,uint256)"


def get_contract_abi(contract_name: str) -> list:
    """Fetches ABI of the given contract from the contracts folder"""
    contract_path = (Path(__file__).parent.parent / "contracts" / f"{contract_name}.json").resolve()

    with contract_path.open() as file:
        contract_data = json.load(file)

    return contract_data["abi"]


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return str(value)


class BridgeContract:
    """
    Contract interface for the bridge: decodes TokensLocked logs and encodes
    unlockTokens calls.

    Pure ABI work; no network connection is needed.
    """

    def __init__(self, address: str, abi: list | None = None):
        """
        Initialize the contract interface.

        Args:
            address: Bridge contract address on this chain
            abi: Contract ABI (defaults to the bundled Bridge ABI)
        """
        self.address = Web3.to_checksum_address(address)
        self.abi = abi if abi is not None else get_contract_abi("Bridge")
        self.contract = Web3().eth.contract(address=self.address, abi=self.abi)
        self.lock_topic = Web3.to_hex(Web3.keccak(text=LOCK_EVENT_SIGNATURE))

    def decode_lock_event(self, raw_log: Any, chain_id: int) -> LockEvent:
        """
        Decode a raw log into a LockEvent.

        Raises:
            DecodeError: If the log is not a well-formed TokensLocked event
        """
        try:
            event = self.contract.events.TokensLocked().process_log(raw_log)
            args = event["args"]
            destination = args.get("destinationChainId")
            return LockEvent(
                event_id=EventId(
                    source_chain_id=chain_id,
                    source_tx_hash=_to_hex(event["transactionHash"]).lower(),
                    log_index=int(event["logIndex"]),
                ),
                block_number=int(event["blockNumber"]),
                block_hash=_to_hex(event["blockHash"]).lower(),
                sender=Web3.to_checksum_address(args["sender"]),
                recipient=Web3.to_checksum_address(args["recipient"]),
                amount=int(args["amount"]),
                destination_chain_id=int(destination) if destination else None,
            )
        except (Web3Exception, DecodingError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Cannot decode TokensLocked log on chain {chain_id}: {e}", raw_log) from e

    def encode_unlock_call(self, recipient: str, amount: int) -> str:
        """ABI-encoded calldata for unlockTokens(recipient, amount)."""
        return self.contract.encode_abi(
            "unlockTokens", args=[Web3.to_checksum_address(recipient), amount]
        )
