"""Shared fixtures and in-memory chain fakes for the bridge relayer tests."""

import asyncio

import pytest
from eth_abi import encode
from hexbytes import HexBytes

from bridge_relayer.checkpoint import CheckpointStore
from bridge_relayer.errors import NonceConflict, TransientRpcError
from bridge_relayer.event_processor import EventProcessor
from bridge_relayer.ledger import Ledger
from bridge_relayer.models import EventId, LockEvent, Receipt
from bridge_relayer.submitter import TransactionSubmitter
from bridge_relayer.utils.chain_client import ExecutionReverted
from bridge_relayer.utils.contract_utility import BridgeContract
from bridge_relayer.utils.nonce_manager import NonceManager
from bridge_relayer.utils.retry import RetryPolicy
from bridge_relayer.utils.signer import AccountSigner
from bridge_relayer.utils.state_store import StateStore

# Well-known local development key; never holds real funds
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_SIGNER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

SOURCE_BRIDGE = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
DEST_BRIDGE = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
SENDER = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
RECIPIENT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

SOURCE_CHAIN_ID = 1
DEST_CHAIN_ID = 2


def block_hash(number: int) -> str:
    return "0x" + f"{number:064x}"


def lock_tx_hash(block_number: int, log_index: int) -> str:
    return "0x" + f"{block_number:032x}{log_index:032x}"


def _topic_for(address: str) -> HexBytes:
    return HexBytes(b"\x00" * 12 + bytes.fromhex(address[2:]))


def make_lock_log(
    contract: BridgeContract,
    block_number: int,
    log_index: int,
    recipient: str = RECIPIENT,
    amount: int = 10**18,
    destination: int = 0,
) -> dict:
    """A raw TokensLocked log as eth_getLogs returns it."""
    return {
        "address": contract.address,
        "topics": [HexBytes(contract.lock_topic), _topic_for(SENDER), _topic_for(recipient)],
        "data": HexBytes(encode(["uint256", "uint256"], [amount, destination])),
        "blockNumber": block_number,
        "blockHash": HexBytes(block_hash(block_number)),
        "transactionHash": HexBytes(lock_tx_hash(block_number, log_index)),
        "transactionIndex": 0,
        "logIndex": log_index,
        "removed": False,
    }


def make_event(
    block_number: int,
    log_index: int,
    chain_id: int = SOURCE_CHAIN_ID,
    recipient: str = RECIPIENT,
    amount: int = 10**18,
    destination: int | None = None,
) -> LockEvent:
    return LockEvent(
        event_id=EventId(chain_id, lock_tx_hash(block_number, log_index), log_index),
        block_number=block_number,
        block_hash=block_hash(block_number),
        sender=SENDER,
        recipient=recipient,
        amount=amount,
        destination_chain_id=destination,
    )


class FakeChain:
    """
    In-memory stand-in for ChainClient.

    Broadcast transactions are mined immediately unless `auto_mine` is off.
    `fail_next[method] = n` makes the next n calls of that method raise
    TransientRpcError.
    """

    def __init__(self, chain_id: int, name: str, height: int = 100):
        self.chain_id = chain_id
        self.name = name
        self.rpc_url = f"http://{name}.test"
        self.height = height

        self.logs: list[dict] = []
        self.log_requests: list[tuple[int, int]] = []
        self.hash_overrides: dict[int, str] = {}

        self.gas_estimate = 50_000
        self.revert_reason: str | None = None
        self.gas_price = 10 * 10**9
        self.pending_count = 0

        self.broadcasts: list[str] = []
        self.mempool: dict[str, bytes] = {}
        self.receipts: dict[str, Receipt] = {}
        self.conflicting: set[str] = set()
        self.auto_mine = True
        self.mine_success = True

        self.fail_next: dict[str, int] = {}

    def _maybe_fail(self, method: str) -> None:
        if self.fail_next.get(method, 0) > 0:
            self.fail_next[method] -= 1
            raise TransientRpcError(f"{self.name}: {method} unavailable")

    def mine(self, tx_hash: str, success: bool | None = None) -> None:
        self.mempool.pop(tx_hash, None)
        self.receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            block_number=self.height,
            success=self.mine_success if success is None else success,
            gas_used=42_000,
        )

    def mine_all(self) -> None:
        for tx_hash in list(self.mempool):
            self.mine(tx_hash)

    def forget(self, tx_hash: str) -> None:
        """Node drops the transaction from its mempool."""
        self.mempool.pop(tx_hash, None)

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_block_number(self) -> int:
        self._maybe_fail("get_block_number")
        return self.height

    async def get_block_hash(self, block_number: int) -> str:
        self._maybe_fail("get_block_hash")
        return self.hash_overrides.get(block_number, block_hash(block_number))

    async def get_logs(self, from_block: int, to_block: int, address: str, topics: list[str]) -> list[dict]:
        self._maybe_fail("get_logs")
        self.log_requests.append((from_block, to_block))
        return [log for log in self.logs if from_block <= log["blockNumber"] <= to_block]

    async def estimate_gas(self, tx: dict) -> int:
        # Yield like a real network call would
        await asyncio.sleep(0)
        self._maybe_fail("estimate_gas")
        if self.revert_reason is not None:
            raise ExecutionReverted(self.revert_reason)
        return self.gas_estimate

    async def get_gas_price(self) -> int:
        self._maybe_fail("get_gas_price")
        return self.gas_price

    async def get_transaction_count(self, address: str) -> int:
        return self.pending_count

    async def send_raw_transaction(self, raw_tx: bytes, tx_hash: str) -> str:
        self._maybe_fail("send_raw_transaction")
        if tx_hash in self.conflicting:
            raise NonceConflict(f"{self.name}: nonce too low")
        self.broadcasts.append(tx_hash)
        if tx_hash not in self.mempool and tx_hash not in self.receipts:
            self.pending_count += 1
        self.mempool[tx_hash] = raw_tx
        if self.auto_mine:
            self.mine(tx_hash)
        return tx_hash

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        self._maybe_fail("get_receipt")
        return self.receipts.get(tx_hash)

    async def get_transaction(self, tx_hash: str) -> dict | None:
        if tx_hash in self.mempool or tx_hash in self.receipts:
            return {"hash": tx_hash}
        return None


@pytest.fixture
def store():
    state = StateStore(":memory:")
    yield state
    state.close()


@pytest.fixture
def ledger(store):
    return Ledger(store)


@pytest.fixture
def checkpoints(store):
    return CheckpointStore(store)


@pytest.fixture
def source_chain():
    return FakeChain(SOURCE_CHAIN_ID, "source", height=20)


@pytest.fixture
def dest_chain():
    return FakeChain(DEST_CHAIN_ID, "dest", height=500)


@pytest.fixture
def source_contract():
    return BridgeContract(SOURCE_BRIDGE)


@pytest.fixture
def dest_contract():
    return BridgeContract(DEST_BRIDGE)


@pytest.fixture
def signer():
    return AccountSigner.from_key(TEST_PRIVATE_KEY)


@pytest.fixture
def fast_retry():
    return RetryPolicy(base_delay=0, max_delay=0, jitter=0, max_attempts=3)


@pytest.fixture
def make_submitter(dest_chain, dest_contract, signer, fast_retry):
    """Build a submitter for the destination chain; a fresh NonceManager simulates a restart."""
    def factory(nonce_manager: NonceManager | None = None, **kwargs) -> TransactionSubmitter:
        options = {
            "retry": fast_retry,
            "receipt_timeout": 0,
            "receipt_poll_interval": 0.01,
            "name": "dest",
        }
        options.update(kwargs)
        return TransactionSubmitter(
            chain_id=DEST_CHAIN_ID,
            client=dest_chain,
            contract=dest_contract,
            signer=signer,
            nonce_manager=nonce_manager or NonceManager(),
            **options,
        )
    return factory


@pytest.fixture
def submitter(make_submitter):
    return make_submitter()


@pytest.fixture
def processor(ledger):
    return EventProcessor(ledger, owner="relayer-a", max_attempts=3)
