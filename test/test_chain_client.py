#!/usr/bin/env python3
"""Tests for ChainClient error translation."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from hexbytes import HexBytes
from web3.exceptions import BlockNotFound, ContractLogicError, TransactionNotFound

from bridge_relayer.errors import NonceConflict, TransientRpcError
from bridge_relayer.utils.chain_client import ChainClient, ExecutionReverted

TX_HASH = "0x" + "ab" * 32


@pytest.fixture
def client():
    chain_client = ChainClient("https://rpc.test", name="test")
    chain_client.w3 = MagicMock()
    return chain_client


class TestChainClient:
    """Tests for ChainClient."""

    @pytest.mark.asyncio
    async def test_already_known_counts_as_sent(self, client):
        client.w3.eth.send_raw_transaction = AsyncMock(side_effect=ValueError({"message": "already known"}))

        assert await client.send_raw_transaction(b"\x01", TX_HASH) == TX_HASH

    @pytest.mark.asyncio
    async def test_nonce_too_low_is_a_conflict(self, client):
        client.w3.eth.send_raw_transaction = AsyncMock(side_effect=ValueError({"message": "nonce too low"}))

        with pytest.raises(NonceConflict):
            await client.send_raw_transaction(b"\x01", TX_HASH)

    @pytest.mark.asyncio
    async def test_other_send_failures_are_transient(self, client):
        client.w3.eth.send_raw_transaction = AsyncMock(side_effect=OSError("connection reset"))

        with pytest.raises(TransientRpcError):
            await client.send_raw_transaction(b"\x01", TX_HASH)

    @pytest.mark.asyncio
    async def test_send_returns_hex_hash(self, client):
        client.w3.eth.send_raw_transaction = AsyncMock(return_value=HexBytes(TX_HASH))

        assert await client.send_raw_transaction(b"\x01", TX_HASH) == TX_HASH

    @pytest.mark.asyncio
    async def test_estimate_revert(self, client):
        client.w3.eth.estimate_gas = AsyncMock(side_effect=ContractLogicError("execution reverted: paused"))

        with pytest.raises(ExecutionReverted, match="paused"):
            await client.estimate_gas({"to": "0x" + "00" * 20})

    @pytest.mark.asyncio
    async def test_receipt_not_found_is_none(self, client):
        client.w3.eth.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("missing"))

        assert await client.get_receipt(TX_HASH) is None

    @pytest.mark.asyncio
    async def test_receipt_is_translated(self, client):
        client.w3.eth.get_transaction_receipt = AsyncMock(return_value={
            "transactionHash": HexBytes(TX_HASH),
            "blockNumber": 77,
            "status": 1,
            "gasUsed": 41_000,
        })

        receipt = await client.get_receipt(TX_HASH)

        assert receipt.tx_hash == TX_HASH
        assert receipt.block_number == 77
        assert receipt.success
        assert receipt.gas_used == 41_000

    @pytest.mark.asyncio
    async def test_failed_receipt(self, client):
        client.w3.eth.get_transaction_receipt = AsyncMock(return_value={
            "transactionHash": HexBytes(TX_HASH),
            "blockNumber": 77,
            "status": 0,
        })

        assert not (await client.get_receipt(TX_HASH)).success

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_none(self, client):
        client.w3.eth.get_transaction = AsyncMock(side_effect=TransactionNotFound("missing"))

        assert await client.get_transaction(TX_HASH) is None

    @pytest.mark.asyncio
    async def test_missing_block_is_transient(self, client):
        client.w3.eth.get_block = AsyncMock(side_effect=BlockNotFound("no block"))

        with pytest.raises(TransientRpcError):
            await client.get_block_hash(5)

    @pytest.mark.asyncio
    async def test_block_hash(self, client):
        client.w3.eth.get_block = AsyncMock(return_value={"hash": HexBytes("0x" + "12" * 32)})

        assert await client.get_block_hash(5) == "0x" + "12" * 32

    @pytest.mark.asyncio
    async def test_get_logs_failure_is_transient(self, client):
        client.w3.eth.get_logs = AsyncMock(side_effect=TimeoutError())

        with pytest.raises(TransientRpcError):
            await client.get_logs(1, 10, "0x" + "00" * 20, [])
