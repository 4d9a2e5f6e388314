#!/usr/bin/env python3
"""Tests for BridgeRelayer supervision and shutdown."""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from bridge_relayer.config import ChainConfig, MonitoringConfig, RelayerConfig, RetryConfig, RouteConfig
from bridge_relayer.models import EventStatus
from bridge_relayer.relayer import BridgeRelayer
from bridge_relayer.utils.signer import AccountSigner
from bridge_relayer.utils.state_store import StateStore

from conftest import (
    DEST_BRIDGE,
    DEST_CHAIN_ID,
    SOURCE_BRIDGE,
    SOURCE_CHAIN_ID,
    TEST_PRIVATE_KEY,
    TEST_SIGNER_ADDRESS,
    make_event,
    make_lock_log,
)


def make_config(routes=None, **kwargs) -> RelayerConfig:
    chains = (
        ChainConfig("source", "http://source.test", SOURCE_BRIDGE, confirmation_depth=2, chain_id=SOURCE_CHAIN_ID),
        ChainConfig("dest", "http://dest.test", DEST_BRIDGE, confirmation_depth=2, chain_id=DEST_CHAIN_ID),
    )
    options = {
        "monitoring": MonitoringConfig(polling_interval=1, lookback_blocks=1000, drain_timeout=1),
        "retry": RetryConfig(
            base_delay=0, max_delay=0, jitter=0, max_attempts=3, receipt_timeout=0, receipt_poll_interval=0.01
        ),
        "state_db_path": ":memory:",
        "relayer_id": "test-relayer",
        "local_mode": True,
        "private_key": TEST_PRIVATE_KEY,
    }
    options.update(kwargs)
    return RelayerConfig(
        chains=chains,
        routes=routes or (RouteConfig("source", "dest"),),
        **options,
    )


@pytest.fixture
def make_relayer(source_chain, dest_chain, signer):
    def factory(**kwargs) -> BridgeRelayer:
        return BridgeRelayer(
            make_config(**kwargs),
            signer,
            clients={"source": source_chain, "dest": dest_chain},
            store=StateStore(":memory:"),
        )
    return factory


class TestBridgeRelayer:
    """Tests for BridgeRelayer."""

    def test_builds_one_pipeline_per_route(self, make_relayer):
        relayer = make_relayer(routes=(RouteConfig("source", "dest"), RouteConfig("dest", "source")))

        assert set(relayer.pipelines) == {"source", "dest"}
        assert list(relayer.pipelines["source"].submitters) == [DEST_CHAIN_ID]
        assert list(relayer.pipelines["dest"].submitters) == [SOURCE_CHAIN_ID]

    def test_unresolved_chain_id_is_rejected(self, source_chain, dest_chain, signer):
        config = make_config()
        config = RelayerConfig(
            chains=(
                ChainConfig("source", "http://source.test", SOURCE_BRIDGE),
                config.chain("dest"),
            ),
            routes=config.routes,
            local_mode=True,
            private_key=TEST_PRIVATE_KEY,
        )

        with pytest.raises(ValueError, match="not resolved"):
            BridgeRelayer(
                config, signer, clients={"source": source_chain, "dest": dest_chain}, store=StateStore(":memory:")
            )

    @pytest.mark.asyncio
    async def test_run_once_relays_events(self, make_relayer, source_chain, source_contract, dest_chain):
        source_chain.logs = [make_lock_log(source_contract, 5, 0), make_lock_log(source_contract, 6, 2)]
        relayer = make_relayer()

        await relayer.run(once=True)

        status = relayer.get_status()
        assert status["ledger"]["confirmed"] == 2
        assert status["chains"]["source"]["checkpoint"] == 18
        assert status["chains"]["source"]["state"] == "stopped"
        assert len(dest_chain.broadcasts) == 2
        assert not relayer.running

    @pytest.mark.asyncio
    async def test_decode_error_pauses_only_that_chain(
        self, make_relayer, source_chain, source_contract, dest_chain, dest_contract
    ):
        """Test that an undecodable log pauses its chain while the other keeps relaying."""
        bad_log = make_lock_log(source_contract, 5, 0)
        bad_log["data"] = b""
        source_chain.logs = [bad_log]
        dest_chain.height = 20
        dest_chain.logs = [make_lock_log(dest_contract, 7, 0)]
        relayer = make_relayer(routes=(RouteConfig("source", "dest"), RouteConfig("dest", "source")))

        await relayer.run(once=True)

        status = relayer.get_status()
        assert status["chains"]["source"]["state"] == "paused"
        assert "DecodeError" in status["chains"]["source"]["last_error"]
        assert status["chains"]["dest"]["state"] == "stopped"
        assert relayer.ledger.status_of(make_event(7, 0, chain_id=DEST_CHAIN_ID).event_id) == EventStatus.CONFIRMED
        assert len(source_chain.broadcasts) == 1
        assert dest_chain.broadcasts == []

    @pytest.mark.asyncio
    async def test_lock_log_missing_topics_pauses_chain(self, make_relayer, source_chain, source_contract, dest_chain):
        """Test that a lock log with missing indexed topics pauses instead of restarting forever."""
        bad_log = make_lock_log(source_contract, 5, 0)
        bad_log["topics"] = bad_log["topics"][:1]
        source_chain.logs = [bad_log]
        relayer = make_relayer()

        await asyncio.wait_for(relayer.run(once=True), timeout=5)

        state = relayer.get_status()["chains"]["source"]
        assert state["state"] == "paused"
        assert "DecodeError" in state["last_error"]
        assert dest_chain.broadcasts == []

    @pytest.mark.asyncio
    async def test_unexpected_error_pauses_chain(self, make_relayer, dest_chain):
        """Test that an unclassified error pauses the chain after a single attempt."""
        relayer = make_relayer()
        pipeline = relayer.pipelines["source"]

        with patch.object(pipeline, "run_once", AsyncMock(side_effect=RuntimeError("disk full"))):
            await asyncio.wait_for(relayer.run(once=True), timeout=5)
            pipeline.run_once.assert_awaited_once()

        state = relayer.get_status()["chains"]["source"]
        assert state["state"] == "paused"
        assert state["last_error"] == "RuntimeError: disk full"

    @pytest.mark.asyncio
    async def test_transient_failures_restart_pipeline(self, make_relayer, source_chain, source_contract, dest_chain):
        """Test that RPC outages are retried by the supervisor until the cycle succeeds."""
        source_chain.logs = [make_lock_log(source_contract, 5, 0)]
        source_chain.fail_next["get_block_number"] = 4
        relayer = make_relayer()

        await relayer.run(once=True)

        state = relayer.get_status()["chains"]["source"]
        assert state["state"] == "stopped"
        assert state["consecutive_failures"] == 0
        assert state["last_error"] is None
        assert len(dest_chain.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_failed_events_are_reported(self, make_relayer, source_chain, source_contract, dest_chain):
        source_chain.logs = [make_lock_log(source_contract, 5, 0)]
        dest_chain.revert_reason = "Bridge: insufficient liquidity"
        relayer = make_relayer()

        await relayer.run(once=True)

        status = relayer.get_status()
        assert status["ledger"]["failed"] == 1
        assert status["failed_events"][0]["event_id"] == make_event(5, 0).event_id.key
        assert "insufficient liquidity" in status["failed_events"][0]["error"]

    @pytest.mark.asyncio
    async def test_stop_drains_and_returns(self, make_relayer):
        """Test that stop() ends a continuously running relayer promptly."""
        relayer = make_relayer()
        runner = asyncio.create_task(relayer.run())

        await asyncio.sleep(0.1)
        assert relayer.running
        relayer.stop()
        await asyncio.wait_for(runner, timeout=5)

        assert not relayer.running
        assert relayer.get_status()["chains"]["source"]["state"] == "stopped"
        assert all(pipeline.stopping.is_set() for pipeline in relayer.pipelines.values())

    @pytest.mark.asyncio
    async def test_restart_resumes_from_ledger(self, source_chain, source_contract, dest_chain, signer, tmp_path):
        """Test that a new process on the same database confirms without re-sending."""
        db_path = tmp_path / "state.db"
        source_chain.logs = [make_lock_log(source_contract, 5, 0)]
        dest_chain.auto_mine = False
        clients = {"source": source_chain, "dest": dest_chain}

        first = BridgeRelayer(make_config(), signer, clients=clients, store=StateStore(db_path))
        await first.run(once=True)
        assert first.get_status()["ledger"]["submitted"] == 1

        dest_chain.mine_all()
        second = BridgeRelayer(make_config(), signer, clients=clients, store=StateStore(db_path))
        await second.run(once=True)

        assert second.get_status()["ledger"]["confirmed"] == 1
        assert second.get_status()["chains"]["source"]["checkpoint"] == 18
        assert len(dest_chain.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_restart_without_relayer_id_resumes_by_signing_address(
        self, source_chain, source_contract, dest_chain, signer, tmp_path
    ):
        """Test that a replacement process with no RELAYER_ID still reconciles the earlier unlock."""
        db_path = tmp_path / "state.db"
        source_chain.logs = [make_lock_log(source_contract, 5, 0)]
        dest_chain.auto_mine = False
        clients = {"source": source_chain, "dest": dest_chain}

        first = BridgeRelayer(make_config(relayer_id=None), signer, clients=clients, store=StateStore(db_path))
        await first.run(once=True)
        record = first.ledger.get(make_event(5, 0).event_id)
        assert record.status == EventStatus.SUBMITTED
        assert record.owner == TEST_SIGNER_ADDRESS

        dest_chain.mine_all()
        replacement = BridgeRelayer(
            make_config(relayer_id=None), AccountSigner.from_key(TEST_PRIVATE_KEY),
            clients=clients, store=StateStore(db_path),
        )
        await replacement.run(once=True)

        assert replacement.ledger.status_of(record.event_id) == EventStatus.CONFIRMED
        assert replacement.get_status()["chains"]["source"]["checkpoint"] == 18
        assert len(dest_chain.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_status_includes_watchers_and_submitters(self, make_relayer):
        relayer = make_relayer()

        await relayer.run(once=True)

        status = relayer.get_status()
        pipeline = status["chains"]["source"]["pipeline"]
        assert pipeline["watcher"]["confirmation_depth"] == 2
        assert pipeline["safe_height"] == 18
        assert status["submitters"]["dest"]["chain_id"] == DEST_CHAIN_ID
        assert status["submitters"]["dest"]["signer"] == TEST_SIGNER_ADDRESS
        assert status["submitters"]["dest"]["lane_busy"] is False


class TestCreate:
    """Tests for building a relayer from configuration."""

    @pytest.mark.asyncio
    async def test_create_resolves_chain_ids(self, source_chain, dest_chain):
        base = make_config()
        config = RelayerConfig(
            chains=tuple(
                ChainConfig(chain.name, chain.rpc_url, chain.bridge_address, confirmation_depth=2)
                for chain in base.chains
            ),
            routes=base.routes,
            state_db_path=":memory:",
            local_mode=True,
            private_key=TEST_PRIVATE_KEY,
        )

        relayer = await BridgeRelayer.create(config, clients={"source": source_chain, "dest": dest_chain})

        assert relayer.config.chain("source").chain_id == SOURCE_CHAIN_ID
        assert relayer.config.chain("dest").chain_id == DEST_CHAIN_ID
        assert relayer.signer.address == TEST_SIGNER_ADDRESS

    @pytest.mark.asyncio
    async def test_create_rejects_wrong_chain_id(self, source_chain, dest_chain):
        dest_chain.chain_id = 5

        with pytest.raises(ValueError, match="chain id"):
            await BridgeRelayer.create(make_config(), clients={"source": source_chain, "dest": dest_chain})

    @pytest.mark.asyncio
    async def test_create_uses_rofl_key_outside_local_mode(self, source_chain, dest_chain):
        config = make_config(local_mode=False, private_key=None)
        rofl_signer = AccountSigner.from_key(TEST_PRIVATE_KEY)

        with patch.object(AccountSigner, "from_rofl", AsyncMock(return_value=rofl_signer)) as from_rofl:
            relayer = await BridgeRelayer.create(config, clients={"source": source_chain, "dest": dest_chain})

        from_rofl.assert_awaited_once()
        assert from_rofl.await_args.args[0] == "bridge-relayer"
        assert relayer.signer is rofl_signer
