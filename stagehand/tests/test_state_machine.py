"""Tests for the upgrade state machine (stagehand/deploy/state_machine.py).

Covers:
- begin: first phase, at-most-one active deploy, racing operators
- advance/drive: phase progression, contract updates, environment bookkeeping
- resumption: pending multisig requests are re-checked, never re-proposed
- crash recovery: a request persisted before the manifest is adopted, not re-signed
- broadcast confirmation through transaction receipts
- timelocks between queue and execute
- failures, aborts and archived history
"""

from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import httpx
import pytest

from stagehand.builder.forge import ActionBuilder
from stagehand.core.errors import (
    ConcurrentModification,
    ConsistencyViolation,
    DeployInProgress,
    NoActiveDeploy,
    SubprocessFailure,
    UnknownEnvironment,
    ValidationError,
)
from stagehand.core.types import DeployPhase, UpgradeDefinition, UpgradePhases
from stagehand.deploy.state_machine import UpgradeStateMachine
from stagehand.metadata import paths
from stagehand.metadata.registry import EnvironmentRegistry, UpgradeRegistry
from stagehand.metadata.store import InMemoryMetadataStore
from stagehand.signing.base import StrategyContext
from stagehand.signing.multisig import MultisigProposalStrategy
from stagehand.signing.safe_api import SafeTransactionServiceClient

from conftest import NEW_IMPL, PROXY_ADMIN, SAFE_ADDRESS, TEST_PRIVATE_KEY

CREATE_SCRIPT = "upgrades/v2/1-create.s.sol"
EXECUTE_SCRIPT = "upgrades/v2/2-execute.s.sol"
TOKEN_PROXY = "0x4444444444444444444444444444444444444444"


@pytest.fixture
def machine(store, fake_forge, settings, clock, testnet, upgrade_v2) -> UpgradeStateMachine:
    return UpgradeStateMachine(
        store,
        ActionBuilder(runner=fake_forge),
        settings=settings,
        operator="alice",
        strategy_args={"private_key": TEST_PRIVATE_KEY},
        clock=clock,
    )


def _script_outputs(fake_forge) -> None:
    fake_forge.reply(
        CREATE_SCRIPT,
        {
            "transactions": [{"to": PROXY_ADMIN, "data": "0x99a88ec4", "value": "0x0"}],
            "deployedContracts": [{"contract": "TokenImpl", "address": NEW_IMPL}],
        },
    )
    fake_forge.reply(
        EXECUTE_SCRIPT,
        {
            "transactions": [{"to": PROXY_ADMIN, "data": "0xabcdef01"}],
            "stateUpdates": [{"name": "Token", "value": TOKEN_PROXY}],
        },
    )


class RacingStore(InMemoryMetadataStore):
    """Runs ``on_read`` once, right after the first read of ``watch``."""

    def __init__(self, watch: str) -> None:
        super().__init__()
        self.watch = watch
        self.on_read = None

    def get_json_file(self, path):
        doc = super().get_json_file(path)
        if path == self.watch and self.on_read is not None:
            hook, self.on_read = self.on_read, None
            hook()
        return doc


class CrashingStore(InMemoryMetadataStore):
    """Fails the first manifest write that follows a signature request write."""

    def __init__(self, env_id: str = "testnet", upgrade_id: str = "upgrade-v2") -> None:
        super().__init__()
        self.manifest = paths.deploys_manifest(env_id)
        self.request = paths.signature_request(env_id, upgrade_id)
        self.armed = False
        self.request_written = False

    def _swap(self, path, data, expected_version):
        if self.armed and path == self.manifest and self.request_written:
            self.armed = False
            raise RuntimeError("process killed")
        super()._swap(path, data, expected_version)
        if path == self.request:
            self.request_written = True


# ── begin ────────────────────────────────────────────────────────────────────


class TestBegin:
    def test_starts_in_first_defined_phase(self, machine):
        record = machine.begin("testnet", "upgrade-v2", commit="abc123")
        assert record.phase == DeployPhase.CREATED
        assert record.operator == "alice"
        assert machine.status("testnet").upgrade_id == "upgrade-v2"

    def test_skips_undefined_phases(self, machine, upgrades):
        upgrades.register(UpgradeDefinition(name="exec-only", phases=UpgradePhases(execute="x.s.sol")))
        assert machine.begin("testnet", "exec-only").phase == DeployPhase.EXECUTING

    def test_second_begin_is_rejected(self, machine):
        machine.begin("testnet", "upgrade-v2")
        with pytest.raises(DeployInProgress):
            machine.begin("testnet", "upgrade-v2")

    def test_racing_operator_gets_concurrent_modification(self, fake_forge, settings):
        store = RacingStore(paths.deploys_manifest("testnet"))
        EnvironmentRegistry(store).create_environment("testnet")
        UpgradeRegistry(store).register(
            UpgradeDefinition(name="upgrade-v2", phases=UpgradePhases(create="c.s.sol"))
        )
        alice = UpgradeStateMachine(store, ActionBuilder(runner=fake_forge), settings=settings, operator="alice")
        bob = UpgradeStateMachine(store, ActionBuilder(runner=fake_forge), settings=settings, operator="bob")

        store.on_read = lambda: bob.begin("testnet", "upgrade-v2")
        with pytest.raises(ConcurrentModification):
            alice.begin("testnet", "upgrade-v2")
        assert alice.status("testnet").operator == "bob"

    def test_concurrent_begins_exactly_one_wins(self, machine, store, fake_forge, settings):
        outcomes: list[str] = []
        barrier = threading.Barrier(6)

        def attempt() -> None:
            m = UpgradeStateMachine(store, ActionBuilder(runner=fake_forge), settings=settings)
            barrier.wait()
            try:
                m.begin("testnet", "upgrade-v2")
                outcomes.append("ok")
            except (DeployInProgress, ConcurrentModification):
                outcomes.append("lost")

        threads = [threading.Thread(target=attempt) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("lost") == 5

    def test_version_range_enforced(self, machine, upgrades):
        upgrades.register(
            UpgradeDefinition(name="v3", from_semver=">=2.0", to="3.0.0", phases=UpgradePhases(create="c.s.sol"))
        )
        with pytest.raises(ValidationError, match="requires version"):
            machine.begin("testnet", "v3")

    def test_unknown_environment(self, machine):
        with pytest.raises(UnknownEnvironment):
            machine.begin("nowhere", "upgrade-v2")

    def test_rpc_chain_must_match_environment(self, machine):
        machine.chain = MagicMock()
        machine.chain.chain_id.return_value = 1
        with pytest.raises(ValidationError, match="serves chain 1"):
            machine.begin("testnet", "upgrade-v2")
        assert machine.status("testnet") is None


# ── advance ──────────────────────────────────────────────────────────────────


class TestAdvance:
    def test_no_active_deploy(self, machine):
        with pytest.raises(NoActiveDeploy):
            machine.advance("testnet")

    def test_end_to_end_testnet_upgrade(self, machine, fake_forge, environments):
        _script_outputs(fake_forge)
        machine.begin("testnet", "upgrade-v2", commit="abc123")

        first = machine.advance("testnet")
        assert first.record.phase == DeployPhase.EXECUTING
        assert first.record.contract_updates == {"TokenImpl": NEW_IMPL}
        assert not first.waiting

        second = machine.advance("testnet")
        assert second.done
        assert second.record.phase == DeployPhase.COMPLETE

        env = environments.get("testnet")
        assert env.contract_addresses == {"ProxyAdmin": PROXY_ADMIN, "TokenImpl": NEW_IMPL, "Token": TOKEN_PROXY}
        assert env.latest_deployed_commit == "abc123"
        assert env.deployed_version == "2.0.0"
        assert machine.status("testnet") is None
        assert [r.phase for r in machine.history("testnet")] == [DeployPhase.COMPLETE]

    def test_build_receives_strategy_args_and_context(self, machine, fake_forge):
        _script_outputs(fake_forge)
        machine.begin("testnet", "upgrade-v2")
        machine.advance("testnet")

        call = fake_forge.calls[0]
        assert call["cmd"][:3] == ["forge", "script", CREATE_SCRIPT]
        assert "--private-key" in call["cmd"]
        assert call["env"]["STAGEHAND_ENVIRONMENT"] == "testnet"
        assert call["env"]["STAGEHAND_DEPLOY"] == "upgrade-v2"
        assert call["env"]["STAGEHAND_CHAIN_ID"] == "11155111"
        assert call["env"]["STAGEHAND_ENV_ProxyAdmin"] == PROXY_ADMIN

    def test_build_output_is_kept(self, machine, fake_forge, store):
        _script_outputs(fake_forge)
        machine.begin("testnet", "upgrade-v2")
        machine.advance("testnet")
        doc = store.get_json_file(paths.build_output("testnet", "upgrade-v2", "created"))
        assert doc.contents["deployedContracts"][0]["address"] == NEW_IMPL

    def test_drive_runs_to_completion(self, machine, fake_forge):
        _script_outputs(fake_forge)
        machine.begin("testnet", "upgrade-v2")
        result = machine.drive("testnet")
        assert result.record.phase == DeployPhase.COMPLETE
        assert len(fake_forge.calls) == 2

    def test_empty_phase_completes_without_signing(self, machine, fake_forge, store):
        machine.begin("testnet", "upgrade-v2")
        result = machine.advance("testnet")
        assert result.record.phase == DeployPhase.EXECUTING
        assert not store.exists(paths.signature_request("testnet", "upgrade-v2"))

    def test_build_failure_leaves_record_untouched(self, machine, fake_forge):
        fake_forge.reply(CREATE_SCRIPT, stdout="", returncode=1, stderr="revert")
        machine.begin("testnet", "upgrade-v2")
        with pytest.raises(SubprocessFailure):
            machine.advance("testnet")
        record = machine.status("testnet")
        assert record.phase == DeployPhase.CREATED
        assert record.signature_request_ref is None

    def test_already_applied_upgrade(self, machine, fake_forge):
        machine.begin("testnet", "upgrade-v2")
        machine.drive("testnet")
        with pytest.raises(ValidationError, match="already applied"):
            machine.begin("testnet", "upgrade-v2")

    def test_missing_signature_request_is_a_consistency_violation(self, machine, fake_forge, store):
        _script_outputs(fake_forge)
        machine.begin("testnet", "upgrade-v2")
        manifest = store.get_json_file(paths.deploys_manifest("testnet"))
        manifest.contents["inProgressDeploy"]["signatureRequestRef"] = "0xdeadbeef"
        store.update_json(paths.deploys_manifest("testnet"), manifest.contents)

        with pytest.raises(ConsistencyViolation):
            machine.advance("testnet")

    def test_abort_refuses_a_finished_record(self, machine, fake_forge, store):
        _script_outputs(fake_forge)
        machine.begin("testnet", "upgrade-v2")
        machine.drive("testnet")
        archived = store.get_json_file(paths.deploy_record("testnet", "upgrade-v2")).contents
        # Left behind by a crash between archiving and clearing the manifest
        store.update_json(paths.deploys_manifest("testnet"), {"inProgressDeploy": archived})

        with pytest.raises(ConsistencyViolation, match="finished deploy"):
            machine.abort("testnet")

        assert store.get_json_file(paths.deploy_record("testnet", "upgrade-v2")).contents["phase"] == "complete"
        with pytest.raises(DeployInProgress):
            machine.begin("testnet", "upgrade-v2")


# ── multisig resumption ──────────────────────────────────────────────────────


@pytest.fixture
def multisig_machine(store, fake_forge, settings, clock, environments, upgrade_v2, service) -> UpgradeStateMachine:
    environments.create_environment("mainnet", chain_id=1, signing_strategy="multisig")

    def factory(env, record):
        client = SafeTransactionServiceClient(
            "https://safe.example", transport=httpx.MockTransport(service), max_retries=1
        )
        context = StrategyContext(
            store=store,
            environment=env,
            upgrade=record.upgrade_id,
            settings=settings,
            deploy_id=record.deploy_id,
            phase=record.phase.value,
        )
        args = {"safe_address": SAFE_ADDRESS, "private_key": TEST_PRIVATE_KEY}
        return MultisigProposalStrategy(context, args, client=client)

    return UpgradeStateMachine(
        store,
        ActionBuilder(runner=fake_forge),
        settings=settings,
        strategy_factory=factory,
        clock=clock,
    )


class TestMultisigResumption:
    def test_pending_request_waits(self, multisig_machine, fake_forge, service):
        _script_outputs(fake_forge)
        multisig_machine.begin("mainnet", "upgrade-v2")

        result = multisig_machine.advance("mainnet")

        assert result.waiting
        assert result.reason == "signatures"
        assert result.record.signature_request_ref in service.proposals
        assert result.record.proposed_transactions[0].to.lower() == PROXY_ADMIN

    def test_advance_twice_does_not_repropose(self, multisig_machine, fake_forge, service):
        _script_outputs(fake_forge)
        multisig_machine.begin("mainnet", "upgrade-v2")

        first = multisig_machine.advance("mainnet")
        second = multisig_machine.advance("mainnet")

        assert second.waiting
        assert second.record.signature_request_ref == first.record.signature_request_ref
        assert len(service.posts) == 1
        assert len(fake_forge.calls) == 1

    def test_approval_discovered_later(self, multisig_machine, fake_forge, service, environments):
        _script_outputs(fake_forge)
        multisig_machine.begin("mainnet", "upgrade-v2")
        ref = multisig_machine.advance("mainnet").record.signature_request_ref

        service.execute(ref)
        result = multisig_machine.advance("mainnet")

        assert result.record.phase == DeployPhase.EXECUTING
        assert result.record.contract_updates == {"TokenImpl": NEW_IMPL}

    def test_failed_request_fails_the_deploy(self, multisig_machine, fake_forge, service):
        _script_outputs(fake_forge)
        multisig_machine.begin("mainnet", "upgrade-v2")
        ref = multisig_machine.advance("mainnet").record.signature_request_ref

        service.execute(ref, success=False)
        result = multisig_machine.advance("mainnet")

        assert result.record.phase == DeployPhase.FAILED
        assert "reverted" in result.record.failure_reason
        assert multisig_machine.status("mainnet") is None
        assert multisig_machine.history("mainnet")[0].phase == DeployPhase.FAILED
        # A failed deploy does not block a retry
        assert multisig_machine.begin("mainnet", "upgrade-v2").phase == DeployPhase.CREATED

    def test_abort_cancels_pending_proposal(self, multisig_machine, fake_forge, service):
        _script_outputs(fake_forge)
        multisig_machine.begin("mainnet", "upgrade-v2")
        multisig_machine.advance("mainnet")

        record = multisig_machine.abort("mainnet", reason="wrong calldata")

        assert record.phase == DeployPhase.FAILED
        assert record.failure_reason == "wrong calldata"
        assert len(service.posts) == 2
        assert multisig_machine.status("mainnet") is None


# ── timelock ─────────────────────────────────────────────────────────────────


class TestTimelock:
    @pytest.fixture
    def timelocked(self, upgrades):
        return upgrades.register(
            UpgradeDefinition(
                name="timelocked",
                phases=UpgradePhases(create="c.s.sol", queue="q.s.sol", execute="e.s.sol"),
                to="2.0.0",
                timelock_seconds=3600,
            )
        )

    def test_execute_waits_for_timelock(self, machine, timelocked, clock, fake_forge):
        machine.begin("testnet", "timelocked")

        waiting = machine.drive("testnet")
        assert waiting.waiting
        assert waiting.reason == "timelock"
        assert waiting.record.phase == DeployPhase.EXECUTING
        assert waiting.record.executable_at == clock.now + timedelta(seconds=3600)
        assert [c["cmd"][2] for c in fake_forge.calls] == ["c.s.sol", "q.s.sol"]

        clock.now += timedelta(seconds=3601)
        done = machine.drive("testnet")
        assert done.record.phase == DeployPhase.COMPLETE

    def test_script_eta_overrides_timelock(self, machine, timelocked, clock, fake_forge):
        eta = int((clock.now + timedelta(hours=2)).timestamp())
        fake_forge.reply("q.s.sol", {"transactions": [], "eta": eta})
        machine.begin("testnet", "timelocked")

        result = machine.drive("testnet")
        assert result.record.executable_at == clock.now + timedelta(hours=2)

        clock.now += timedelta(hours=1, minutes=59)
        assert machine.advance("testnet").reason == "timelock"
        clock.now += timedelta(minutes=2)
        assert machine.advance("testnet").done

    def test_chain_time_is_used_when_available(self, machine, timelocked, clock):
        machine.begin("testnet", "timelocked")
        machine.drive("testnet")

        machine.chain = MagicMock()
        machine.chain.block_timestamp.return_value = clock.now + timedelta(days=1)
        assert machine.advance("testnet").done


# ── crash recovery & confirmations ───────────────────────────────────────────


class TestCrashRecovery:
    @pytest.fixture
    def store(self) -> CrashingStore:
        return CrashingStore()

    @pytest.fixture
    def chain(self) -> MagicMock:
        chain = MagicMock()
        chain.chain_id.return_value = 11155111
        chain.transaction_count.return_value = 0
        chain.transaction_receipt.return_value = None
        return chain

    @pytest.fixture
    def chained_machine(self, store, fake_forge, settings, clock, testnet, upgrade_v2, chain) -> UpgradeStateMachine:
        return UpgradeStateMachine(
            store,
            ActionBuilder(runner=fake_forge),
            settings=settings,
            strategy_args={"private_key": TEST_PRIVATE_KEY},
            chain=chain,
            clock=clock,
        )

    def test_broadcast_request_is_adopted_after_crash(self, chained_machine, store, fake_forge, chain):
        _script_outputs(fake_forge)
        chained_machine.begin("testnet", "upgrade-v2")
        store.armed = True

        with pytest.raises(RuntimeError, match="process killed"):
            chained_machine.advance("testnet")
        assert chained_machine.status("testnet").signature_request_ref is None
        assert chain.send_raw_transaction.call_count == 1

        resumed = chained_machine.advance("testnet")

        assert resumed.waiting
        assert resumed.reason == "confirmations"
        assert resumed.record.signature_request_ref is not None
        assert resumed.record.proposed_transactions[0].to.lower() == PROXY_ADMIN
        assert chain.send_raw_transaction.call_count == 1
        assert len(fake_forge.calls) == 1

        chain.transaction_receipt.return_value = {"status": 1, "blockNumber": 9}
        assert chained_machine.advance("testnet").record.phase == DeployPhase.EXECUTING

    def test_multisig_proposal_is_adopted_after_crash(self, multisig_machine, store, fake_forge, service):
        _script_outputs(fake_forge)
        store.manifest = paths.deploys_manifest("mainnet")
        store.request = paths.signature_request("mainnet", "upgrade-v2")
        multisig_machine.begin("mainnet", "upgrade-v2")
        store.armed = True

        with pytest.raises(RuntimeError):
            multisig_machine.advance("mainnet")
        resumed = multisig_machine.advance("mainnet")

        assert resumed.waiting
        assert resumed.reason == "signatures"
        assert resumed.record.signature_request_ref in service.proposals
        assert len(service.posts) == 1
        assert len(fake_forge.calls) == 1

    def test_request_of_an_earlier_attempt_is_not_adopted(self, chained_machine, fake_forge, chain):
        _script_outputs(fake_forge)
        chained_machine.begin("testnet", "upgrade-v2")
        chained_machine.advance("testnet")
        chained_machine.abort("testnet")

        chained_machine.begin("testnet", "upgrade-v2")
        result = chained_machine.advance("testnet")

        assert result.reason == "confirmations"
        assert chain.send_raw_transaction.call_count == 2
        assert len(fake_forge.calls) == 2

    def test_reverted_transaction_fails_the_deploy(self, chained_machine, fake_forge, chain, environments):
        _script_outputs(fake_forge)
        chained_machine.begin("testnet", "upgrade-v2")
        assert chained_machine.advance("testnet").reason == "confirmations"

        chain.transaction_receipt.return_value = {"status": 0, "blockNumber": 9}
        result = chained_machine.advance("testnet")

        assert result.record.phase == DeployPhase.FAILED
        assert "reverted" in result.record.failure_reason
        assert environments.get("testnet").contract_addresses == {"ProxyAdmin": PROXY_ADMIN}
