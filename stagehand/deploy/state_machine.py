"""Upgrade state machine.

An upgrade moves through the phases its definition declares::

    (none) --begin--> created --> queued --> executing --> complete
                         \\          \\           \\
                          +----------+-----------+--> failed

Undefined phases are skipped. Each phase runs its script through the action
builder, hands the proposed transactions to the environment's signing
strategy, and completes once the resulting request is ``ready``. A ``pending``
request (multisig) leaves the record where it is; the next ``advance`` call,
possibly from another process days later, picks it up via ``latest()``.

The environment's deploy manifest is the only shared mutable state. Every
write to it is a compare-and-swap against the version read at the start of
the operation, so racing operators get ``ConcurrentModification`` instead of
silently clobbering each other. Finished records (complete or failed) are
archived under the deploy directory and removed from the manifest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from packaging.specifiers import SpecifierSet
from packaging.version import Version
from pydantic import ValidationError as PydanticValidationError

from stagehand.builder.forge import ActionBuilder
from stagehand.core.chain import ChainClient
from stagehand.core.config import Settings, get_settings
from stagehand.core.errors import (
    ConsistencyViolation,
    DeployInProgress,
    NoActiveDeploy,
    UnknownEnvironment,
    ValidationError,
)
from stagehand.core.types import (
    BuildResult,
    DeployManifest,
    DeployPhase,
    DeployRecord,
    Environment,
    SignatureRequest,
    SignatureStatus,
    UpgradeContext,
    UpgradeDefinition,
    dump,
    utcnow,
)
from stagehand.metadata import paths
from stagehand.metadata.registry import EnvironmentRegistry, UpgradeRegistry
from stagehand.metadata.store import MetadataStore
from stagehand.signing.base import SigningStrategy, StrategyContext
from stagehand.signing.registry import create_strategy

logger = logging.getLogger(__name__)

StrategyFactory = Callable[[Environment, DeployRecord], SigningStrategy]


@dataclass
class AdvanceResult:
    """Outcome of one ``advance`` step.

    ``waiting`` is set when nothing can happen until something external does:
    owners approving a proposal (``reason="signatures"``), broadcast
    transactions being mined (``reason="confirmations"``) or a timelock
    elapsing (``reason="timelock"``).
    """

    record: DeployRecord
    waiting: bool = False
    reason: str = ""

    @property
    def done(self) -> bool:
        return self.record.is_terminal


class UpgradeStateMachine:
    """Drives upgrades against environments, one active upgrade per environment."""

    def __init__(
        self,
        store: MetadataStore,
        builder: ActionBuilder,
        *,
        environments: EnvironmentRegistry | None = None,
        upgrades: UpgradeRegistry | None = None,
        strategy_factory: StrategyFactory | None = None,
        chain: ChainClient | None = None,
        settings: Settings | None = None,
        operator: str = "",
        strategy_args: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.builder = builder
        self.environments = environments or EnvironmentRegistry(store)
        self.upgrades = upgrades or UpgradeRegistry(store)
        self.chain = chain
        self.settings = settings or get_settings()
        self.operator = operator
        self.strategy_args = dict(strategy_args or {})
        self.clock = clock
        self.strategy_factory = strategy_factory or self._default_strategy

    @classmethod
    def from_session(cls, session, builder: ActionBuilder | None = None) -> UpgradeStateMachine:
        settings = session.settings
        return cls(
            session.store,
            builder or ActionBuilder(settings.forge_path, timeout=settings.build_timeout_seconds),
            chain=session.chain,
            settings=settings,
            operator=session.operator,
            strategy_args=session.strategy_args,
        )

    def _default_strategy(self, env: Environment, record: DeployRecord) -> SigningStrategy:
        context = StrategyContext(
            store=self.store,
            environment=env,
            upgrade=record.upgrade_id,
            settings=self.settings,
            chain=self.chain,
            deploy_id=record.deploy_id,
            phase=record.phase.value,
        )
        return create_strategy(env.signing_strategy, context, self.strategy_args)

    # ── Queries ──────────────────────────────────────────────────────

    def status(self, env_id: str) -> DeployRecord | None:
        """The in-progress deploy for ``env_id``, if any."""
        manifest, _ = self._load_manifest(env_id)
        return manifest.in_progress_deploy

    def history(self, env_id: str) -> list[DeployRecord]:
        """Finished deploys archived for ``env_id``, oldest first."""
        records = []
        for name in self.store.list_directory(paths.deploys_directory(env_id)):
            doc = self.store.get_json_file(paths.deploy_record(env_id, name))
            if doc is not None:
                records.append(self._parse_record(doc.contents, doc.path))
        return sorted(records, key=lambda r: r.started_at)

    # ── Transitions ──────────────────────────────────────────────────

    def begin(self, env_id: str, upgrade_id: str, commit: str = "") -> DeployRecord:
        """Start ``upgrade_id`` on ``env_id`` in its first defined phase.

        Raises:
            DeployInProgress: the environment already has an active deploy.
            ConcurrentModification: another operator wrote the manifest first.
        """
        env = self.environments.get(env_id)
        upgrade = self.upgrades.get(upgrade_id)
        manifest, version = self._load_manifest(env_id)

        active = manifest.in_progress_deploy
        if active is not None:
            raise DeployInProgress(env_id, active.upgrade_id)

        self._check_applicable(env, upgrade)
        self._check_chain(env)
        archived = self.store.get_json_file(paths.deploy_record(env_id, upgrade_id))
        if archived is not None and archived.contents.get("phase") == DeployPhase.COMPLETE.value:
            raise ValidationError(f"Upgrade '{upgrade_id}' was already applied to '{env_id}'")

        record = DeployRecord(
            upgrade_id=upgrade_id,
            environment=env_id,
            phase=upgrade.defined_phases()[0],
            commit=commit,
            operator=self.operator,
        )
        self._save(record, version)
        logger.info(
            "Started %s on %s",
            upgrade_id,
            env_id,
            extra={"environment": env_id, "upgrade": upgrade_id, "phase": record.phase.value},
        )
        return record

    def advance(self, env_id: str) -> AdvanceResult:
        """Move the active deploy forward by at most one phase.

        Safe to call repeatedly: an outstanding signature request is always
        checked with ``latest()`` and never re-requested. That includes a
        request persisted by an ``advance`` that died before it could record
        the request in the manifest.
        """
        manifest, version = self._load_manifest(env_id)
        record = manifest.in_progress_deploy
        if record is None:
            raise NoActiveDeploy(f"No deploy in progress on '{env_id}'")
        if record.is_terminal:
            raise ConsistencyViolation(
                f"Deploy manifest for '{env_id}' holds a {record.phase.value} record for {record.upgrade_id}"
            )

        env = self.environments.get(env_id)
        upgrade = self.upgrades.get(record.upgrade_id)
        strategy = self.strategy_factory(env, record)
        log_extra = {
            "environment": env_id,
            "upgrade": record.upgrade_id,
            "phase": record.phase.value,
            "strategy": strategy.id,
        }

        # Resume an outstanding request
        if record.signature_request_ref:
            request = strategy.latest()
            if request is None or request.id != record.signature_request_ref:
                raise ConsistencyViolation(
                    f"Signature request {record.signature_request_ref} for {record.upgrade_id} "
                    f"on '{env_id}' is missing from the metadata store"
                )
            return self._settle(record, version, upgrade, request, self._load_build(record), log_extra)

        orphan = strategy.latest()
        if orphan is not None and orphan.deploy_id == record.deploy_id and orphan.phase == record.phase.value:
            logger.warning("Adopting signature request %s from an interrupted advance", orphan.id, extra=log_extra)
            build = self._load_build(record)
            record.proposed_transactions = build.transactions
            record.signature_request_ref = orphan.id
            record.touch()
            version = self._save(record, version)
            return self._settle(record, version, upgrade, orphan, build, log_extra)

        if upgrade.has_queue and record.phase == DeployPhase.EXECUTING and record.executable_at is not None:
            now = self._now()
            if now < record.executable_at:
                remaining = record.executable_at - now
                logger.info("Timelock has %s remaining", remaining, extra=log_extra)
                return AdvanceResult(record, waiting=True, reason="timelock")

        result = self._build(env, upgrade, record, strategy)
        if not result.transactions:
            logger.warning("Phase %s produced no transactions", record.phase.value, extra=log_extra)
            return self._complete_phase(record, version, upgrade, result)

        request = strategy.request_new(result.transactions)
        record.proposed_transactions = result.transactions
        record.signature_request_ref = request.id
        record.touch()
        version = self._save(record, version)
        return self._settle(record, version, upgrade, request, result, log_extra)

    def drive(self, env_id: str, max_steps: int = 10) -> AdvanceResult:
        """Call ``advance`` until the deploy finishes or has to wait."""
        result = self.advance(env_id)
        steps = 1
        while not result.done and not result.waiting and steps < max_steps:
            result = self.advance(env_id)
            steps += 1
        return result

    def abort(self, env_id: str, reason: str = "cancelled by operator") -> DeployRecord:
        """Fail the active deploy, cancelling any outstanding signature request."""
        manifest, version = self._load_manifest(env_id)
        record = manifest.in_progress_deploy
        if record is None:
            raise NoActiveDeploy(f"No deploy in progress on '{env_id}'")
        if record.is_terminal:
            raise ConsistencyViolation(
                f"Deploy manifest for '{env_id}' holds a {record.phase.value} record for {record.upgrade_id}; "
                "refusing to rewrite a finished deploy"
            )

        if record.signature_request_ref or self._has_pending_request(record):
            env = self.environments.get(env_id)
            self.strategy_factory(env, record).cancel()
        return self._fail(record, version, reason).record

    # ── Phase handling ───────────────────────────────────────────────

    def _build(
        self,
        env: Environment,
        upgrade: UpgradeDefinition,
        record: DeployRecord,
        strategy: SigningStrategy,
    ) -> BuildResult:
        script = upgrade.script_for(record.phase)
        if not script:
            raise ConsistencyViolation(f"Upgrade '{upgrade.name}' has no script for phase {record.phase.value}")

        context = UpgradeContext(
            chain_id=env.chain_id,
            rpc_url=self.settings.rpc_url,
            environment=env.id,
            upgrade=upgrade.name,
            contract_addresses=env.contract_addresses,
            prior_metadata={
                "phase": record.phase.value,
                "contractUpdates": record.contract_updates,
                "queuedAt": record.queued_at.isoformat() if record.queued_at else None,
            },
        )
        result = self.builder.build(script, strategy.forge_invocation_args(), context.to_env())
        self.store.update_json(
            paths.build_output(env.id, upgrade.name, record.phase.value),
            dump(result),
        )
        return result

    def _has_pending_request(self, record: DeployRecord) -> bool:
        doc = self.store.get_json_file(paths.signature_request(record.environment, record.upgrade_id))
        if doc is None:
            return False
        contents = doc.contents
        return contents.get("status") == SignatureStatus.PENDING.value and contents.get("deployId") == record.deploy_id

    def _load_build(self, record: DeployRecord) -> BuildResult:
        doc = self.store.get_json_file(paths.build_output(record.environment, record.upgrade_id, record.phase.value))
        if doc is None:
            return BuildResult(transactions=record.proposed_transactions)
        return BuildResult.model_validate(doc.contents)

    def _settle(
        self,
        record: DeployRecord,
        version: str | None,
        upgrade: UpgradeDefinition,
        request: SignatureRequest,
        result: BuildResult,
        log_extra: dict[str, Any],
    ) -> AdvanceResult:
        if request.status == SignatureStatus.PENDING:
            reason = str(request.result_metadata.get("awaiting") or "signatures")
            logger.info("Waiting on %s for request %s", reason, request.id, extra=log_extra)
            return AdvanceResult(record, waiting=True, reason=reason)
        if request.status == SignatureStatus.FAILED:
            reason = request.result_metadata.get("reason") or f"signature request {request.id} failed"
            return self._fail(record, version, str(reason))
        return self._complete_phase(record, version, upgrade, result)

    def _complete_phase(
        self,
        record: DeployRecord,
        version: str | None,
        upgrade: UpgradeDefinition,
        result: BuildResult,
    ) -> AdvanceResult:
        finished = record.phase
        record.contract_updates.update(result.contract_updates())
        if finished == DeployPhase.QUEUED:
            record.queued_at = self.clock()
            if result.eta is not None:
                record.executable_at = datetime.fromtimestamp(result.eta, tz=timezone.utc)
            else:
                record.executable_at = record.queued_at + timedelta(seconds=upgrade.timelock_seconds)

        record.signature_request_ref = None
        record.proposed_transactions = []
        record.phase = upgrade.next_phase(finished)
        record.touch()

        if record.phase == DeployPhase.COMPLETE:
            self.environments.record_deploy(
                record.environment,
                contract_updates=record.contract_updates,
                commit=record.commit,
                version=upgrade.to,
            )
            self._finish(record, version)
            logger.info(
                "Upgrade %s complete on %s",
                record.upgrade_id,
                record.environment,
                extra={"environment": record.environment, "upgrade": record.upgrade_id, "phase": "complete"},
            )
        else:
            self._save(record, version)
            logger.info(
                "Phase %s done; next is %s",
                finished.value,
                record.phase.value,
                extra={"environment": record.environment, "upgrade": record.upgrade_id, "phase": record.phase.value},
            )
        return AdvanceResult(record)

    def _fail(self, record: DeployRecord, version: str | None, reason: str) -> AdvanceResult:
        record.phase = DeployPhase.FAILED
        record.failure_reason = reason
        record.touch()
        self._finish(record, version)
        logger.error(
            "Upgrade %s failed on %s: %s",
            record.upgrade_id,
            record.environment,
            reason,
            extra={"environment": record.environment, "upgrade": record.upgrade_id, "phase": "failed"},
        )
        return AdvanceResult(record)

    # ── Persistence ──────────────────────────────────────────────────

    def _load_manifest(self, env_id: str) -> tuple[DeployManifest, str | None]:
        doc = self.store.get_json_file(paths.deploys_manifest(env_id))
        if doc is None:
            if not self.environments.exists(env_id):
                raise UnknownEnvironment(f"No such environment: '{env_id}'")
            return DeployManifest(), None
        try:
            return DeployManifest.model_validate(doc.contents), doc.version
        except PydanticValidationError as exc:
            raise ConsistencyViolation(f"Deploy manifest for '{env_id}' is corrupt: {exc}") from exc

    def _save(self, record: DeployRecord, version: str | None) -> str:
        doc = self.store.update_json(
            paths.deploys_manifest(record.environment),
            dump(DeployManifest(in_progress_deploy=record)),
            expected_version=version,
        )
        return doc.version

    def _finish(self, record: DeployRecord, version: str | None) -> None:
        """Archive a terminal record and clear the manifest."""
        self.store.update_json(paths.deploy_record(record.environment, record.upgrade_id), dump(record))
        self.store.update_json(
            paths.deploys_manifest(record.environment),
            dump(DeployManifest()),
            expected_version=version,
        )

    @staticmethod
    def _parse_record(contents: Any, path: str) -> DeployRecord:
        try:
            return DeployRecord.model_validate(contents)
        except PydanticValidationError as exc:
            raise ConsistencyViolation(f"Deploy record at {path} is corrupt: {exc}") from exc

    def _now(self) -> datetime:
        if self.chain is not None:
            return self.chain.block_timestamp()
        return self.clock()

    def _check_chain(self, env: Environment) -> None:
        if self.chain is None:
            return
        node_chain = self.chain.chain_id()
        if node_chain != env.chain_id:
            raise ValidationError(
                f"RPC endpoint serves chain {node_chain}, but '{env.id}' is on chain {env.chain_id}"
            )

    @staticmethod
    def _check_applicable(env: Environment, upgrade: UpgradeDefinition) -> None:
        if upgrade.from_semver and not SpecifierSet(upgrade.from_semver).contains(
            Version(env.deployed_version), prereleases=True
        ):
            raise ValidationError(
                f"Upgrade '{upgrade.name}' requires version {upgrade.from_semver}, "
                f"but '{env.id}' is at {env.deployed_version}"
            )
