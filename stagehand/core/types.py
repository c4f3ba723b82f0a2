"""Shared enums and records used across Stagehand.

Records are persisted as JSON with camelCase keys (``contractAddresses``,
``inProgressDeploy``...). Always serialise with :func:`dump`.
"""

from __future__ import annotations

import enum
import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Record(BaseModel):
    """Base model for persisted records."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def dump(record: BaseModel) -> dict[str, Any]:
    """Serialise a record to its persisted JSON shape."""
    return record.model_dump(mode="json", by_alias=True)


# ── Enums ────────────────────────────────────────────────────────────────────


class DeployPhase(str, enum.Enum):
    """Phase of an in-progress upgrade. ``NotStarted`` is the absence of a record."""

    CREATED = "created"
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeployPhase.COMPLETE, DeployPhase.FAILED)


# Order in which an upgrade's phases run. Undefined phases are skipped.
PHASE_ORDER: tuple[DeployPhase, ...] = (DeployPhase.CREATED, DeployPhase.QUEUED, DeployPhase.EXECUTING)


class SignatureStatus(str, enum.Enum):
    """Completion state of a signature request."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


# ── Transactions ─────────────────────────────────────────────────────────────


class Transaction(Record):
    """A proposed transaction produced by an upgrade script."""

    to: str | None = None
    data: str = "0x"
    value: int | None = None
    gas: int | None = None
    gas_price: int | None = None
    from_: str | None = Field(default=None, alias="from")
    nonce: int | None = None

    @field_validator("value", "gas", "gas_price", "nonce", mode="before")
    @classmethod
    def _parse_quantity(cls, v: Any) -> Any:
        # forge emits quantities as hex strings
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
            return int(v, 16) if v.lower().startswith("0x") else int(v)
        return v


class SignatureRequest(Record):
    """Result of handing transactions to a signing strategy."""

    id: str
    strategy: str
    status: SignatureStatus = SignatureStatus.PENDING
    deploy_id: str = ""
    phase: str = ""
    signed_transactions: list[str] = Field(default_factory=list)
    result_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == SignatureStatus.PENDING


# ── Build output ─────────────────────────────────────────────────────────────


class StateUpdate(Record):
    """An environment value the script wants recorded (e.g. a new proxy address)."""

    name: str
    value: Any = None
    internal_type: int | None = None


class DeployedContract(Record):
    contract: str
    address: str
    singleton: bool = True


class BuildResult(Record):
    """The single structured line emitted by an upgrade script."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    transactions: list[Transaction] = Field(default_factory=list)
    state_updates: list[StateUpdate] = Field(default_factory=list)
    deployed_contracts: list[DeployedContract] = Field(default_factory=list)
    multisig: str | None = None
    eta: int | None = None  # unix seconds when a queued action becomes executable
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def contract_updates(self) -> dict[str, str]:
        """Contract-address changes implied by this result."""
        updates = {c.contract: c.address for c in self.deployed_contracts if c.singleton}
        for update in self.state_updates:
            if isinstance(update.value, str):
                updates[update.name] = update.value
        return updates


# ── Environments & upgrades ──────────────────────────────────────────────────


class Environment(Record):
    """A named deployment target."""

    id: str
    precedes: str | None = None
    contract_addresses: dict[str, str] = Field(default_factory=dict)
    signing_strategy: str = "eoa"
    latest_deployed_commit: str = ""
    chain_id: int = 1
    deployed_version: str = "0.0.0"


class UpgradePhases(Record):
    """Script paths for each phase, relative to the upgrade directory."""

    create: str | None = None
    queue: str | None = None
    execute: str | None = None


class UpgradeDefinition(Record):
    """A registered, immutable unit of on-chain change."""

    name: str
    from_semver: str = ""
    to: str = "0.0.0"
    path: str = ""
    phases: UpgradePhases = Field(default_factory=UpgradePhases)
    timelock_seconds: int = 0

    def defined_phases(self) -> list[DeployPhase]:
        scripts = {
            DeployPhase.CREATED: self.phases.create,
            DeployPhase.QUEUED: self.phases.queue,
            DeployPhase.EXECUTING: self.phases.execute,
        }
        return [phase for phase in PHASE_ORDER if scripts[phase]]

    def script_for(self, phase: DeployPhase) -> str | None:
        script = {
            DeployPhase.CREATED: self.phases.create,
            DeployPhase.QUEUED: self.phases.queue,
            DeployPhase.EXECUTING: self.phases.execute,
        }.get(phase)
        if script and self.path:
            return f"{self.path.rstrip('/')}/{script}"
        return script

    def next_phase(self, phase: DeployPhase) -> DeployPhase:
        """Phase after ``phase``; ``COMPLETE`` once none remain."""
        defined = self.defined_phases()
        later = [p for p in defined if PHASE_ORDER.index(p) > PHASE_ORDER.index(phase)]
        return later[0] if later else DeployPhase.COMPLETE

    @property
    def has_queue(self) -> bool:
        return bool(self.phases.queue)


class UpgradeContext(Record):
    """What an upgrade script sees of the chain and of prior deploys."""

    chain_id: int
    rpc_url: str = ""
    environment: str
    upgrade: str
    contract_addresses: dict[str, str] = Field(default_factory=dict)
    prior_metadata: dict[str, Any] = Field(default_factory=dict)

    def to_env(self) -> dict[str, str]:
        """Render as environment variables for the build subprocess."""
        env = {
            "STAGEHAND_ENVIRONMENT": self.environment,
            "STAGEHAND_DEPLOY": self.upgrade,
            "STAGEHAND_CHAIN_ID": str(self.chain_id),
            "STAGEHAND_PRIOR_METADATA": json.dumps(self.prior_metadata, default=str),
        }
        if self.rpc_url:
            env["STAGEHAND_RPC_URL"] = self.rpc_url
        for name, address in self.contract_addresses.items():
            env[f"STAGEHAND_ENV_{name}"] = address
        return env


# ── Deploy records ───────────────────────────────────────────────────────────


class DeployRecord(Record):
    """Progress of one upgrade against one environment."""

    upgrade_id: str
    environment: str
    phase: DeployPhase
    proposed_transactions: list[Transaction] = Field(default_factory=list)
    signature_request_ref: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)
    commit: str = ""
    operator: str = ""
    queued_at: datetime | None = None
    executable_at: datetime | None = None
    contract_updates: dict[str, str] = Field(default_factory=dict)
    failure_reason: str | None = None

    @property
    def deploy_id(self) -> str:
        """Identity of this deploy attempt; a retried upgrade gets a new one."""
        return f"{self.upgrade_id}@{self.started_at.astimezone(timezone.utc).isoformat()}"

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def touch(self) -> None:
        self.last_updated_at = utcnow()


class DeployManifest(Record):
    """Per-environment record of the in-progress upgrade, if any."""

    in_progress_deploy: DeployRecord | None = None
