"""Environment and upgrade registries.

Environments form promotion chains (``testnet`` precedes ``mainnet``). The
``precedes`` links must stay acyclic; any write that would close a loop fails
with :class:`ConsistencyViolation` before anything is stored.
"""

from __future__ import annotations

import logging
import re

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version
from pydantic import ValidationError as PydanticValidationError

from stagehand.core.errors import (
    ConsistencyViolation,
    UnknownEnvironment,
    UnknownUpgrade,
    ValidationError,
)
from stagehand.core.types import DeployManifest, Environment, UpgradeDefinition, dump
from stagehand.metadata import paths
from stagehand.metadata.store import MetadataStore

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[a-zA-Z0-9-]+$")
_UPGRADE_NAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")


class EnvironmentRegistry:
    """Reads and writes environment manifests."""

    def __init__(self, store: MetadataStore) -> None:
        self.store = store

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, env_id: str) -> Environment:
        env, _ = self._load(env_id)
        return env

    def exists(self, env_id: str) -> bool:
        return self.store.exists(paths.environment_manifest(env_id))

    def list(self) -> list[Environment]:
        envs = []
        for name in self.store.list_directory(paths.all_environments()):
            if self.exists(name):
                envs.append(self.get(name))
        return envs

    def promotion_chain(self, env_id: str) -> list[str]:
        """``env_id`` followed by every environment it (transitively) precedes."""
        chain = [env_id]
        current = self.get(env_id).precedes
        while current:
            if current in chain:
                raise ConsistencyViolation(
                    f"Precedence cycle detected: {' -> '.join(chain + [current])}"
                )
            chain.append(current)
            current = self.get(current).precedes if self.exists(current) else None
        return chain

    # ── Mutations ────────────────────────────────────────────────────

    def create_environment(
        self,
        env_id: str,
        *,
        chain_id: int = 1,
        signing_strategy: str = "eoa",
        precedes: str | None = None,
        contract_addresses: dict[str, str] | None = None,
    ) -> Environment:
        from stagehand.signing.registry import available_strategies

        if not _NAME_RE.match(env_id):
            raise ValidationError(f"Invalid environment name {env_id!r} (letters, digits and '-' only)")
        if self.exists(env_id):
            raise ValidationError(f"Environment '{env_id}' already exists")
        if signing_strategy not in available_strategies():
            raise ValidationError(
                f"Unknown signing strategy {signing_strategy!r}; expected one of {sorted(available_strategies())}"
            )
        self._check_acyclic(env_id, precedes)

        env = Environment(
            id=env_id,
            precedes=precedes or None,
            chain_id=chain_id,
            signing_strategy=signing_strategy,
            contract_addresses=dict(contract_addresses or {}),
        )
        self.store.update_json(paths.environment_manifest(env_id), dump(env), expected_version=None)
        self.store.update_json(paths.deploys_manifest(env_id), dump(DeployManifest()), expected_version=None)
        logger.info("Created environment %s (chain %d, strategy %s)", env_id, chain_id, signing_strategy)
        return env

    def set_precedes(self, env_id: str, precedes: str | None) -> Environment:
        env, version = self._load(env_id)
        self._check_acyclic(env_id, precedes)
        env.precedes = precedes or None
        self.store.update_json(paths.environment_manifest(env_id), dump(env), expected_version=version)
        return env

    def record_deploy(
        self,
        env_id: str,
        *,
        contract_updates: dict[str, str],
        commit: str,
        version: str | None = None,
    ) -> Environment:
        """Apply a completed upgrade to the environment manifest."""
        env, doc_version = self._load(env_id)
        env.contract_addresses.update(contract_updates)
        if commit:
            env.latest_deployed_commit = commit
        if version:
            env.deployed_version = version
        self.store.update_json(paths.environment_manifest(env_id), dump(env), expected_version=doc_version)
        logger.info(
            "Environment %s updated: %d contract(s), commit %s",
            env_id,
            len(contract_updates),
            commit or "<unchanged>",
        )
        return env

    # ── Internals ────────────────────────────────────────────────────

    def _load(self, env_id: str) -> tuple[Environment, str]:
        doc = self.store.get_json_file(paths.environment_manifest(env_id))
        if doc is None:
            raise UnknownEnvironment(f"No such environment: '{env_id}'")
        try:
            return Environment.model_validate(doc.contents), doc.version
        except PydanticValidationError as exc:
            raise ConsistencyViolation(f"Environment manifest for '{env_id}' is corrupt: {exc}") from exc

    def _check_acyclic(self, env_id: str, precedes: str | None) -> None:
        seen = [env_id]
        current = precedes
        while current:
            if current in seen:
                raise ConsistencyViolation(
                    f"Environment '{env_id}' cannot precede '{precedes}': "
                    f"cycle {' -> '.join(seen + [current])}"
                )
            seen.append(current)
            # Forward references to environments not created yet end the walk
            current = self.get(current).precedes if self.exists(current) else None


class UpgradeRegistry:
    """Registered upgrade definitions, immutable once written."""

    def __init__(self, store: MetadataStore) -> None:
        self.store = store

    def register(self, definition: UpgradeDefinition) -> UpgradeDefinition:
        if not _UPGRADE_NAME_RE.match(definition.name):
            raise ValidationError(f"Invalid upgrade name {definition.name!r}")
        if not definition.defined_phases():
            raise ValidationError(f"Upgrade '{definition.name}' defines no phases (create, queue or execute)")
        if definition.timelock_seconds < 0:
            raise ValidationError("timelock_seconds must be >= 0")
        try:
            Version(definition.to)
        except InvalidVersion as exc:
            raise ValidationError(f"Invalid target version {definition.to!r}") from exc
        if definition.from_semver:
            try:
                SpecifierSet(definition.from_semver)
            except InvalidSpecifier as exc:
                raise ValidationError(f"Invalid version range {definition.from_semver!r}") from exc

        path = paths.upgrade_manifest(definition.name)
        if self.store.exists(path):
            raise ValidationError(f"Upgrade '{definition.name}' is already registered")
        self.store.update_json(path, dump(definition), expected_version=None)
        logger.info("Registered upgrade %s (%s -> %s)", definition.name, definition.from_semver or "*", definition.to)
        return definition

    def get(self, name: str) -> UpgradeDefinition:
        doc = self.store.get_json_file(paths.upgrade_manifest(name))
        if doc is None:
            raise UnknownUpgrade(f"No such upgrade: '{name}'")
        try:
            return UpgradeDefinition.model_validate(doc.contents)
        except PydanticValidationError as exc:
            raise ConsistencyViolation(f"Upgrade manifest for '{name}' is corrupt: {exc}") from exc

    def list(self) -> list[UpgradeDefinition]:
        return [
            self.get(name)
            for name in self.store.list_directory(paths.all_upgrades())
            if self.store.exists(paths.upgrade_manifest(name))
        ]

    def applicable_to(self, env: Environment) -> list[UpgradeDefinition]:
        """Upgrades whose ``from_semver`` range admits the environment's version."""
        current = Version(env.deployed_version)
        return [
            upgrade
            for upgrade in self.list()
            if not upgrade.from_semver or SpecifierSet(upgrade.from_semver).contains(current, prereleases=True)
        ]
