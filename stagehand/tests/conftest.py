"""Shared fixtures for the Stagehand test suite."""

from __future__ import annotations

import json
import re
import subprocess
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from stagehand.core.config import Settings
from stagehand.core.types import Environment, Transaction, UpgradeDefinition, UpgradePhases
from stagehand.metadata.registry import EnvironmentRegistry, UpgradeRegistry
from stagehand.metadata.store import InMemoryMetadataStore
from stagehand.signing.base import StrategyContext

# Well-known throwaway key; never holds funds.
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = "0x2c7536e3605d9c16a7a3d7b1898e529396a65c23"
SAFE_ADDRESS = "0x1111111111111111111111111111111111111111"
PROXY_ADMIN = "0x2222222222222222222222222222222222222222"
NEW_IMPL = "0x3333333333333333333333333333333333333333"


# ── Fake build tool ──────────────────────────────────────────────────────────


class FakeForge:
    """Stands in for ``subprocess.run``; replies per script with canned output."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.outputs: dict[str, tuple[int, str, str]] = {}

    def reply(self, script: str, result: dict[str, Any] | None = None, *, stdout: str | None = None,
              returncode: int = 0, stderr: str = "") -> None:
        if stdout is None:
            stdout = "Compiling 3 files...\n" + json.dumps(result or {}) + "\n"
        self.outputs[script] = (returncode, stdout, stderr)

    def __call__(self, cmd, **kwargs) -> subprocess.CompletedProcess:
        self.calls.append({"cmd": list(cmd), **kwargs})
        script = cmd[2]
        returncode, stdout, stderr = self.outputs.get(script, (0, '{"transactions": []}\n', ""))
        return subprocess.CompletedProcess(cmd, returncode, stdout.encode(), stderr.encode())


@pytest.fixture
def fake_forge() -> FakeForge:
    return FakeForge()


# ── Settings & store ─────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        operator="alice",
        hardware_timeout_seconds=2,
        multisig_poll_interval_seconds=0.01,
        multisig_poll_timeout_seconds=0.0,
        safe_tx_service_url="https://safe.example",
    )


@pytest.fixture
def store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def environments(store) -> EnvironmentRegistry:
    return EnvironmentRegistry(store)


@pytest.fixture
def upgrades(store) -> UpgradeRegistry:
    return UpgradeRegistry(store)


@pytest.fixture
def testnet(environments) -> Environment:
    return environments.create_environment(
        "testnet",
        chain_id=11155111,
        precedes="mainnet",
        contract_addresses={"ProxyAdmin": PROXY_ADMIN},
    )


@pytest.fixture
def upgrade_v2(upgrades) -> UpgradeDefinition:
    return upgrades.register(
        UpgradeDefinition(
            name="upgrade-v2",
            path="upgrades/v2",
            phases=UpgradePhases(create="1-create.s.sol", execute="2-execute.s.sol"),
            to="2.0.0",
        )
    )


@pytest.fixture
def context(store, testnet, settings) -> StrategyContext:
    return StrategyContext(store=store, environment=testnet, upgrade="upgrade-v2", settings=settings)


@pytest.fixture
def sample_transaction() -> Transaction:
    return Transaction(to=PROXY_ADMIN, data="0x99a88ec4", value=0)


# ── Fake Safe Transaction Service ───────────────────────────────────────────


class FakeSafeService:
    """In-memory Safe Transaction Service behind ``httpx.MockTransport``."""

    def __init__(self, nonce: int = 5, version: str = "1.3.0") -> None:
        self.nonce = nonce
        self.version = version
        self.proposals: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, text="service down")

        path = request.url.path
        if request.method == "GET" and re.fullmatch(r"/api/v1/safes/0x[0-9a-fA-F]{40}/", path):
            return httpx.Response(200, json={"nonce": self.nonce, "threshold": 2, "version": self.version})
        if request.method == "GET" and re.fullmatch(r"/api/v1/safes/0x[0-9a-fA-F]{40}/multisig-transactions/", path):
            params = request.url.params
            results = [
                p for p in self.proposals.values()
                if ("nonce" not in params or p["nonce"] == int(params["nonce"]))
                and ("executed" not in params or p["isExecuted"] == (params["executed"] == "true"))
            ]
            return httpx.Response(200, json={"count": len(results), "results": results})
        if request.method == "POST" and path.endswith("/multisig-transactions/"):
            body = json.loads(request.content)
            self.proposals[body["contractTransactionHash"]] = {
                **body,
                "safeTxHash": body["contractTransactionHash"],
                "isExecuted": False,
                "isSuccessful": None,
                "transactionHash": None,
                "confirmations": [{"owner": body["sender"], "signature": body["signature"]}],
                "confirmationsRequired": 2,
            }
            return httpx.Response(201)
        match = re.fullmatch(r"/api/v1/multisig-transactions/(0x[0-9a-f]{64})/", path)
        if request.method == "GET" and match:
            proposal = self.proposals.get(match.group(1))
            if proposal is None:
                return httpx.Response(404, json={"detail": "Not found."})
            return httpx.Response(200, json=proposal)
        return httpx.Response(400, text=f"unexpected {request.method} {path}")

    # Helpers for tests

    @property
    def posts(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    def execute(self, safe_tx_hash: str, success: bool = True) -> None:
        proposal = self.proposals[safe_tx_hash]
        proposal["isExecuted"] = True
        proposal["isSuccessful"] = success
        proposal["transactionHash"] = "0x" + "ab" * 32
        proposal["confirmations"].append({"owner": "0x" + "44" * 20})
        self.nonce = proposal["nonce"] + 1


@pytest.fixture
def service() -> FakeSafeService:
    return FakeSafeService()


# ── Clock ────────────────────────────────────────────────────────────────────


class FixedClock:
    """Controllable clock for timelock tests."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()
