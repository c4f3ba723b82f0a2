"""Canonical, environment-scoped paths inside the metadata store."""

from __future__ import annotations


def environment_manifest(env: str) -> str:
    return f"environment/{env}/manifest.json"


def deploys_manifest(env: str) -> str:
    return f"environment/{env}/deploys/deploys.json"


def deploys_directory(env: str) -> str:
    return f"environment/{env}/deploys"


def deploy_directory(env: str, upgrade: str) -> str:
    return f"{deploys_directory(env)}/{upgrade}"


def deploy_record(env: str, upgrade: str) -> str:
    """Archived record of a finished (complete or failed) deploy."""
    return f"{deploy_directory(env, upgrade)}/deploy.json"


def signature_request(env: str, upgrade: str) -> str:
    """Latest signature request persisted by the deploy's signing strategy."""
    return f"{deploy_directory(env, upgrade)}/signature.json"


def build_output(env: str, upgrade: str, phase: str) -> str:
    return f"{deploy_directory(env, upgrade)}/{phase}.build.json"


def all_environments() -> str:
    return "environment"


def all_upgrades() -> str:
    return "upgrade"


def upgrade_manifest(upgrade: str) -> str:
    return f"upgrade/{upgrade}/manifest.json"
