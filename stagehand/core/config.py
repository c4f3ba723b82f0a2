"""Core configuration for Stagehand."""

from __future__ import annotations

import getpass
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STAGEHAND_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "Stagehand"
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    operator: str = Field(default_factory=getpass.getuser)

    # ── Metadata store ───────────────────────────────────────────────────
    metadata_root: str = ".stagehand"

    # ── Foundry ──────────────────────────────────────────────────────────
    forge_path: str = "forge"
    cast_path: str = "cast"
    build_timeout_seconds: int = 600

    # ── Chain ────────────────────────────────────────────────────────────
    rpc_url: str = ""
    default_gas_limit: int = 1_000_000
    default_gas_price_wei: int = 1_000_000_000
    http_max_retries: int = 3
    http_timeout_seconds: float = 30.0

    # ── Multisig ─────────────────────────────────────────────────────────
    safe_tx_service_url: str = ""  # Falls back to the chain registry
    multisig_poll_interval_seconds: float = 15.0
    multisig_poll_timeout_seconds: float = 300.0

    # ── Hardware wallet ──────────────────────────────────────────────────
    ledger_derivation_path: str = "44'/60'/0'/0/0"
    hardware_timeout_seconds: float = 120.0


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
