"""Explicit per-invocation context threaded through every operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from stagehand.core.chain import ChainClient
from stagehand.core.config import Settings, get_settings
from stagehand.metadata.store import LocalMetadataStore, MetadataStore


@dataclass
class Session:
    """Who is operating, with which settings, against which store."""

    settings: Settings
    store: MetadataStore
    operator: str = ""
    chain: ChainClient | None = None
    strategy_args: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> Session:
        settings = settings or get_settings()
        chain = None
        if settings.rpc_url:
            chain = ChainClient(
                settings.rpc_url,
                timeout=settings.http_timeout_seconds,
                max_retries=settings.http_max_retries,
            )
        return cls(
            settings=settings,
            store=LocalMetadataStore(Path(settings.metadata_root)),
            operator=settings.operator,
            chain=chain,
        )
