"""Signing strategy interface.

A strategy turns proposed transactions into a :class:`SignatureRequest`.
Variants differ in how a request completes:

  - local signers (``eoa``, ``ledger``): ``ready`` on return without a chain
    client; with one, ``pending`` until every broadcast transaction has a receipt
  - ``multisig``: ``pending`` until other signers approve out-of-band and the
    Safe executes; ``latest()`` discovers the outcome

Requests are persisted in the metadata store, stamped with the deploy and
phase they belong to, before anything is broadcast. A later process can rebuild
them from disk and adopt them instead of signing again. Callers must check
``latest()`` before ``request_new``; a pending request is never duplicated.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Sequence

from eth_utils import is_address, is_hex, to_checksum_address
from pydantic import ValidationError as PydanticValidationError

from stagehand.core.chain import ChainClient
from stagehand.core.config import Settings, get_settings
from stagehand.core.errors import ConsistencyViolation, InvalidSigningArgs, InvalidTransaction
from stagehand.core.logging import register_secret
from stagehand.core.types import Environment, SignatureRequest, SignatureStatus, Transaction, dump, utcnow
from stagehand.metadata import paths
from stagehand.metadata.store import MetadataStore

logger = logging.getLogger(__name__)


@dataclass
class StrategyContext:
    """Where a strategy is signing, and where it keeps its requests."""

    store: MetadataStore
    environment: Environment
    upgrade: str
    settings: Settings | None = None
    chain: ChainClient | None = None
    deploy_id: str = ""
    phase: str = ""

    @property
    def request_path(self) -> str:
        return paths.signature_request(self.environment.id, self.upgrade)


def same_address(a: str | None, b: str | None) -> bool:
    return bool(a and b) and a.lower() == b.lower()


class SigningStrategy(ABC):
    """Base class for every signing backend."""

    id: ClassVar[str]
    description: ClassVar[str]

    def __init__(self, context: StrategyContext, args: dict[str, Any] | None = None) -> None:
        self.context = context
        self.settings = context.settings or get_settings()
        self.args = dict(args or {})
        if not self.validate_args(self.args):
            raise InvalidSigningArgs(f"Invalid arguments for '{self.id}' signing. Usage: {self.usage()}")
        register_secret(*self.redacted_values())

    # ── Interface ────────────────────────────────────────────────────

    @abstractmethod
    def validate_args(self, raw: dict[str, Any]) -> bool:
        """Type/shape and domain check of the strategy's arguments."""

    @abstractmethod
    def forge_invocation_args(self) -> list[str]:
        """Extra arguments the action builder must pass through to forge."""

    @abstractmethod
    def _submit(self, transactions: list[Transaction]) -> SignatureRequest:
        """Sign or propose already-validated transactions."""

    def usage(self) -> str:
        return ""

    def redacted_values(self) -> list[str]:
        """Values that must never appear in logs or command echoes."""
        return []

    def _dispatch(self, request: SignatureRequest) -> SignatureRequest:
        """Send out a request that is already persisted.

        Return a new object when anything changed so it is saved again.
        """
        return request

    def _refresh(self, request: SignatureRequest) -> SignatureRequest:
        """Bring a pending request up to date."""
        return request

    # ── Requests ─────────────────────────────────────────────────────

    def request_new(self, transactions: Sequence[Transaction]) -> SignatureRequest:
        """Validate ``transactions`` and open a new signature request.

        Raises:
            InvalidTransaction: before any external call is made.
        """
        validated = self.validate_transactions(transactions)

        existing = self.latest()
        if existing is not None and existing.is_pending:
            if not self._owns(existing):
                raise ConsistencyViolation(
                    f"Signature request {existing.id} belongs to deploy {existing.deploy_id or '?'} "
                    f"phase {existing.phase or '?'} and is still pending"
                )
            logger.warning("Request %s is still pending; not submitting a duplicate", existing.id)
            return existing

        request = self._submit(validated)
        request.deploy_id = self.context.deploy_id
        request.phase = self.context.phase
        self._save(request)
        dispatched = self._dispatch(request)
        if dispatched is not request:
            self._save(dispatched)
            request = dispatched
        logger.info("Signature request %s (%s) is %s", request.id, self.id, request.status.value)
        return request

    def _owns(self, request: SignatureRequest) -> bool:
        return request.deploy_id == self.context.deploy_id and request.phase == self.context.phase

    def latest(self) -> SignatureRequest | None:
        """Most recent request for this deploy, rebuilt from the store."""
        request = self._load()
        if request is None:
            return None
        if request.status == SignatureStatus.PENDING:
            refreshed = self._refresh(request)
            if refreshed.status != request.status or refreshed.result_metadata != request.result_metadata:
                refreshed.updated_at = utcnow()
                self._save(refreshed)
            return refreshed
        return request

    def poll(self, timeout: float | None = None, interval: float | None = None) -> SignatureRequest | None:
        """Refresh until the request leaves ``pending`` or ``timeout`` elapses.

        Expiry returns the still-pending request; it does not fail it.
        """
        timeout = self.settings.multisig_poll_timeout_seconds if timeout is None else timeout
        interval = self.settings.multisig_poll_interval_seconds if interval is None else interval
        deadline = time.monotonic() + timeout
        request = self.latest()
        while request is not None and request.is_pending and time.monotonic() < deadline:
            time.sleep(min(interval, max(0.0, deadline - time.monotonic())))
            request = self.latest()
        return request

    def cancel(self) -> None:
        """Abandon the pending request, if any."""
        request = self._load()
        if request is None or not request.is_pending:
            return
        request.status = SignatureStatus.FAILED
        request.result_metadata["cancelled"] = True
        request.updated_at = utcnow()
        self._save(request)

    # ── Validation ───────────────────────────────────────────────────

    def validate_transactions(self, transactions: Sequence[Transaction]) -> list[Transaction]:
        """Structural checks shared by every backend. No external calls."""
        if not transactions:
            raise InvalidTransaction("No transactions to sign")

        validated = []
        for index, tx in enumerate(transactions):
            if not tx.to:
                raise InvalidTransaction(f"Transaction #{index} has no 'to' address", index)
            if not is_address(tx.to):
                raise InvalidTransaction(f"Transaction #{index} has an invalid 'to' address: {tx.to}", index)
            if tx.data and not is_hex(tx.data):
                raise InvalidTransaction(f"Transaction #{index} has non-hex calldata", index)
            if tx.from_ is not None and not is_address(tx.from_):
                raise InvalidTransaction(f"Transaction #{index} has an invalid 'from' address: {tx.from_}", index)
            if tx.value is not None and tx.value < 0:
                raise InvalidTransaction(f"Transaction #{index} has a negative value", index)
            validated.append(tx.model_copy(update={"to": to_checksum_address(tx.to), "data": tx.data or "0x"}))
        return validated

    def bind_sender(self, transactions: list[Transaction], sender: str) -> list[Transaction]:
        """Fill in ``from`` with ``sender``; reject transactions naming anyone else."""
        bound = []
        for index, tx in enumerate(transactions):
            if tx.from_ is not None and not same_address(tx.from_, sender):
                raise InvalidTransaction(
                    f"Transaction #{index} is from {tx.from_}, but this strategy signs for {sender}", index
                )
            bound.append(tx.model_copy(update={"from_": to_checksum_address(sender)}))
        return bound

    # ── Persistence ──────────────────────────────────────────────────

    def _load(self) -> SignatureRequest | None:
        doc = self.context.store.get_json_file(self.context.request_path)
        if doc is None:
            return None
        try:
            return SignatureRequest.model_validate(doc.contents)
        except PydanticValidationError as exc:
            raise ConsistencyViolation(f"Signature request at {doc.path} is corrupt: {exc}") from exc

    def _save(self, request: SignatureRequest) -> None:
        self.context.store.update_json(self.context.request_path, dump(request))
