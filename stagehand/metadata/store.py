"""Versioned document store for environment and deploy metadata.

The store is the only shared mutable resource between operators. Every
write is a compare-and-swap against the version the caller last observed:

    doc = store.get_json_file(path)
    store.update_json(path, new_value, expected_version=doc.version if doc else None)

``expected_version=None`` means "the file must not exist yet"; ``ANY`` skips
the check. A lost race raises :class:`ConcurrentModification`.

Usage:
    store = LocalMetadataStore(Path(".stagehand"))
    store = InMemoryMetadataStore()          # tests
"""

from __future__ import annotations

import enum
import fcntl
import hashlib
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Generic, Iterator, TypeVar, Union

from stagehand.core.errors import ConcurrentModification, ConsistencyViolation, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Any(enum.Enum):
    ANY = "any"


ANY = _Any.ANY

ExpectedVersion = Union[str, None, _Any]


def content_version(data: bytes) -> str:
    """Version tag of stored bytes."""
    return hashlib.sha256(data).hexdigest()


def encode_json(value: Any) -> bytes:
    return (json.dumps(value, indent=2, sort_keys=True, default=str) + "\n").encode("utf-8")


@dataclass(frozen=True)
class Document(Generic[T]):
    """A snapshot of one stored file and the version it was read at."""

    path: str
    contents: T
    version: str


def _normalize(path: str) -> str:
    pure = PurePosixPath(path)
    if pure.is_absolute() or ".." in pure.parts or not pure.parts:
        raise ValidationError(f"Invalid metadata path: {path!r}")
    return str(pure)


class MetadataStore(ABC):
    """Path-keyed file store with optimistic concurrency."""

    # ── Backend primitives ───────────────────────────────────────────

    @abstractmethod
    def _read(self, path: str) -> bytes | None:
        """Return the stored bytes at ``path`` or ``None``."""

    @abstractmethod
    def _swap(self, path: str, data: bytes, expected_version: ExpectedVersion) -> None:
        """Atomically write ``data`` if the current version matches."""

    @abstractmethod
    def list_directory(self, path: str) -> list[str]:
        """Names of the entries directly under ``path`` (sorted)."""

    # ── Public API ───────────────────────────────────────────────────

    def exists(self, path: str) -> bool:
        return self._read(_normalize(path)) is not None

    def get_file(self, path: str) -> Document[bytes] | None:
        path = _normalize(path)
        data = self._read(path)
        if data is None:
            return None
        return Document(path=path, contents=data, version=content_version(data))

    def get_json_file(self, path: str) -> Document[Any] | None:
        doc = self.get_file(path)
        if doc is None:
            return None
        try:
            value = json.loads(doc.contents.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ConsistencyViolation(f"Stored document {path} is not valid JSON: {exc}") from exc
        return Document(path=doc.path, contents=value, version=doc.version)

    def update_file(self, path: str, data: bytes, expected_version: ExpectedVersion = ANY) -> Document[bytes]:
        path = _normalize(path)
        self._swap(path, data, expected_version)
        logger.debug("Wrote %s (%d bytes)", path, len(data))
        return Document(path=path, contents=data, version=content_version(data))

    def update_json(self, path: str, value: Any, expected_version: ExpectedVersion = ANY) -> Document[Any]:
        doc = self.update_file(path, encode_json(value), expected_version)
        return Document(path=doc.path, contents=value, version=doc.version)

    @staticmethod
    def _check(path: str, current: bytes | None, expected_version: ExpectedVersion) -> None:
        if expected_version is ANY:
            return
        current_version = content_version(current) if current is not None else None
        if current_version != expected_version:
            raise ConcurrentModification(path)


class InMemoryMetadataStore(MetadataStore):
    """Process-local store. Used by tests and dry runs."""

    def __init__(self, files: dict[str, Any] | None = None) -> None:
        self._files: dict[str, bytes] = {}
        self._lock = threading.Lock()
        for path, value in (files or {}).items():
            self._files[_normalize(path)] = value if isinstance(value, bytes) else encode_json(value)

    def _read(self, path: str) -> bytes | None:
        with self._lock:
            return self._files.get(path)

    def _swap(self, path: str, data: bytes, expected_version: ExpectedVersion) -> None:
        with self._lock:
            self._check(path, self._files.get(path), expected_version)
            self._files[path] = data

    def list_directory(self, path: str) -> list[str]:
        prefix = _normalize(path) + "/"
        with self._lock:
            names = {p[len(prefix):].split("/", 1)[0] for p in self._files if p.startswith(prefix)}
        return sorted(names)


# ── Local directory backend ──────────────────────────────────────────────────

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar next to ``path``.

    The sidecar keeps the lock handle valid while the data file is replaced.
    """
    lock_path = path.with_name(path.name + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to a temp file in the same directory, then ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as tmp_handle:
            tmp_handle.write(data)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class LocalMetadataStore(MetadataStore):
    """Store rooted at a directory, typically a checkout of a metadata repo.

    Safe across processes on one host: each compare-and-swap runs under an
    ``fcntl`` lock. Versioning of the tree (e.g. committing it to git) is left
    to the operator's tooling.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        return self.root / path

    def _read(self, path: str) -> bytes | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return target.read_bytes()

    def _swap(self, path: str, data: bytes, expected_version: ExpectedVersion) -> None:
        target = self._resolve(path)
        with _locked_file(target):
            current = target.read_bytes() if target.is_file() else None
            self._check(path, current, expected_version)
            _atomic_write_bytes(target, data)

    def list_directory(self, path: str) -> list[str]:
        target = self._resolve(_normalize(path))
        if not target.is_dir():
            return []
        return sorted(
            entry.name
            for entry in target.iterdir()
            if not entry.name.startswith(".") and not entry.name.endswith(_LOCK_SUFFIX)
        )
