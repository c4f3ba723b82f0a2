"""Error taxonomy for Stagehand.

Every failure surfaced to an operator is a :class:`StagehandError` carrying a
stable :class:`ErrorCode` and a human-readable message:

    {
        "code": "DEPLOY_IN_PROGRESS",
        "message": "Environment 'testnet' already has an active deploy (upgrade-v2)",
        "details": {...optional structured context...}
    }

Only ``ConcurrentModification`` and a still-pending multisig poll are expected
to be retried by callers in normal operation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


# ── Error Codes ──────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Standard error codes, one per distinguishable failure."""

    # Local validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_TRANSACTION = "INVALID_TRANSACTION"
    INVALID_SIGNING_ARGS = "INVALID_SIGNING_ARGS"
    UNKNOWN_ENVIRONMENT = "UNKNOWN_ENVIRONMENT"
    UNKNOWN_UPGRADE = "UNKNOWN_UPGRADE"
    UNKNOWN_STRATEGY = "UNKNOWN_STRATEGY"
    NO_ACTIVE_DEPLOY = "NO_ACTIVE_DEPLOY"

    # Action builder
    SUBPROCESS_FAILURE = "SUBPROCESS_FAILURE"
    NO_STRUCTURED_OUTPUT = "NO_STRUCTURED_OUTPUT"
    MALFORMED_OUTPUT = "MALFORMED_OUTPUT"

    # Signing backends
    DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"
    USER_REJECTED = "USER_REJECTED"
    DEVICE_TIMEOUT = "DEVICE_TIMEOUT"
    MULTISIG_SERVICE_ERROR = "MULTISIG_SERVICE_ERROR"
    CHAIN_RPC_ERROR = "CHAIN_RPC_ERROR"

    # Shared state
    DEPLOY_IN_PROGRESS = "DEPLOY_IN_PROGRESS"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    CONSISTENCY_VIOLATION = "CONSISTENCY_VIOLATION"


# ── Base ─────────────────────────────────────────────────────────────────────


class StagehandError(Exception):
    """Base class for every error Stagehand surfaces to an operator."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


# ── Validation ───────────────────────────────────────────────────────────────


class ValidationError(StagehandError):
    """Bad local input. Never retried automatically."""

    code = ErrorCode.VALIDATION_ERROR


class InvalidTransaction(ValidationError):
    code = ErrorCode.INVALID_TRANSACTION

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message, {"index": index} if index is not None else None)
        self.index = index


class InvalidSigningArgs(ValidationError):
    code = ErrorCode.INVALID_SIGNING_ARGS


class UnknownEnvironment(ValidationError):
    code = ErrorCode.UNKNOWN_ENVIRONMENT


class UnknownUpgrade(ValidationError):
    code = ErrorCode.UNKNOWN_UPGRADE


class UnknownStrategy(ValidationError):
    code = ErrorCode.UNKNOWN_STRATEGY


class NoActiveDeploy(ValidationError):
    code = ErrorCode.NO_ACTIVE_DEPLOY


# ── Action builder ───────────────────────────────────────────────────────────


class BuildError(StagehandError):
    """The upgrade script could not produce a structured result.

    Never auto-retried: a partially-run script may already have had side effects.
    """


class SubprocessFailure(BuildError):
    code = ErrorCode.SUBPROCESS_FAILURE

    def __init__(self, exit_code: int | None, stderr_tail: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Build tool exited with code {exit_code}: {stderr_tail}",
            {"exit_code": exit_code, "stderr_tail": stderr_tail},
        )
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class NoStructuredOutput(BuildError):
    code = ErrorCode.NO_STRUCTURED_OUTPUT

    def __init__(self, stdout_tail: str = "") -> None:
        super().__init__(
            "Build tool produced no structured output line (no line starting with '{')",
            {"stdout_tail": stdout_tail} if stdout_tail else None,
        )


class MalformedOutput(BuildError):
    code = ErrorCode.MALFORMED_OUTPUT

    def __init__(self, cause: str, line: str = "") -> None:
        super().__init__(f"Build tool output could not be parsed: {cause}", {"line": line[:500]})
        self.cause = cause


# ── Signing ──────────────────────────────────────────────────────────────────


class SigningError(StagehandError):
    """A signing backend failed."""


class DeviceUnavailable(SigningError):
    code = ErrorCode.DEVICE_UNAVAILABLE


class UserRejected(SigningError):
    code = ErrorCode.USER_REJECTED


class DeviceTimeout(SigningError):
    code = ErrorCode.DEVICE_TIMEOUT


class MultisigServiceError(SigningError):
    code = ErrorCode.MULTISIG_SERVICE_ERROR

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, {"status_code": status_code} if status_code else None)
        self.status_code = status_code


class ChainRPCError(StagehandError):
    code = ErrorCode.CHAIN_RPC_ERROR


# ── Shared state ─────────────────────────────────────────────────────────────


class DeployInProgress(StagehandError):
    code = ErrorCode.DEPLOY_IN_PROGRESS
    retryable = True

    def __init__(self, environment: str, upgrade_id: str) -> None:
        super().__init__(
            f"Environment '{environment}' already has an active deploy ({upgrade_id})",
            {"environment": environment, "upgrade": upgrade_id},
        )


class ConcurrentModification(StagehandError):
    code = ErrorCode.CONCURRENT_MODIFICATION
    retryable = True

    def __init__(self, path: str) -> None:
        super().__init__(
            f"{path} was modified by another operator since it was read. Refresh and try again.",
            {"path": path},
        )
        self.path = path


class ConsistencyViolation(StagehandError):
    """Persisted state broke an invariant. Fatal; never auto-corrected."""

    code = ErrorCode.CONSISTENCY_VIOLATION
