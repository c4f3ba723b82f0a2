"""Action builder: runs an upgrade script through ``forge script``.

The script is executed as a child process with ``--json``. Its stdout is
mostly human-readable log noise; the result is the **first** line whose
stripped text starts with ``{``:

    building...
    warning: x
    {"transactions": [...], "stateUpdates": [...]}   <- the result
    trailing

Nothing else is sniffed. Scripts must therefore never print a diagnostic
line starting with ``{`` before their result. A non-zero exit code is always
a failure, whatever stdout contains.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from typing import Callable, Sequence

from pydantic import ValidationError as PydanticValidationError

from stagehand.core.errors import MalformedOutput, NoStructuredOutput, SubprocessFailure
from stagehand.core.logging import redact
from stagehand.core.types import BuildResult

logger = logging.getLogger(__name__)

STRUCTURED_OUTPUT_FLAG = "--json"
_TAIL_LINES = 20
_TAIL_CHARS = 2000

Runner = Callable[..., "subprocess.CompletedProcess[bytes]"]


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def tail(text: str, lines: int = _TAIL_LINES) -> str:
    """Last ``lines`` lines of ``text``, capped in length."""
    out = "\n".join(text.rstrip().splitlines()[-lines:])
    return out[-_TAIL_CHARS:]


def find_structured_line(stdout: str) -> str | None:
    """Return the first line whose stripped content starts with ``{``."""
    for line in stdout.splitlines():
        stripped = line.strip()
        if stripped.startswith("{"):
            return stripped
    return None


def parse_structured_output(stdout: str) -> BuildResult:
    """Extract the build result from a script's stdout."""
    line = find_structured_line(stdout)
    if line is None:
        raise NoStructuredOutput(tail(stdout, 5))

    try:
        value = json.loads(line)
    except json.JSONDecodeError as exc:
        raise MalformedOutput(str(exc), line) from exc
    if not isinstance(value, dict):
        raise MalformedOutput(f"expected a JSON object, got {type(value).__name__}", line)

    try:
        result = BuildResult.model_validate(value)
    except PydanticValidationError as exc:
        raise MalformedOutput(f"unexpected result shape: {exc.error_count()} error(s)", line) from exc
    result.raw = value
    return result


class ActionBuilder:
    """Wraps the ``forge`` CLI to produce structured upgrade results."""

    def __init__(
        self,
        forge_path: str = "forge",
        timeout: int = 600,
        cwd: str | None = None,
        runner: Runner | None = None,
    ) -> None:
        self.forge_path = forge_path
        self.timeout = timeout
        self.cwd = cwd
        self._runner = runner or subprocess.run

    def command(self, script_path: str, args: Sequence[str]) -> list[str]:
        return [self.forge_path, "script", script_path, *args, STRUCTURED_OUTPUT_FLAG]

    def build(
        self,
        script_path: str,
        args: Sequence[str] = (),
        env: dict[str, str] | None = None,
    ) -> BuildResult:
        """Run ``script_path`` and return its structured result.

        Raises:
            SubprocessFailure: non-zero exit, timeout, or missing binary.
            NoStructuredOutput: exit 0 but no line starts with ``{``.
            MalformedOutput: the candidate line is not a valid result object.
        """
        cmd = self.command(script_path, args)
        logger.info("Running: %s", redact(" ".join(cmd)))

        start = time.monotonic()
        try:
            proc = self._runner(
                cmd,
                capture_output=True,
                cwd=self.cwd,
                env={**os.environ, **(env or {})},
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise SubprocessFailure(
                None,
                tail(redact(_decode(exc.stderr))),
                message=f"{self.forge_path} timed out after {self.timeout}s",
            ) from exc
        except FileNotFoundError as exc:
            raise SubprocessFailure(None, "", message=f"{self.forge_path} not found on PATH") from exc

        stdout = _decode(proc.stdout)
        stderr = _decode(proc.stderr)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug("forge exited %s after %.0fms", proc.returncode, elapsed_ms)

        if proc.returncode != 0:
            raise SubprocessFailure(proc.returncode, tail(redact(stderr)))

        result = parse_structured_output(stdout)
        logger.info(
            "Script %s proposed %d transaction(s)",
            os.path.basename(script_path),
            len(result.transactions),
        )
        return result
