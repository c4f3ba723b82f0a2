"""Hardware-wallet signing through a Ledger device.

Every device call blocks until the operator confirms on the device, bounded
by ``hardware_timeout_seconds``. Failure modes map to distinct errors:

  - DeviceUnavailable: no device, device locked, Ethereum app not open
  - UserRejected: the operator rejected the request on the device
  - DeviceTimeout: no answer within the timeout

The default transport drives the device through Foundry's ``cast``, the same
toolchain that already runs the upgrade scripts with ``--ledger``.
"""

from __future__ import annotations

import concurrent.futures
import logging
import re
import subprocess
from typing import Any, Callable, Protocol, TypeVar

from eth_utils import is_address, is_hex, keccak, to_bytes, to_checksum_address

from stagehand.builder.forge import Runner, tail
from stagehand.core.errors import DeviceTimeout, DeviceUnavailable, InvalidTransaction, SigningError, UserRejected
from stagehand.core.types import Transaction
from stagehand.signing.base import same_address
from stagehand.signing.broadcast import BroadcastingStrategy

logger = logging.getLogger(__name__)

R = TypeVar("R")

_PATH_RE = re.compile(r"^(m/)?\d+'?(/\d+'?)*$")

# Substrings of cast's stderr, lower-cased
_REJECTED = ("denied", "rejected", "0x6985", "conditions of use not satisfied")
_UNAVAILABLE = ("no ledger", "device not found", "locked", "0x5515", "0x6511", "0x6d00", "hidapi", "app is not open")


class DeviceTransport(Protocol):
    """What the strategy needs from a hardware signer."""

    def get_address(self, derivation_path: str) -> str: ...

    def sign_transaction(self, derivation_path: str, transaction: dict[str, Any]) -> str:
        """Return the RLP-encoded signed transaction as 0x-hex."""
        ...


class CastLedgerTransport:
    """Talks to a Ledger's Ethereum app via ``cast wallet address`` and ``cast mktx``."""

    def __init__(self, cast_path: str = "cast", timeout: float = 120.0, runner: Runner | None = None) -> None:
        self.cast_path = cast_path
        self.timeout = timeout
        self._runner = runner or subprocess.run

    @staticmethod
    def _full_path(derivation_path: str) -> str:
        return derivation_path if derivation_path.startswith("m/") else f"m/{derivation_path}"

    def get_address(self, derivation_path: str) -> str:
        out = self._run(["wallet", "address", "--ledger", "--mnemonic-derivation-path", self._full_path(derivation_path)])
        address = out.strip().splitlines()[-1].strip() if out.strip() else ""
        if not is_address(address):
            raise SigningError(f"cast returned no address for {derivation_path}: {tail(out, 3)}")
        return to_checksum_address(address)

    def sign_transaction(self, derivation_path: str, transaction: dict[str, Any]) -> str:
        args = ["mktx", transaction["to"]]
        if transaction["data"] and transaction["data"] != "0x":
            args.append(transaction["data"])
        args += [
            "--ledger",
            "--mnemonic-derivation-path",
            self._full_path(derivation_path),
            "--legacy",
            "--nonce",
            str(transaction["nonce"]),
            "--gas-limit",
            str(transaction["gas"]),
            "--gas-price",
            str(transaction["gasPrice"]),
            "--value",
            str(transaction["value"]),
            "--chain",
            str(transaction["chainId"]),
        ]
        out = self._run(args)
        raw = out.strip().splitlines()[-1].strip() if out.strip() else ""
        if not raw.startswith("0x") or not is_hex(raw):
            raise SigningError(f"cast returned no signed transaction: {tail(out, 3)}")
        return raw

    def _run(self, args: list[str]) -> str:
        cmd = [self.cast_path, *args]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            proc = self._runner(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise DeviceTimeout(f"No response from the hardware wallet within {self.timeout}s") from exc
        except FileNotFoundError as exc:
            raise DeviceUnavailable(f"{self.cast_path} not found on PATH; Ledger signing needs Foundry") from exc

        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            lowered = stderr.lower()
            if any(marker in lowered for marker in _REJECTED):
                raise UserRejected("Request rejected on the Ledger device")
            if any(marker in lowered for marker in _UNAVAILABLE):
                raise DeviceUnavailable(
                    "Ledger unavailable. Connect and unlock the device, then open the Ethereum app. "
                    f"({tail(stderr, 2)})"
                )
            raise SigningError(f"Ledger error: {tail(stderr, 5)}")
        return proc.stdout or ""


class HardwareWalletStrategy(BroadcastingStrategy):
    """Signs transactions on a hardware wallet, one device confirmation each."""

    id = "ledger"
    description = "Signing w/ ledger"

    def __init__(self, context, args=None, transport: DeviceTransport | None = None) -> None:
        super().__init__(context, args)
        self.transport: DeviceTransport = transport or CastLedgerTransport(
            self.settings.cast_path, timeout=self.settings.hardware_timeout_seconds
        )
        self._address: str | None = None

    def validate_args(self, raw: dict[str, Any]) -> bool:
        path = raw.get("derivation_path")
        address = raw.get("address")
        path_ok = path is None or (isinstance(path, str) and bool(_PATH_RE.match(path)))
        return path_ok and (address is None or (isinstance(address, str) and is_address(address)))

    def usage(self) -> str:
        return "[--derivation-path \"44'/60'/0'/0/0\"] [--address 0x<expected signer>]"

    @property
    def derivation_path(self) -> str:
        return str(self.args.get("derivation_path") or self.settings.ledger_derivation_path)

    def forge_invocation_args(self) -> list[str]:
        return ["--ledger", "--hd-paths", self.derivation_path.removeprefix("m/")]

    def signer_address(self) -> str:
        if self._address is None:
            self._address = self._with_timeout(lambda: self.transport.get_address(self.derivation_path))
        return self._address

    def known_address(self) -> str | None:
        """Signer address as far as it is known without touching the device."""
        if self._address is not None:
            return self._address
        if self.args.get("address"):
            return to_checksum_address(self.args["address"])
        previous = self._load()
        if previous is not None and previous.result_metadata.get("derivationPath") == self.derivation_path:
            return previous.result_metadata.get("signer")
        return None

    def _signer_metadata(self) -> dict[str, Any]:
        return {"derivationPath": self.derivation_path}

    def _with_timeout(self, call: Callable[[], R]) -> R:
        timeout = self.settings.hardware_timeout_seconds
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(call)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            raise DeviceTimeout(f"No response from the hardware wallet within {timeout}s") from exc
        finally:
            # A device call cannot be interrupted; leave it to finish in the background
            executor.shutdown(wait=False)

    def _bind(self, transactions: list[Transaction]) -> tuple[str, list[Transaction]]:
        # Senders are checked before the device is asked for anything
        expected = self.known_address()
        if expected is not None:
            self.bind_sender(transactions, expected)
        else:
            named = [(i, tx.from_) for i, tx in enumerate(transactions) if tx.from_ is not None]
            for index, sender in named[1:]:
                if not same_address(sender, named[0][1]):
                    raise InvalidTransaction(
                        f"Transaction #{index} is from {sender}, but #{named[0][0]} is from {named[0][1]}; "
                        "a Ledger path signs for one address",
                        index,
                    )

        sender = self.signer_address()
        if expected is not None and not same_address(expected, sender):
            raise SigningError(f"Ledger path {self.derivation_path} holds {sender}, expected {expected}")
        return sender, self.bind_sender(transactions, sender)

    def _sign(self, payload: dict[str, Any], index: int, total: int) -> tuple[str, str]:
        logger.info("Confirm transaction %d/%d on your Ledger", index + 1, total)
        raw = self._with_timeout(lambda: self.transport.sign_transaction(self.derivation_path, payload))
        return raw, "0x" + keccak(to_bytes(hexstr=raw)).hex()
