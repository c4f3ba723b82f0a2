"""Direct-key signing: a hex private key held by the operator."""

from __future__ import annotations

import logging
from functools import cached_property
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount

from stagehand.signing.broadcast import BroadcastingStrategy

logger = logging.getLogger(__name__)


def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def load_account(private_key: Any) -> LocalAccount | None:
    """Parse ``private_key`` into an account, or ``None`` if it is not one."""
    if not isinstance(private_key, str) or not private_key.strip():
        return None
    try:
        return Account.from_key(private_key.strip())
    except Exception:  # malformed hex, wrong length, out-of-range scalar
        return None


class DirectKeyStrategy(BroadcastingStrategy):
    """Signs every transaction locally and immediately.

    Without a chain client requests are ``ready`` on return. With one, nonces
    come from the node and the request is ``pending`` until the broadcast
    transactions are mined.
    """

    id = "eoa"
    description = "Signing w/ private key"

    def validate_args(self, raw: dict[str, Any]) -> bool:
        return load_account(raw.get("private_key")) is not None

    def usage(self) -> str:
        return "--private-key 0x<64 hex chars>"

    @cached_property
    def account(self) -> LocalAccount:
        return load_account(self.args["private_key"])

    def signer_address(self) -> str:
        return self.account.address

    def redacted_values(self) -> list[str]:
        key = str(self.args.get("private_key", "")).strip()
        return [key, key.removeprefix("0x")] if key else []

    def forge_invocation_args(self) -> list[str]:
        return ["--private-key", str(self.args["private_key"]).strip()]

    def _sign(self, payload: dict[str, Any], index: int, total: int) -> tuple[str, str]:
        signed = self.account.sign_transaction(payload)
        return _hex(signed.raw_transaction), _hex(signed.hash)
