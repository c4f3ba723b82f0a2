"""Multisig proposals against a Safe wallet.

``request_new`` computes the Safe transaction hash locally, signs it with the
proposer key and posts it to the Safe Transaction Service. The request stays
``pending`` until enough owners confirm and someone executes it on-chain;
``latest()`` discovers that from the service.

Several transactions are batched into one ``multiSend`` delegate call. The
Safe transaction hash is deterministic for a given (safe, calls, nonce), so a
proposal that was posted but never persisted is detected on retry instead of
being posted twice.
"""

from __future__ import annotations

import logging
from functools import cached_property
from typing import Any

from eth_abi import encode
from eth_abi.packed import encode_packed
from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from eth_utils import is_address, keccak, to_bytes, to_checksum_address
from packaging.version import InvalidVersion, Version

from stagehand.core.chains import safe_tx_service_url
from stagehand.core.errors import InvalidSigningArgs
from stagehand.core.types import SignatureRequest, SignatureStatus, Transaction, utcnow
from stagehand.signing.base import SigningStrategy
from stagehand.signing.eoa import load_account
from stagehand.signing.safe_api import SafeTransactionServiceClient

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MULTISEND_CALL_ONLY = "0x40A2aCCbd92BCA938b02010E17A5b8929b49130D"
MULTISEND_SELECTOR = bytes.fromhex("8d80ff0a")

CALL = 0
DELEGATE_CALL = 1

SAFE_TX_TYPES = [
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "data", "type": "bytes"},
    {"name": "operation", "type": "uint8"},
    {"name": "safeTxGas", "type": "uint256"},
    {"name": "baseGas", "type": "uint256"},
    {"name": "gasPrice", "type": "uint256"},
    {"name": "gasToken", "type": "address"},
    {"name": "refundReceiver", "type": "address"},
    {"name": "nonce", "type": "uint256"},
]


def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


# ── Safe transaction encoding ────────────────────────────────────────────────


def encode_multisend(transactions: list[Transaction]) -> str:
    """Calldata for ``multiSend(bytes)`` batching ``transactions`` as plain calls."""
    packed = b""
    for tx in transactions:
        data = to_bytes(hexstr=tx.data or "0x")
        packed += encode_packed(
            ["uint8", "address", "uint256", "uint256", "bytes"],
            [CALL, to_checksum_address(tx.to), tx.value or 0, len(data), data],
        )
    return _hex(MULTISEND_SELECTOR + encode(["bytes"], [packed]))


def _legacy_domain(safe_version: str) -> bool:
    try:
        return Version(safe_version.split("+")[0]) < Version("1.3.0")
    except InvalidVersion:
        return False


def safe_tx_message(
    safe_address: str,
    chain_id: int,
    *,
    to: str,
    value: int,
    data: str,
    operation: int,
    nonce: int,
    safe_version: str = "1.3.0",
) -> SignableMessage:
    """EIP-712 ``SafeTx`` message. Gas refunds are not used.

    Safes before 1.3.0 sign over a domain without the chain id.
    """
    if _legacy_domain(safe_version):
        domain_types = [{"name": "verifyingContract", "type": "address"}]
        domain: dict[str, Any] = {"verifyingContract": to_checksum_address(safe_address)}
    else:
        domain_types = [
            {"name": "chainId", "type": "uint256"},
            {"name": "verifyingContract", "type": "address"},
        ]
        domain = {"chainId": chain_id, "verifyingContract": to_checksum_address(safe_address)}

    return encode_typed_data(
        full_message={
            "types": {"EIP712Domain": domain_types, "SafeTx": SAFE_TX_TYPES},
            "primaryType": "SafeTx",
            "domain": domain,
            "message": {
                "to": to_checksum_address(to),
                "value": value,
                "data": to_bytes(hexstr=data or "0x"),
                "operation": operation,
                "safeTxGas": 0,
                "baseGas": 0,
                "gasPrice": 0,
                "gasToken": ZERO_ADDRESS,
                "refundReceiver": ZERO_ADDRESS,
                "nonce": nonce,
            },
        }
    )


def message_hash(message: SignableMessage) -> str:
    """The EIP-191 digest owners sign, i.e. the ``safeTxHash``."""
    return _hex(keccak(b"\x19" + message.version + message.header + message.body))


def safe_tx_hash(safe_address: str, chain_id: int, **fields: Any) -> str:
    """The hash owners sign to approve a Safe transaction."""
    return message_hash(safe_tx_message(safe_address, chain_id, **fields))


# ── Strategy ─────────────────────────────────────────────────────────────────


class MultisigProposalStrategy(SigningStrategy):
    """Proposes transactions to a Safe and tracks owner approval."""

    id = "multisig"
    description = "Proposing to a Safe multisig"

    def __init__(self, context, args=None, client: SafeTransactionServiceClient | None = None) -> None:
        super().__init__(context, args)
        self._client = client

    def validate_args(self, raw: dict[str, Any]) -> bool:
        if not is_address(raw.get("safe_address")):
            return False
        if load_account(raw.get("private_key")) is None:
            return False
        multisend = raw.get("multisend_address")
        return multisend is None or is_address(multisend)

    def usage(self) -> str:
        return "--safe-address 0x<safe> --private-key 0x<proposer key> [--service-url URL]"

    def redacted_values(self) -> list[str]:
        key = str(self.args.get("private_key", "")).strip()
        return [key, key.removeprefix("0x")] if key else []

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def safe_address(self) -> str:
        return to_checksum_address(self.args["safe_address"])

    @property
    def multisend_address(self) -> str:
        return to_checksum_address(self.args.get("multisend_address") or MULTISEND_CALL_ONLY)

    @cached_property
    def proposer(self):
        return load_account(self.args["private_key"])

    @property
    def client(self) -> SafeTransactionServiceClient:
        if self._client is None:
            chain_id = self.context.environment.chain_id
            url = safe_tx_service_url(chain_id, self.args.get("service_url") or self.settings.safe_tx_service_url)
            if not url:
                raise InvalidSigningArgs(
                    f"No Safe Transaction Service known for chain {chain_id}; pass --service-url"
                )
            self._client = SafeTransactionServiceClient(
                url,
                api_key=self.args.get("api_key"),
                timeout=self.settings.http_timeout_seconds,
                max_retries=self.settings.http_max_retries,
            )
        return self._client

    def forge_invocation_args(self) -> list[str]:
        return ["--sender", self.safe_address]

    # ── Proposal ─────────────────────────────────────────────────────

    def batch(self, transactions: list[Transaction]) -> tuple[str, int, str, int]:
        """Collapse ``transactions`` into one Safe call: (to, value, data, operation)."""
        if len(transactions) == 1:
            tx = transactions[0]
            return tx.to, tx.value or 0, tx.data or "0x", CALL
        return self.multisend_address, 0, encode_multisend(transactions), DELEGATE_CALL

    def _submit(self, transactions: list[Transaction]) -> SignatureRequest:
        transactions = self.bind_sender(transactions, self.safe_address)
        safe = self.client.get_safe(self.safe_address)
        nonce = int(self.args["nonce"]) if self.args.get("nonce") is not None else int(safe["nonce"])
        version = str(safe.get("version") or "1.3.0")
        to, value, data, operation = self.batch(transactions)
        return self._propose(to, value, data, operation, nonce, version, calls=len(transactions))

    def _propose(
        self,
        to: str,
        value: int,
        data: str,
        operation: int,
        nonce: int,
        version: str,
        calls: int = 1,
    ) -> SignatureRequest:
        chain_id = self.context.environment.chain_id
        message = safe_tx_message(
            self.safe_address,
            chain_id,
            to=to,
            value=value,
            data=data,
            operation=operation,
            nonce=nonce,
            safe_version=version,
        )
        tx_hash = message_hash(message)

        if self.client.get_transaction(tx_hash) is not None:
            logger.warning("Safe transaction %s was already proposed; reusing it", tx_hash)
        else:
            signed = Account.sign_message(message, self.proposer.key)
            self.client.propose_transaction(
                self.safe_address,
                {
                    "to": to_checksum_address(to),
                    "value": str(value),
                    "data": data if data != "0x" else None,
                    "operation": operation,
                    "safeTxGas": "0",
                    "baseGas": "0",
                    "gasPrice": "0",
                    "gasToken": ZERO_ADDRESS,
                    "refundReceiver": ZERO_ADDRESS,
                    "nonce": nonce,
                    "contractTransactionHash": tx_hash,
                    "sender": self.proposer.address,
                    "signature": _hex(signed.signature),
                    "origin": "stagehand",
                },
            )

        return SignatureRequest(
            id=tx_hash,
            strategy=self.id,
            status=SignatureStatus.PENDING,
            result_metadata={
                "safeAddress": self.safe_address,
                "safeTxHash": tx_hash,
                "nonce": nonce,
                "proposer": self.proposer.address,
                "operation": operation,
                "calls": calls,
                "confirmations": 1,
            },
        )

    # ── Tracking ─────────────────────────────────────────────────────

    def _refresh(self, request: SignatureRequest) -> SignatureRequest:
        refreshed = request.model_copy(deep=True)
        info = self.client.get_transaction(request.id)
        if info is None:
            # Service not indexed yet
            return refreshed

        meta = refreshed.result_metadata
        meta["confirmations"] = len(info.get("confirmations") or [])
        if info.get("confirmationsRequired") is not None:
            meta["confirmationsRequired"] = info["confirmationsRequired"]

        if info.get("isExecuted"):
            meta["transactionHash"] = info.get("transactionHash")
            if info.get("isSuccessful") is False:
                refreshed.status = SignatureStatus.FAILED
                meta["reason"] = "executed but reverted"
            else:
                refreshed.status = SignatureStatus.READY
                if info.get("transactionHash"):
                    refreshed.signed_transactions = [info["transactionHash"]]
            return refreshed

        nonce = int(info.get("nonce", meta.get("nonce", 0)))
        if int(self.client.get_safe(self.safe_address)["nonce"]) <= nonce:
            return refreshed

        # isExecuted lags the live nonce; only another executed transaction at
        # this nonce rules ours out
        executed = self.client.get_transactions(self.safe_address, nonce=nonce, executed=True)
        replacement = next(
            (t for t in executed if str(t.get("safeTxHash", "")).lower() != request.id.lower()),
            None,
        )
        if replacement is not None:
            refreshed.status = SignatureStatus.FAILED
            meta["reason"] = f"nonce {nonce} was used by Safe transaction {replacement.get('safeTxHash')}"
        else:
            logger.info("Safe nonce passed %d; waiting for the service to index execution of %s", nonce, request.id)
        return refreshed

    def cancel(self) -> None:
        """Propose an empty rejection at the same nonce, then mark the request failed.

        The rejection still needs owner approval to take effect on-chain.
        """
        request = self._load()
        if request is None or not request.is_pending:
            return
        nonce = int(request.result_metadata["nonce"])
        version = str(self.client.get_safe(self.safe_address).get("version") or "1.3.0")
        rejection = self._propose(self.safe_address, 0, "0x", CALL, nonce, version)
        logger.info("Proposed rejection %s for Safe nonce %d", rejection.id, nonce)

        request.status = SignatureStatus.FAILED
        request.result_metadata["cancelled"] = True
        request.result_metadata["rejectionSafeTxHash"] = rejection.id
        request.updated_at = utcnow()
        self._save(request)
