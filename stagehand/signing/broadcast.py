"""Shared flow for strategies that sign locally and broadcast themselves.

Signed transactions are persisted before anything is sent to the node. With
a chain client the request then stays ``pending`` until every transaction has
a receipt:

  - all receipts succeeded: ``ready``
  - any receipt has ``status == 0``: ``failed``
  - not yet broadcast (the process died after persisting): sent again

Without a chain client nothing is broadcast and requests are ``ready`` as
soon as they are signed.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Any

from stagehand.core.errors import ChainRPCError
from stagehand.core.types import SignatureRequest, SignatureStatus, Transaction
from stagehand.signing.base import SigningStrategy

logger = logging.getLogger(__name__)

# Node answers to a re-sent transaction that it has already seen or mined
_ALREADY_SENT = ("already known", "known transaction", "nonce too low", "already imported")


class BroadcastingStrategy(SigningStrategy):
    """Base for ``eoa`` and ``ledger``: one signature per transaction, sent by us."""

    @abstractmethod
    def signer_address(self) -> str:
        """Address the strategy signs for."""

    @abstractmethod
    def _sign(self, payload: dict[str, Any], index: int, total: int) -> tuple[str, str]:
        """Sign one legacy transaction; return ``(raw, hash)`` as 0x-hex."""

    def _signer_metadata(self) -> dict[str, Any]:
        return {}

    def _payload(self, tx: Transaction, nonce: int) -> dict[str, Any]:
        return {
            "to": tx.to,
            "data": tx.data,
            "value": tx.value or 0,
            "gas": tx.gas or self.settings.default_gas_limit,
            "gasPrice": tx.gas_price if tx.gas_price is not None else self.settings.default_gas_price_wei,
            "nonce": tx.nonce if tx.nonce is not None else nonce,
            "chainId": self.context.environment.chain_id,
        }

    def _bind(self, transactions: list[Transaction]) -> tuple[str, list[Transaction]]:
        sender = self.signer_address()
        return sender, self.bind_sender(transactions, sender)

    def _submit(self, transactions: list[Transaction]) -> SignatureRequest:
        sender, transactions = self._bind(transactions)
        chain = self.context.chain
        base_nonce = chain.transaction_count(sender) if chain else 0

        signed_raw: list[str] = []
        tx_hashes: list[str] = []
        for index, tx in enumerate(transactions):
            raw, tx_hash = self._sign(self._payload(tx, base_nonce + index), index, len(transactions))
            signed_raw.append(raw)
            tx_hashes.append(tx_hash)

        return SignatureRequest(
            id=tx_hashes[0],
            strategy=self.id,
            status=SignatureStatus.PENDING if chain is not None else SignatureStatus.READY,
            signed_transactions=signed_raw,
            result_metadata={
                "signer": sender,
                **self._signer_metadata(),
                "transactionHashes": tx_hashes,
                "broadcast": False,
            },
        )

    # ── Broadcast & confirmation ─────────────────────────────────────

    def _dispatch(self, request: SignatureRequest) -> SignatureRequest:
        if self.context.chain is None:
            return request
        for raw in request.signed_transactions:
            self.context.chain.send_raw_transaction(raw)
        return request.model_copy(
            update={"result_metadata": {**request.result_metadata, "broadcast": True, "awaiting": "confirmations"}}
        )

    def _refresh(self, request: SignatureRequest) -> SignatureRequest:
        chain = self.context.chain
        if chain is None:
            return request

        metadata = dict(request.result_metadata)
        if not metadata.get("broadcast"):
            logger.warning("Request %s was signed but never broadcast; sending it now", request.id)
            for raw in request.signed_transactions:
                self._resend(raw)
            metadata.update(broadcast=True, awaiting="confirmations")

        receipts = [chain.transaction_receipt(tx_hash) for tx_hash in metadata.get("transactionHashes", [])]
        reverted = [
            tx_hash
            for tx_hash, receipt in zip(metadata.get("transactionHashes", []), receipts)
            if receipt is not None and int(receipt.get("status", 1)) == 0
        ]
        status = request.status
        if reverted:
            status = SignatureStatus.FAILED
            metadata["reason"] = f"transaction {reverted[0]} reverted"
        elif receipts and all(r is not None for r in receipts):
            status = SignatureStatus.READY
        if status != SignatureStatus.PENDING:
            metadata.pop("awaiting", None)
            metadata["blockNumbers"] = [r.get("blockNumber") for r in receipts if r is not None]
        return request.model_copy(update={"status": status, "result_metadata": metadata})

    def _resend(self, raw: str) -> None:
        try:
            self.context.chain.send_raw_transaction(raw)
        except ChainRPCError as exc:
            if not any(marker in str(exc).lower() for marker in _ALREADY_SENT):
                raise
            logger.info("Node already has the transaction: %s", exc.message)
