"""Node access for the handful of chain calls Stagehand needs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from eth_utils import to_checksum_address
from web3 import HTTPProvider, Web3
from web3.exceptions import (
    BlockNotFound,
    TransactionIndexingInProgress,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import BaseProvider
from web3.providers.rpc.utils import ExceptionRetryConfiguration

from stagehand.core.errors import ChainRPCError

logger = logging.getLogger(__name__)

R = TypeVar("R")


class ChainClient:
    """Synchronous node client over ``web3``.

    Usage::

        chain = ChainClient("https://rpc.sepolia.org")
        nonce = chain.transaction_count("0xabc...")

    Transport errors are retried by the provider with exponential backoff.
    Everything else surfaces as :class:`ChainRPCError`.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        provider: BaseProvider | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        if provider is None:
            provider = HTTPProvider(rpc_url, request_kwargs={"timeout": timeout})
            retry: ExceptionRetryConfiguration = provider.exception_retry_configuration
            provider.exception_retry_configuration = retry.model_copy(
                update={"retries": max_retries, "backoff_factor": 0.5}
            )
        self.w3 = Web3(provider)
        # Timelocks are read from block headers; PoA chains carry oversized extraData
        self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

    def _call(self, method: str, call: Callable[[], R]) -> R:
        try:
            return call()
        except (BlockNotFound, TransactionNotFound, TransactionIndexingInProgress):
            raise
        except Web3RPCError as exc:
            raise ChainRPCError(f"{method} failed: {exc.message}", {"rpc_error": exc.message}) from exc
        except (Web3Exception, OSError) as exc:
            raise ChainRPCError(f"{method} failed: {exc}") from exc

    # ── Calls ────────────────────────────────────────────────────────

    def chain_id(self) -> int:
        return self._call("eth_chainId", lambda: self.w3.eth.chain_id)

    def transaction_count(self, address: str, block: str = "pending") -> int:
        address = to_checksum_address(address)
        return self._call("eth_getTransactionCount", lambda: self.w3.eth.get_transaction_count(address, block))

    def block_timestamp(self, block: str = "latest") -> datetime:
        """Timestamp of ``block``; used to judge on-chain timelocks."""
        try:
            header = self._call("eth_getBlockByNumber", lambda: self.w3.eth.get_block(block))
        except BlockNotFound as exc:
            raise ChainRPCError(f"Block {block} not found") from exc
        return datetime.fromtimestamp(header["timestamp"], tz=timezone.utc)

    def send_raw_transaction(self, raw_transaction: str) -> str:
        tx_hash = self._call(
            "eth_sendRawTransaction",
            lambda: Web3.to_hex(self.w3.eth.send_raw_transaction(raw_transaction)),
        )
        logger.info("Broadcast transaction %s", tx_hash)
        return tx_hash

    def transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Receipt of a mined transaction, or ``None`` while it is pending or unknown."""
        try:
            receipt = self._call("eth_getTransactionReceipt", lambda: self.w3.eth.get_transaction_receipt(tx_hash))
        except (TransactionNotFound, TransactionIndexingInProgress):
            return None
        return dict(receipt)
