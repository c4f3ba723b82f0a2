"""Safe Transaction Service client.

Only the endpoints the multisig strategy needs are wrapped:

    GET  /api/v1/safes/{safe}/                       - nonce, threshold, version
    POST /api/v1/safes/{safe}/multisig-transactions/ - propose
    GET  /api/v1/safes/{safe}/multisig-transactions/ - transactions at a nonce
    GET  /api/v1/multisig-transactions/{safeTxHash}/ - confirmations / execution
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from stagehand.core.errors import MultisigServiceError

logger = logging.getLogger(__name__)


class SafeTransactionServiceClient:
    """Synchronous client for a Safe Transaction Service deployment.

    Usage::

        with SafeTransactionServiceClient("https://safe-transaction-sepolia.safe.global") as api:
            info = api.get_safe("0x...")
            print(info["nonce"], info["threshold"])
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._max_retries = max_retries

        headers: dict[str, str] = {
            "User-Agent": "stagehand",
            "Accept": "application/json",
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    # ── Context manager ──────────────────────────────────────────────

    def __enter__(self) -> SafeTransactionServiceClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ── HTTP primitives ──────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make an HTTP request with retry logic."""
        url = f"/api/v1{path}"
        last_exc: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                resp = self._client.request(method, url, **kwargs)

                if resp.status_code == 429:
                    retry_after = int(resp.headers.get("Retry-After", "1"))
                    if attempt < self._max_retries - 1:
                        time.sleep(retry_after)
                        continue
                    raise MultisigServiceError("Safe Transaction Service rate limit exceeded", status_code=429)
                if resp.status_code >= 500 and attempt < self._max_retries - 1:
                    time.sleep(2 ** attempt)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.HTTPStatusError as exc:
                detail = exc.response.text[:500] if exc.response.content else ""
                raise MultisigServiceError(
                    f"{method} {url} failed with HTTP {exc.response.status_code}: {detail}",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.RequestError as exc:
                last_exc = exc
                if attempt < self._max_retries - 1:
                    time.sleep(2 ** attempt)
                    continue

        raise MultisigServiceError(f"{method} {url} failed after {self._max_retries} attempts: {last_exc}")

    def _get(self, path: str) -> Any:
        return self._request("GET", path).json()

    # ── Endpoints ────────────────────────────────────────────────────

    def get_safe(self, safe_address: str) -> dict[str, Any]:
        """Safe info: ``nonce``, ``threshold``, ``owners``, ``version``."""
        return self._get(f"/safes/{safe_address}/")

    def propose_transaction(self, safe_address: str, proposal: dict[str, Any]) -> None:
        """Submit a signed proposal. The service answers 201 with an empty body."""
        self._request("POST", f"/safes/{safe_address}/multisig-transactions/", json=proposal)
        logger.info("Proposed Safe transaction %s to %s", proposal.get("contractTransactionHash"), safe_address)

    def get_transactions(
        self, safe_address: str, nonce: int | None = None, executed: bool | None = None
    ) -> list[dict[str, Any]]:
        """Multisig transactions of a Safe, optionally filtered by nonce and execution."""
        params: dict[str, Any] = {}
        if nonce is not None:
            params["nonce"] = nonce
        if executed is not None:
            params["executed"] = "true" if executed else "false"
        body = self._request("GET", f"/safes/{safe_address}/multisig-transactions/", params=params).json()
        return list(body.get("results") or [])

    def get_transaction(self, safe_tx_hash: str) -> dict[str, Any] | None:
        """Proposal status, or ``None`` if the service does not know the hash."""
        try:
            return self._get(f"/multisig-transactions/{safe_tx_hash}/")
        except MultisigServiceError as exc:
            if exc.status_code == 404:
                return None
            raise
