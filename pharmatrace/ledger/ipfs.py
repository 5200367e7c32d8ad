"""
Manifest fetcher for content-addressed batch manifests behind an HTTP gateway.

Gateway timeouts, connection errors, 429 and 5xx are transient and raise
ManifestUnavailableError so the event goes through the retry pipeline.
A 4xx or a body that is not a JSON object means the manifest cannot be used;
that is logged and reported as ``None`` (the batch keeps its ledger data).
"""

from __future__ import annotations

from typing import Any

import requests

from pharmatrace.exceptions import ManifestUnavailableError
from pharmatrace.logging_config import get_logger

logger = get_logger("ledger.ipfs")

DEFAULT_TIMEOUT_SECONDS = 10.0


class ManifestFetcher:
    def __init__(
        self,
        gateway_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self._gateway = gateway_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def url_for(self, ipfs_hash: str) -> str:
        cid = ipfs_hash[len("ipfs://"):] if ipfs_hash.startswith("ipfs://") else ipfs_hash
        return f"{self._gateway}/{cid}"

    def fetch(self, ipfs_hash: str) -> dict[str, Any] | None:
        url = self.url_for(ipfs_hash)
        try:
            response = self._session.get(url, timeout=self._timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise ManifestUnavailableError(ipfs_hash, str(exc)) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ManifestUnavailableError(ipfs_hash, f"gateway returned {response.status_code}")
        if response.status_code >= 400:
            logger.warning(
                "manifest_not_available",
                extra={"ipfs_hash": ipfs_hash, "status_code": response.status_code},
            )
            return None

        try:
            body = response.json()
        except ValueError:
            logger.warning("manifest_not_json", extra={"ipfs_hash": ipfs_hash})
            return None
        if not isinstance(body, dict):
            logger.warning("manifest_not_object", extra={"ipfs_hash": ipfs_hash})
            return None
        return body
