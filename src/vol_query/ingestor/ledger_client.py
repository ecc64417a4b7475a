"""Async HTTP client for the upstream ledger node.

The node is trusted: its answers are taken as-is. Absent resources are
returned as ``None``; network failures, timeouts and 5xx responses raise
``LedgerClientTransientError`` so callers can leave the work for the next
cycle.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from redis.asyncio import Redis

from vol_query.ingestor.models import (
    Consensus,
    LedgerAccount,
    LedgerAsset,
    LedgerBlock,
    LedgerOffer,
    MalformedLedgerDataError,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 5.0
DEFAULT_CACHE_TTL_SECONDS = 24 * 3600

HTTP_NOT_FOUND = 404


class LedgerClientError(Exception):
    """Base exception for ledger client errors."""


class LedgerClientNotFoundError(LedgerClientError):
    """Raised when a requested resource does not exist (e.g., 404)."""


class LedgerClientTransientError(LedgerClientError):
    """Raised for retryable errors (timeouts, network issues, 5xx)."""


class LedgerClient:
    """Client for blocks, offers, accounts and assets served by a ledger node.

    Example:
        ```python
        async with LedgerClient("http://localhost:9090") as ledger:
            height = await ledger.get_height()
            block = await ledger.get_block(height - 1)
        ```
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the ledger client.

        Args:
            base_url: Ledger node base URL.
            timeout_seconds: Fixed per-request timeout.
            redis: Optional Redis client for caching height-pinned account lookups.
            cache_ttl_seconds: Cache TTL in seconds.
            http_client: Pre-built HTTP client (tests inject a mock transport).
        """
        self._base_url = base_url.rstrip("/")
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._cache_prefix = "vol:"
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )
        logger.info(
            "Initialized LedgerClient with base_url=%s, timeout=%.1fs",
            self._base_url,
            timeout_seconds,
        )

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise LedgerClientTransientError(f"Timed out fetching {path}") from e
        except httpx.HTTPError as e:
            raise LedgerClientTransientError(f"Request for {path} failed: {e}") from e

        if response.status_code == HTTP_NOT_FOUND:
            raise LedgerClientNotFoundError(path)
        if response.status_code >= 500:
            raise LedgerClientTransientError(f"{path} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise LedgerClientError(f"{path} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise MalformedLedgerDataError(f"{path} returned invalid JSON") from e

    async def _get_optional(self, path: str, params: dict[str, Any] | None = None) -> Any | None:
        try:
            return await self._get_json(path, params)
        except LedgerClientNotFoundError:
            return None

    @staticmethod
    def _at(height: int | None) -> dict[str, Any] | None:
        return {"at": height} if height is not None else None

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def get_consensus(self) -> Consensus:
        data = await self._get_json("/consensus")
        return Consensus.from_dict(data)

    async def get_height(self) -> int:
        return (await self.get_consensus()).height

    async def get_block(self, height: int) -> LedgerBlock | None:
        data = await self._get_optional(f"/blocks/{height}")
        if not data or not data.get("block"):
            return None
        return LedgerBlock.from_dict(data["block"])

    async def get_offer(self, identifier: str, at: int | None = None) -> LedgerOffer | None:
        """Fetch an offer by offer ID or by the ID of one of its assets."""
        data = await self._get_optional(f"/offers/{identifier}", self._at(at))
        if not data:
            return None
        return LedgerOffer.from_dict(data)

    async def get_account(self, account_id: str, at: int | None = None) -> LedgerAccount | None:
        cache_key = f"{self._cache_prefix}account_index:{account_id}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return LedgerAccount(account_id=account_id, index=int(cached))

        data = await self._get_optional(f"/accounts/{account_id}", self._at(at))
        if not data or not data.get("account"):
            return None
        account = LedgerAccount.from_dict(data)
        # An account's index is assigned once and never changes.
        await self._set_cached(cache_key, str(account.index))
        return account

    async def get_asset(self, asset_id: str, at: int | None = None) -> LedgerAsset | None:
        data = await self._get_optional(f"/assets/{asset_id}", self._at(at))
        if not data or not data.get("asset"):
            return None
        return LedgerAsset.from_dict(data)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> LedgerClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
