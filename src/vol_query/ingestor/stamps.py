"""Asset ownership and stamp status tracking.

An asset is a stamp while it is owned by a known account and carries
stamp metadata. Each status change is recorded by moving exactly one side
of a two-height interval:

- ``stamp_on``: height of the latest transition into stamp status
- ``stamp_off``: height of the latest transition out of it

The asset is currently a stamp iff ``stamp_off < stamp_on``, and a
snapshot pinned at height ``S`` sees it as a stamp iff
``stamp_on < S`` and (``stamp_off < stamp_on`` or ``S <= stamp_off``).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vol_query.ingestor.models import IngestionError, LedgerAsset
from vol_query.storage.repos import AssetDTO, AssetRepository

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from vol_query.ingestor.accounts import AccountIndexCache
    from vol_query.ingestor.ledger_client import LedgerClient

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 32
DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class ResolvedAsset:
    """Ledger view of an asset at a height, with its owner resolved to an index."""

    asset_id: str
    owner_index: int | None
    asset: LedgerAsset | None

    @property
    def is_stamp(self) -> bool:
        return (
            self.owner_index is not None
            and self.asset is not None
            and self.asset.stamp is not None
        )


def apply_stamp_transition(
    previous: AssetDTO | None, resolved: ResolvedAsset, height: int
) -> AssetDTO:
    """Compute an asset's stored state after a refresh at ``height``."""
    is_stamp = resolved.is_stamp
    payload = resolved.asset.payload if resolved.asset else None
    stamp = resolved.asset.stamp if resolved.asset else None

    if previous is None:
        return AssetDTO(
            asset_id=resolved.asset_id,
            owner=resolved.owner_index,
            height=height,
            stamp_on=height if is_stamp else 0,
            stamp_off=0,
            asset=payload,
            stamp=stamp,
        )

    stamp_on = previous.stamp_on
    stamp_off = previous.stamp_off
    if is_stamp and not previous.is_stamp:
        stamp_on = height
    elif not is_stamp and previous.is_stamp:
        stamp_off = height

    return AssetDTO(
        asset_id=resolved.asset_id,
        owner=resolved.owner_index,
        height=height,
        stamp_on=stamp_on,
        stamp_off=stamp_off,
        asset=payload,
        stamp=stamp,
    )


class StampTracker:
    """Refreshes touched assets from the ledger and maintains stamp intervals."""

    def __init__(
        self,
        ledger: LedgerClient,
        accounts: AccountIndexCache,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._ledger = ledger
        self._accounts = accounts
        self._batch_size = batch_size
        self._max_attempts = max_attempts

    async def _resolve(self, asset_id: str, height: int) -> ResolvedAsset:
        asset = await self._ledger.get_asset(asset_id, height)
        owner_index: int | None = None
        if asset is not None and asset.owner:
            owner_index = await self._accounts.resolve(asset.owner, height)
        return ResolvedAsset(asset_id=asset_id, owner_index=owner_index, asset=asset)

    async def _resolve_all(self, asset_ids: list[str], height: int) -> dict[str, ResolvedAsset]:
        resolved: dict[str, ResolvedAsset] = {}
        remaining = list(asset_ids)

        for attempt in range(1, self._max_attempts + 1):
            failed: list[str] = []
            for start in range(0, len(remaining), self._batch_size):
                batch = remaining[start : start + self._batch_size]
                results = await asyncio.gather(
                    *(self._resolve(asset_id, height) for asset_id in batch),
                    return_exceptions=True,
                )
                for asset_id, result in zip(batch, results, strict=True):
                    if isinstance(result, BaseException):
                        logger.warning(
                            "Asset %s fetch failed at height %d (attempt %d/%d): %s",
                            asset_id,
                            height,
                            attempt,
                            self._max_attempts,
                            result,
                        )
                        failed.append(asset_id)
                    else:
                        resolved[asset_id] = result
            if not failed:
                return resolved
            remaining = failed

        raise IngestionError(
            f"Could not fetch {len(remaining)} asset(s) at height {height}: {remaining[:5]}"
        )

    async def fetch_stale(
        self, session: AsyncSession, asset_ids: Iterable[str], height: int
    ) -> dict[str, ResolvedAsset]:
        """Fetch the ledger view of every touched asset that is behind ``height``.

        Only reads from ``session``, so callers can run it before opening
        the transaction that writes the results.

        Raises:
            IngestionError: If some assets could not be fetched.
        """
        ids = list(dict.fromkeys(asset_ids))
        if not ids:
            return {}

        existing = await AssetRepository(session).get_many(ids)
        stale = [
            asset_id
            for asset_id in ids
            if asset_id not in existing or existing[asset_id].height < height
        ]
        if not stale:
            return {}
        logger.debug("Fetching %d/%d touched assets at height %d", len(stale), len(ids), height)
        return await self._resolve_all(stale, height)

    async def apply(
        self, session: AsyncSession, resolved: dict[str, ResolvedAsset], height: int
    ) -> list[AssetDTO]:
        """Write fetched assets, moving stamp intervals where status flipped.

        Assets already stored at ``height`` or later are left alone.
        """
        if not resolved:
            return []

        repo = AssetRepository(session)
        existing = await repo.get_many(resolved)
        written: list[AssetDTO] = []
        for asset_id, current in resolved.items():
            previous = existing.get(asset_id)
            if previous is not None and previous.height >= height:
                continue
            dto = apply_stamp_transition(previous, current, height)
            if previous is not None and previous.is_stamp != dto.is_stamp:
                logger.info(
                    "Asset %s %s a stamp at height %d",
                    asset_id,
                    "became" if dto.is_stamp else "stopped being",
                    height,
                )
            await repo.save(dto)
            written.append(dto)
        return written

    async def refresh(
        self, session: AsyncSession, asset_ids: Iterable[str], height: int
    ) -> list[AssetDTO]:
        """Bring every touched asset up to ``height``.

        Unknown assets are always fetched; known assets are fetched only
        when their stored height is behind. Assets already at ``height``
        are skipped, so re-running a block is a no-op here.

        Returns:
            The assets written by this call.

        Raises:
            IngestionError: If some assets could not be fetched.
        """
        resolved = await self.fetch_stale(session, asset_ids, height)
        return await self.apply(session, resolved, height)
