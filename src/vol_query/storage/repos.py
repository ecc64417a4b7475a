"""Repository pattern implementations for data access.

This module provides data access abstractions for ledger blocks, offers,
assets and pending administrative commands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import ColumnElement, and_, delete, func, insert, or_, select, update

from vol_query.storage.clock import LogicalClock
from vol_query.storage.cursor import SnapshotToken, StampToken, utc_now_seconds
from vol_query.storage.models import (
    AssetModel,
    BlockModel,
    ControlCommandModel,
    OfferAssetModel,
    OfferModel,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
POPULATE_CHUNK_SIZE = 1000


class OfferClosedReason(str, Enum):
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ControlCommand(str, Enum):
    RESET_INGEST = "RESET_INGEST"


class UnknownCommandError(ValueError):
    """Raised when an administrative command is not recognized."""


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ============================================================================
# Blocks
# ============================================================================


@dataclass
class BlockDTO:
    """Data transfer object for stored ledger blocks."""

    height: int
    tx_count: int
    block: str | None
    found: bool
    ingested: bool

    @classmethod
    def from_model(cls, model: BlockModel) -> BlockDTO:
        return cls(
            height=model.height,
            tx_count=model.tx_count,
            block=model.block,
            found=model.found,
            ingested=model.ingested,
        )


class BlockRepository:
    """Repository for raw ledger blocks and their fetch/ingest flags."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(BlockModel))
        return int(result.scalar_one())

    async def get(self, height: int) -> BlockDTO | None:
        model = await self.session.get(BlockModel, height)
        return BlockDTO.from_model(model) if model else None

    async def populate(self, ledger_height: int) -> int:
        """Create empty rows for every height below ``ledger_height``.

        Returns:
            Number of rows created.
        """
        start = await self.count()
        if start >= ledger_height:
            return 0
        for chunk_start in range(start, ledger_height, POPULATE_CHUNK_SIZE):
            chunk_end = min(chunk_start + POPULATE_CHUNK_SIZE, ledger_height)
            await self.session.execute(
                insert(BlockModel),
                [
                    {"height": h, "tx_count": 0, "found": False, "ingested": False}
                    for h in range(chunk_start, chunk_end)
                ],
            )
        await self.session.flush()
        logger.debug("Created block rows %d..%d", start, ledger_height - 1)
        return ledger_height - start

    async def list_unfound(self, *, limit: int, exclude: Iterable[int] = ()) -> list[int]:
        """Heights still lacking a body, newest first."""
        stmt = select(BlockModel.height).where(BlockModel.found.is_(False))
        excluded = list(exclude)
        if excluded:
            stmt = stmt.where(BlockModel.height.not_in(excluded))
        stmt = stmt.order_by(BlockModel.height.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_found(self, height: int, *, block: str, tx_count: int) -> None:
        await self.session.execute(
            update(BlockModel)
            .where(BlockModel.height == height)
            .values(found=True, block=block, tx_count=tx_count)
        )
        await self.session.flush()

    async def next_for_ingest(self) -> BlockDTO | None:
        """Lowest found, not yet ingested block that carries transactions.

        Blocks above the lowest unfound height are held back so that
        derived state is always built in height order.
        """
        first_gap = (
            select(func.min(BlockModel.height))
            .where(BlockModel.found.is_(False))
            .scalar_subquery()
        )
        result = await self.session.execute(
            select(BlockModel)
            .where(
                BlockModel.ingested.is_(False),
                BlockModel.found.is_(True),
                BlockModel.tx_count > 0,
                or_(first_gap.is_(None), BlockModel.height < first_gap),
            )
            .order_by(BlockModel.height.asc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return BlockDTO.from_model(model) if model else None

    async def ingest_frontier(self) -> int:
        """Height below which every block is fetched and applied.

        Derived state below this height only changes again through a reset,
        so stamp snapshots are pinned here rather than at the block count.
        """
        result = await self.session.execute(
            select(func.min(BlockModel.height)).where(
                or_(
                    BlockModel.found.is_(False),
                    and_(BlockModel.ingested.is_(False), BlockModel.tx_count > 0),
                )
            )
        )
        pending = result.scalar_one_or_none()
        return pending if pending is not None else await self.count()

    async def mark_ingested(self, height: int) -> None:
        await self.session.execute(
            update(BlockModel).where(BlockModel.height == height).values(ingested=True)
        )
        await self.session.flush()


# ============================================================================
# Offers
# ============================================================================


@dataclass
class OfferDTO:
    """Data transfer object for marketplace offers."""

    offer_id: str
    seller_index: int | None = None
    assets: list[dict[str, Any]] | None = None
    minimum_price: int = 0
    expiration: datetime | None = None
    origin_nonce: int = 0
    closed_nonce: int = 0
    closed: str | None = None

    @property
    def known(self) -> bool:
        return self.origin_nonce > 0

    @property
    def asset_ids(self) -> list[str]:
        return [str(a["assetID"]) for a in self.assets or []]

    @classmethod
    def from_model(cls, model: OfferModel) -> OfferDTO:
        return cls(
            offer_id=model.offer_id,
            seller_index=model.seller,
            assets=model.assets,
            minimum_price=model.minimum_price,
            expiration=_as_utc(model.expiration),
            origin_nonce=model.origin_nonce,
            closed_nonce=model.closed_nonce,
            closed=model.closed,
        )

    def to_dict(self) -> dict[str, Any]:
        """Public representation; ``closed`` is omitted while the offer is open."""
        data: dict[str, Any] = {
            "offerID": self.offer_id,
            "sellerIndex": self.seller_index,
            "assets": self.assets,
            "minimumPrice": self.minimum_price,
            "expiration": self.expiration.isoformat() if self.expiration else None,
        }
        if self.closed:
            data["closed"] = self.closed
        return data


@dataclass
class OfferQuery:
    """Parameters for a paginated offer search."""

    all: bool = False
    base: int = 0
    count: int = DEFAULT_PAGE_SIZE
    exclude_seller: int | None = None
    match_seller: int | None = None
    token: str | None = None


@dataclass
class OfferPage:
    offers: list[OfferDTO]
    token: str
    count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "offers": [offer.to_dict() for offer in self.offers],
            "token": self.token,
        }
        if self.count is not None:
            data["count"] = self.count
        return data


class OfferRepository:
    """Repository for offers and their per-asset links.

    Mutations advance the injected logical clock; reads never touch it.
    """

    def __init__(self, session: AsyncSession, clock: LogicalClock | None = None) -> None:
        self.session = session
        self.clock = clock or LogicalClock(session)

    async def _get_model(self, offer_id: str) -> OfferModel | None:
        return await self.session.get(OfferModel, offer_id)

    async def affirm_offer(self, offer_id: str) -> OfferModel:
        """Ensure a row exists for ``offer_id``; never overwrites content."""
        model = await self._get_model(offer_id)
        if model is None:
            model = OfferModel(offer_id=offer_id, minimum_price=0, origin_nonce=0, closed_nonce=0)
            self.session.add(model)
            await self.session.flush()
        return model

    async def affirm_known_offer(self, offer: OfferDTO) -> int:
        """Record an offer's content and link rows.

        The origin nonce is assigned once, the first time the content
        becomes known; re-affirming keeps it. Link rows are replaced so
        repeated calls leave exactly one link per listed asset.

        Returns:
            The offer's origin nonce.
        """
        model = await self.affirm_offer(offer.offer_id)
        if model.origin_nonce <= 0:
            model.origin_nonce = await self.clock.advance_origin()
        model.seller = offer.seller_index
        model.assets = offer.assets
        model.minimum_price = offer.minimum_price
        model.expiration = offer.expiration

        await self.session.execute(
            delete(OfferAssetModel).where(OfferAssetModel.offer_id == offer.offer_id)
        )
        for asset in offer.assets or []:
            self.session.add(
                OfferAssetModel(
                    offer_id=offer.offer_id,
                    asset_id=str(asset["assetID"]),
                    type=asset.get("type"),
                )
            )
        await self.session.flush()
        return model.origin_nonce

    async def close_offer(self, offer_id: str, reason: OfferClosedReason) -> bool:
        """Close an offer, creating an empty row first if needed.

        Returns:
            True if the offer was closed by this call, False if it was
            already closed.
        """
        model = await self.affirm_offer(offer_id)
        if model.closed is not None:
            logger.debug("Offer %s already closed (%s)", offer_id, model.closed)
            return False
        model.closed_nonce = await self.clock.advance_closed()
        model.closed = OfferClosedReason(reason).value
        await self.session.flush()
        return True

    async def get_offer(self, offer_id: str) -> OfferDTO | None:
        model = await self._get_model(offer_id)
        return OfferDTO.from_model(model) if model else None

    async def get_offer_assets(self, offer_id: str) -> list[tuple[str, str | None]]:
        result = await self.session.execute(
            select(OfferAssetModel.asset_id, OfferAssetModel.type)
            .where(OfferAssetModel.offer_id == offer_id)
            .order_by(OfferAssetModel.id)
        )
        return [(row.asset_id, row.type) for row in result.all()]

    def _filters(self, snapshot: SnapshotToken, query: OfferQuery) -> list[ColumnElement[bool]]:
        filters: list[ColumnElement[bool]] = [
            OfferModel.origin_nonce > 0,
            OfferModel.origin_nonce <= snapshot.origin_ceiling,
        ]
        if not query.all:
            filters.append(
                or_(OfferModel.closed_nonce > snapshot.closed_floor, OfferModel.closed.is_(None))
            )
            filters.append(OfferModel.expiration > snapshot.base_utc)
        if query.exclude_seller is not None:
            filters.append(OfferModel.seller != query.exclude_seller)
        if query.match_seller is not None:
            filters.append(OfferModel.seller == query.match_seller)
        return filters

    async def get_offers(self, query: OfferQuery) -> OfferPage:
        """Page through offers against a fixed snapshot.

        Without a token a new snapshot is taken from the wall clock and
        the logical clock, and the total count is included.

        Raises:
            InvalidTokenError: If ``query.token`` cannot be decoded.
        """
        count: int | None = None
        if query.token:
            snapshot = SnapshotToken.decode(query.token)
            token = query.token
        else:
            nonces = await self.clock.current()
            snapshot = SnapshotToken(
                base_utc=utc_now_seconds(),
                origin_ceiling=nonces.origin,
                closed_floor=nonces.closed,
            )
            token = snapshot.encode()

        filters = self._filters(snapshot, query)
        if not query.token:
            result = await self.session.execute(
                select(func.count()).select_from(OfferModel).where(and_(*filters))
            )
            count = int(result.scalar_one())

        result = await self.session.execute(
            select(OfferModel)
            .where(and_(*filters))
            .order_by(OfferModel.origin_nonce.asc(), OfferModel.offer_id.asc())
            .offset(max(0, query.base))
            .limit(max(0, query.count))
        )
        offers = [OfferDTO.from_model(m) for m in result.scalars().all()]
        return OfferPage(offers=offers, token=token, count=count)


# ============================================================================
# Assets
# ============================================================================


@dataclass
class AssetDTO:
    """Data transfer object for assets and their stamp interval."""

    asset_id: str
    owner: int | None
    height: int
    stamp_on: int = 0
    stamp_off: int = 0
    asset: dict[str, Any] | None = None
    stamp: dict[str, Any] | None = None

    @property
    def is_stamp(self) -> bool:
        """Status as of the most recent refresh."""
        return self.stamp_off < self.stamp_on

    def was_stamp_at(self, height: int) -> bool:
        """Status as seen by a snapshot pinned at ``height``."""
        return self.stamp_on < height and (self.stamp_off < self.stamp_on or height <= self.stamp_off)

    @classmethod
    def from_model(cls, model: AssetModel) -> AssetDTO:
        return cls(
            asset_id=model.asset_id,
            owner=model.owner,
            height=model.height,
            stamp_on=model.stamp_on,
            stamp_off=model.stamp_off,
            asset=model.asset,
            stamp=model.stamp,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "assetID": self.asset_id,
            "ownerIndex": self.owner,
            "stampOn": self.stamp_on,
            "stampOff": self.stamp_off,
            "asset": self.asset,
            "stamp": self.stamp,
        }


@dataclass
class StampQuery:
    base: int = 0
    count: int = DEFAULT_PAGE_SIZE
    exclude_seller: int | None = None
    match_seller: int | None = None
    token: str | None = None


@dataclass
class StampPage:
    stamps: list[AssetDTO]
    token: str
    count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stamps": [stamp.to_dict() for stamp in self.stamps],
            "token": self.token,
        }
        if self.count is not None:
            data["count"] = self.count
        return data


class AssetRepository:
    """Repository for assets and stamp intervals."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, asset_id: str) -> AssetDTO | None:
        model = await self.session.get(AssetModel, asset_id)
        return AssetDTO.from_model(model) if model else None

    async def get_many(self, asset_ids: Iterable[str]) -> dict[str, AssetDTO]:
        ids = list(asset_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(AssetModel).where(AssetModel.asset_id.in_(ids)))
        return {m.asset_id: AssetDTO.from_model(m) for m in result.scalars().all()}

    async def save(self, dto: AssetDTO) -> AssetDTO:
        """Insert or update the asset row keyed by ``asset_id``."""
        model = await self.session.get(AssetModel, dto.asset_id)
        if model is None:
            model = AssetModel(asset_id=dto.asset_id)
            self.session.add(model)
        model.owner = dto.owner
        model.height = dto.height
        model.stamp_on = dto.stamp_on
        model.stamp_off = dto.stamp_off
        model.asset = dto.asset
        model.stamp = dto.stamp
        await self.session.flush()
        return dto

    async def get_stamps(self, query: StampQuery) -> StampPage:
        """Page through assets that were stamps at the snapshot height.

        Raises:
            InvalidTokenError: If ``query.token`` cannot be decoded.
        """
        count: int | None = None
        if query.token:
            snapshot = StampToken.decode(query.token)
            token = query.token
        else:
            snapshot = StampToken(height=await BlockRepository(self.session).ingest_frontier())
            token = snapshot.encode()

        height = snapshot.height
        filters: list[ColumnElement[bool]] = [
            AssetModel.stamp_on < height,
            or_(AssetModel.stamp_off < AssetModel.stamp_on, AssetModel.stamp_off >= height),
        ]
        if query.exclude_seller is not None:
            filters.append(AssetModel.owner != query.exclude_seller)
        if query.match_seller is not None:
            filters.append(AssetModel.owner == query.match_seller)

        if not query.token:
            result = await self.session.execute(
                select(func.count()).select_from(AssetModel).where(and_(*filters))
            )
            count = int(result.scalar_one())

        result = await self.session.execute(
            select(AssetModel)
            .where(and_(*filters))
            .order_by(AssetModel.stamp_on.asc(), AssetModel.asset_id.asc())
            .offset(max(0, query.base))
            .limit(max(0, query.count))
        )
        stamps = [AssetDTO.from_model(m) for m in result.scalars().all()]
        return StampPage(stamps=stamps, token=token, count=count)


# ============================================================================
# Administrative commands
# ============================================================================


@dataclass
class PendingCommands:
    ids: list[int] = field(default_factory=list)
    commands: list[ControlCommand] = field(default_factory=list)

    @property
    def reset_requested(self) -> bool:
        return ControlCommand.RESET_INGEST in self.commands


class ControlCommandRepository:
    """Queue of administrative commands applied by the ingestion loop."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def push(self, command: str) -> ControlCommand:
        try:
            parsed = ControlCommand(command)
        except ValueError as e:
            raise UnknownCommandError(f"Unknown command: {command}") from e
        self.session.add(ControlCommandModel(command=parsed.value))
        await self.session.flush()
        logger.info("Queued control command %s", parsed.value)
        return parsed

    async def list_pending(self) -> PendingCommands:
        result = await self.session.execute(
            select(ControlCommandModel).order_by(ControlCommandModel.id)
        )
        pending = PendingCommands()
        for model in result.scalars().all():
            pending.ids.append(model.id)
            try:
                pending.commands.append(ControlCommand(model.command))
            except ValueError:
                logger.warning("Discarding unknown control command %r", model.command)
        return pending

    async def acknowledge(self, pending: PendingCommands) -> None:
        """Remove commands once they have been applied."""
        if not pending.ids:
            return
        await self.session.execute(
            delete(ControlCommandModel).where(ControlCommandModel.id.in_(pending.ids))
        )
        await self.session.flush()
