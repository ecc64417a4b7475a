"""SQLAlchemy models for persistent storage.

This module defines the database schema for raw ledger blocks, the
logical clock, marketplace offers and the per-asset stamp intervals.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BlockModel(Base):
    """Raw ledger block bodies keyed by height.

    The fetch loop owns ``found``/``block``/``tx_count``; the ingestion
    loop owns ``ingested``.
    """

    __tablename__ = "blocks"

    height: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    tx_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    block: Mapped[str | None] = mapped_column(Text, nullable=True)
    found: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ingested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_blocks_found", "found"),
        Index("idx_blocks_ingest", "ingested", "found", "tx_count"),
    )


class NonceModel(Base):
    """Singleton row holding the logical clock."""

    __tablename__ = "nonces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    origin: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    closed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class OfferModel(Base):
    """Marketplace offers.

    A row is created empty the first time an offer is referenced and is
    populated once its content becomes known (``origin_nonce > 0``).
    """

    __tablename__ = "offers"

    offer_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    seller: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assets: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    minimum_price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    expiration: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    origin_nonce: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    closed_nonce: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    closed: Mapped[str | None] = mapped_column(String(20), nullable=True)  # COMPLETED|CANCELLED

    __table_args__ = (
        Index("idx_offers_origin_nonce", "origin_nonce"),
        Index("idx_offers_seller", "seller"),
    )


class OfferAssetModel(Base):
    """Links from an offer to each asset it lists."""

    __tablename__ = "offer_assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    offer_id: Mapped[str] = mapped_column(
        String(80), ForeignKey("offers.offer_id"), nullable=False
    )
    asset_id: Mapped[str] = mapped_column(String(80), nullable=False)
    type: Mapped[str | None] = mapped_column(String(80), nullable=True)

    __table_args__ = (
        Index("idx_offer_assets_offer", "offer_id"),
        Index("idx_offer_assets_type", "type"),
    )


class AssetModel(Base):
    """Ledger assets with ownership and stamp status intervals.

    ``stamp_on``/``stamp_off`` hold the heights of the most recent
    transition into and out of stamp status; the asset is currently a
    stamp iff ``stamp_off < stamp_on``.
    """

    __tablename__ = "assets"

    asset_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    owner: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stamp_on: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stamp_off: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    asset: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    stamp: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)

    __table_args__ = (Index("idx_assets_owner", "owner"),)


class ControlCommandModel(Base):
    """Pending administrative commands, drained by the ingestion loop."""

    __tablename__ = "db_control"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    command: Mapped[str] = mapped_column(String(40), nullable=False)


# Tables rebuilt from scratch by an ingest reset.
DERIVED_TABLES = (
    OfferAssetModel.__table__,
    OfferModel.__table__,
    NonceModel.__table__,
    AssetModel.__table__,
)
