"""Storage layer - Database schemas, logical clock and repositories."""

from vol_query.storage.clock import LogicalClock, Nonces
from vol_query.storage.cursor import InvalidTokenError, SnapshotToken, StampToken
from vol_query.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
    reset_ingest,
)
from vol_query.storage.models import (
    AssetModel,
    Base,
    BlockModel,
    ControlCommandModel,
    NonceModel,
    OfferAssetModel,
    OfferModel,
)
from vol_query.storage.repos import (
    AssetDTO,
    AssetRepository,
    BlockDTO,
    BlockRepository,
    ControlCommand,
    ControlCommandRepository,
    OfferClosedReason,
    OfferDTO,
    OfferQuery,
    OfferRepository,
    StampQuery,
    UnknownCommandError,
)

__all__ = [
    "AssetDTO",
    "AssetModel",
    "AssetRepository",
    "Base",
    "BlockDTO",
    "BlockModel",
    "BlockRepository",
    "ControlCommand",
    "ControlCommandModel",
    "ControlCommandRepository",
    "DatabaseManager",
    "InvalidTokenError",
    "LogicalClock",
    "NonceModel",
    "Nonces",
    "OfferAssetModel",
    "OfferClosedReason",
    "OfferDTO",
    "OfferModel",
    "OfferQuery",
    "OfferRepository",
    "SnapshotToken",
    "StampQuery",
    "StampToken",
    "UnknownCommandError",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "reset_ingest",
]
