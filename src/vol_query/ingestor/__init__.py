"""Ledger ingestion layer - block discovery, ingestion and stamp tracking."""

from vol_query.ingestor.accounts import AccountIndexCache
from vol_query.ingestor.fetcher import BlockFetcher, FetchPool
from vol_query.ingestor.ingester import BlockIngester
from vol_query.ingestor.ledger_client import (
    LedgerClient,
    LedgerClientError,
    LedgerClientNotFoundError,
    LedgerClientTransientError,
)
from vol_query.ingestor.models import (
    IngestionError,
    LedgerAccount,
    LedgerAsset,
    LedgerBlock,
    LedgerOffer,
    MalformedLedgerDataError,
)
from vol_query.ingestor.scheduler import FixedDelayLoop
from vol_query.ingestor.stamps import StampTracker

__all__ = [
    "AccountIndexCache",
    "BlockFetcher",
    "BlockIngester",
    "FetchPool",
    "FixedDelayLoop",
    "IngestionError",
    "LedgerAccount",
    "LedgerAsset",
    "LedgerBlock",
    "LedgerClient",
    "LedgerClientError",
    "LedgerClientNotFoundError",
    "LedgerClientTransientError",
    "LedgerOffer",
    "MalformedLedgerDataError",
    "StampTracker",
]
