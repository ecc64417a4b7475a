"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vol_query.ingestor.ledger_client import LedgerClientTransientError
from vol_query.ingestor.models import (
    Consensus,
    LedgerAccount,
    LedgerAsset,
    LedgerBlock,
    LedgerOffer,
)
from vol_query.storage.database import DatabaseManager
from vol_query.storage.models import Base


class FakeLedger:
    """In-memory stand-in for LedgerClient.

    Assets are kept as a per-asset history of ``(from_height, asset)`` so a
    lookup ``at`` a height sees the latest version at or below it.
    """

    def __init__(self) -> None:
        self.height = 0
        self.blocks: dict[int, LedgerBlock] = {}
        self.offers: dict[str, LedgerOffer] = {}
        self.accounts: dict[str, int] = {}
        self.assets: dict[str, list[tuple[int, LedgerAsset | None]]] = defaultdict(list)
        self.failing_blocks: set[int] = set()
        self.asset_failures: dict[str, int] = {}
        self.calls: list[tuple[str, Any]] = []

    # -- setup helpers -------------------------------------------------

    def add_block(self, height: int, transactions: list[dict[str, Any]]) -> None:
        self.blocks[height] = LedgerBlock.from_dict(
            {
                "height": height,
                "body": json.dumps(
                    {"transactions": [{"body": json.dumps(tx)} for tx in transactions]}
                ),
            }
        )
        self.height = max(self.height, height + 1)

    def add_empty_blocks(self, heights: range) -> None:
        for height in heights:
            self.add_block(height, [])

    def add_offer(
        self,
        offer_id: str,
        seller: str,
        asset_ids: list[str],
        *,
        minimum_price: int = 100,
        expiration: datetime | None = None,
    ) -> LedgerOffer:
        offer = LedgerOffer(
            offer_id=offer_id,
            seller=seller,
            assets=tuple({"assetID": a, "type": "card"} for a in asset_ids),
            minimum_price=minimum_price,
            expiration=expiration or datetime.now(UTC) + timedelta(days=1),
        )
        self.offers[offer_id] = offer
        return offer

    def set_asset(
        self,
        asset_id: str,
        from_height: int,
        *,
        owner: str | None,
        stamp: dict[str, Any] | None = None,
    ) -> None:
        payload = {"assetID": asset_id, "owner": owner}
        self.assets[asset_id].append(
            (from_height, LedgerAsset(asset_id=asset_id, owner=owner, payload=payload, stamp=stamp))
        )
        self.assets[asset_id].sort(key=lambda entry: entry[0])

    # -- LedgerClient surface ------------------------------------------

    async def get_consensus(self) -> Consensus:
        return Consensus(height=self.height, digest="abc")

    async def get_height(self) -> int:
        return self.height

    async def get_block(self, height: int) -> LedgerBlock | None:
        self.calls.append(("block", height))
        if height in self.failing_blocks:
            raise LedgerClientTransientError(f"block {height} unavailable")
        return self.blocks.get(height)

    async def get_offer(self, identifier: str, at: int | None = None) -> LedgerOffer | None:
        self.calls.append(("offer", (identifier, at)))
        if identifier in self.offers:
            return self.offers[identifier]
        for offer in self.offers.values():
            if identifier in offer.asset_ids:
                return offer
        return None

    async def get_account(self, account_id: str, at: int | None = None) -> LedgerAccount | None:
        self.calls.append(("account", (account_id, at)))
        index = self.accounts.get(account_id)
        return LedgerAccount(account_id=account_id, index=index) if index is not None else None

    async def get_asset(self, asset_id: str, at: int | None = None) -> LedgerAsset | None:
        self.calls.append(("asset", (asset_id, at)))
        remaining = self.asset_failures.get(asset_id, 0)
        if remaining:
            self.asset_failures[asset_id] = remaining - 1
            raise LedgerClientTransientError(f"asset {asset_id} unavailable")
        current: LedgerAsset | None = None
        for from_height, asset in self.assets.get(asset_id, []):
            if at is None or from_height <= at:
                current = asset
        return current

    async def aclose(self) -> None:
        pass


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine(tmp_path):
    """Create an async SQLite engine for testing.

    A file database lets concurrent sessions use separate connections.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite'}",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def db_manager(async_engine) -> DatabaseManager:
    return DatabaseManager.from_engine(async_engine)


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()
