"""Tests for block ingestion."""

import asyncio

import pytest

from vol_query.ingestor.accounts import AccountIndexCache
from vol_query.ingestor.fetcher import BlockFetcher
from vol_query.ingestor.ingester import AffirmOffer, BlockIngester, BlockPlan, CloseOffer
from vol_query.ingestor.models import IngestionError, RunScript
from vol_query.storage.clock import LogicalClock
from vol_query.storage.repos import (
    AssetRepository,
    BlockRepository,
    ControlCommandRepository,
    OfferQuery,
    OfferRepository,
)

STAMP = {"kind": "gold"}


async def _sync(db_manager, fake_ledger, **kwargs):
    await BlockFetcher(db_manager, fake_ledger).run_once()
    return await BlockIngester(db_manager, fake_ledger, **kwargs).run_once()


@pytest.fixture
def market(fake_ledger):
    """Ledger where alice (index 5) lists stamp asset x1 in offer o1 at height 3."""
    fake_ledger.accounts["alice"] = 5
    fake_ledger.accounts["bob"] = 9
    fake_ledger.set_asset("x1", 0, owner="alice", stamp=STAMP)
    fake_ledger.add_offer("o1", "alice", ["x1"])
    fake_ledger.add_empty_blocks(range(3))
    fake_ledger.add_block(3, [{"type": "OFFER_ASSETS", "assetIdentifiers": ["x1"]}])
    return fake_ledger


class TestOfferIngestion:
    """Tests for offer lifecycle transactions."""

    @pytest.mark.asyncio
    async def test_offer_assets_creates_known_offer(self, db_manager, market) -> None:
        result = await _sync(db_manager, market)
        assert result.ingested == 1
        assert result.aborted_at is None

        async with db_manager.get_async_session() as session:
            offers = OfferRepository(session)
            offer = await offers.get_offer("o1")
            assert offer is not None
            assert offer.seller_index == 5
            assert offer.origin_nonce == 1
            assert offer.closed is None
            assert await offers.get_offer_assets("o1") == [("x1", "card")]

            asset = await AssetRepository(session).get("x1")
            assert asset is not None
            assert asset.owner == 5
            assert asset.stamp_on == 3
            assert asset.height == 3

            block = await BlockRepository(session).get(3)
            assert block is not None and block.ingested

    @pytest.mark.asyncio
    async def test_buy_assets_completes_offer(self, db_manager, market) -> None:
        await _sync(db_manager, market)
        market.set_asset("x1", 4, owner="bob", stamp=STAMP)
        market.add_block(4, [{"type": "BUY_ASSETS", "offerID": "o1"}])

        result = await _sync(db_manager, market)
        assert result.ingested == 1

        async with db_manager.get_async_session() as session:
            offer = await OfferRepository(session).get_offer("o1")
            assert offer is not None
            assert offer.closed == "COMPLETED"
            assert offer.closed_nonce == 1

            asset = await AssetRepository(session).get("x1")
            assert asset is not None
            assert asset.owner == 9
            assert asset.height == 4

    @pytest.mark.asyncio
    async def test_cancel_offer_looks_up_previous_height(self, db_manager, market) -> None:
        await _sync(db_manager, market)
        market.add_block(4, [{"type": "CANCEL_OFFER", "identifier": "x1"}])

        await _sync(db_manager, market)

        assert ("offer", ("x1", 3)) in market.calls
        async with db_manager.get_async_session() as session:
            offer = await OfferRepository(session).get_offer("o1")
        assert offer is not None
        assert offer.closed == "CANCELLED"

    @pytest.mark.asyncio
    async def test_snapshot_taken_before_close_still_lists_offer(
        self, db_manager, market
    ) -> None:
        await _sync(db_manager, market)
        async with db_manager.get_async_session() as session:
            first = await OfferRepository(session).get_offers(OfferQuery())
        assert [o.offer_id for o in first.offers] == ["o1"]

        market.add_block(4, [{"type": "BUY_ASSETS", "offerID": "o1"}])
        await _sync(db_manager, market)

        async with db_manager.get_async_session() as session:
            offers = OfferRepository(session)
            pinned = await offers.get_offers(OfferQuery(token=first.token))
            fresh = await offers.get_offers(OfferQuery())
        assert [o.offer_id for o in pinned.offers] == ["o1"]
        assert fresh.offers == []
        assert fresh.count == 0

    @pytest.mark.asyncio
    async def test_buy_of_unknown_offer_creates_closed_row(self, db_manager, fake_ledger) -> None:
        fake_ledger.add_block(0, [{"type": "BUY_ASSETS", "offerID": "mystery"}])

        result = await _sync(db_manager, fake_ledger)
        assert result.ingested == 1

        async with db_manager.get_async_session() as session:
            offer = await OfferRepository(session).get_offer("mystery")
        assert offer is not None
        assert not offer.known
        assert offer.closed == "COMPLETED"


class TestAssetTouches:
    """Tests for transactions that only touch assets."""

    @pytest.mark.asyncio
    async def test_send_and_run_script_refresh_assets(self, db_manager, fake_ledger) -> None:
        fake_ledger.accounts["alice"] = 5
        for asset_id in ("x1", "x2", "x3"):
            fake_ledger.set_asset(asset_id, 0, owner="alice", stamp=STAMP)
        fake_ledger.add_block(0, [])
        fake_ledger.add_block(1, [{"type": "SEND_ASSETS", "assetIdentifiers": ["x1"]}])
        fake_ledger.add_block(
            2,
            [
                {
                    "type": "RUN_SCRIPT",
                    "invocations": [{"assetParams": {"a": "x2", "b": ["x3", "x1"]}}],
                }
            ],
        )

        result = await _sync(db_manager, fake_ledger)
        assert result.ingested == 2

        async with db_manager.get_async_session() as session:
            assets = await AssetRepository(session).get_many(["x1", "x2", "x3"])
        assert {a.asset_id: a.height for a in assets.values()} == {"x1": 2, "x2": 2, "x3": 2}
        assert {a.asset_id: a.stamp_on for a in assets.values()} == {"x1": 1, "x2": 2, "x3": 2}
        assert all(a.is_stamp for a in assets.values())

    @pytest.mark.asyncio
    async def test_ignored_transactions(self, db_manager, fake_ledger) -> None:
        fake_ledger.add_block(0, [{"type": "CREATE_ACCOUNT", "name": "carol"}])

        result = await _sync(db_manager, fake_ledger)
        assert result.ingested == 1
        assert [c for c in fake_ledger.calls if c[0] == "asset"] == []

    @pytest.mark.asyncio
    async def test_plan_transaction_reports_touched_ids(self, db_manager, fake_ledger) -> None:
        ingester = BlockIngester(db_manager, fake_ledger)
        plan = BlockPlan(height=0)
        async with db_manager.get_async_session() as session:
            touched = await ingester.plan_transaction(
                OfferRepository(session),
                RunScript(invocations=({"assetParams": {"a": "x1", "b": "x1"}},)),
                plan,
            )
        assert touched == ["x1", "x1"]
        assert plan.changes == []


class TestIngestionFailures:
    """Tests for abort and retry behavior."""

    @pytest.mark.asyncio
    async def test_failure_rolls_back_block(self, db_manager, market) -> None:
        market.asset_failures["x1"] = 100
        ingester_kwargs = {"asset_fetch_attempts": 2}

        result = await _sync(db_manager, market, **ingester_kwargs)
        assert result.ingested == 0
        assert result.aborted_at == 3
        assert result.last_error

        async with db_manager.get_async_session() as session:
            block = await BlockRepository(session).get(3)
            assert block is not None and not block.ingested
            assert await OfferRepository(session).get_offer("o1") is None
            assert (await LogicalClock(session).current()).origin == 0

        market.asset_failures.clear()
        retry = await BlockIngester(db_manager, market).run_once()
        assert retry.ingested == 1
        async with db_manager.get_async_session() as session:
            offer = await OfferRepository(session).get_offer("o1")
        assert offer is not None and offer.origin_nonce == 1

    @pytest.mark.asyncio
    async def test_failure_stops_pass(self, db_manager, fake_ledger) -> None:
        fake_ledger.add_block(0, [{"type": "CANCEL_OFFER", "identifier": "nothing"}])
        fake_ledger.add_block(1, [{"type": "BUY_ASSETS", "offerID": "o9"}])

        result = await _sync(db_manager, fake_ledger)
        assert result.ingested == 0
        assert result.aborted_at == 0

        async with db_manager.get_async_session() as session:
            assert await OfferRepository(session).get_offer("o9") is None

    @pytest.mark.asyncio
    async def test_missing_seller_aborts(self, db_manager, market) -> None:
        del market.accounts["alice"]
        result = await _sync(db_manager, market, accounts=AccountIndexCache(market))
        assert result.aborted_at == 3

    @pytest.mark.asyncio
    async def test_ingest_block_rejects_unfetched_body(self, db_manager, fake_ledger) -> None:
        async with db_manager.get_async_session() as session:
            blocks = BlockRepository(session)
            await blocks.populate(1)
            block = await blocks.get(0)
        assert block is not None

        ingester = BlockIngester(db_manager, fake_ledger)
        with pytest.raises(IngestionError):
            await ingester.ingest_block(block)


class TestControlCommands:
    """Tests for administrative commands applied by the ingester."""

    @pytest.mark.asyncio
    async def test_reset_rebuilds_derived_state(self, db_manager, market) -> None:
        await _sync(db_manager, market)
        async with db_manager.get_async_session() as session:
            await ControlCommandRepository(session).push("RESET_INGEST")

        result = await BlockIngester(db_manager, market).run_once()
        assert result.reset
        assert result.ingested == 1

        async with db_manager.get_async_session() as session:
            offer = await OfferRepository(session).get_offer("o1")
            assert offer is not None
            assert offer.origin_nonce == 1
            assert (await LogicalClock(session).current()).origin == 1
            assert (await ControlCommandRepository(session).list_pending()).ids == []
            assert await BlockRepository(session).count() == 4

    @pytest.mark.asyncio
    async def test_no_commands_no_reset(self, db_manager, fake_ledger) -> None:
        result = await BlockIngester(db_manager, fake_ledger).run_once()
        assert not result.reset
        assert result.ingested == 0


class TestIdempotence:
    """Re-applying a block must leave the clock and asset rows unchanged."""

    @pytest.mark.asyncio
    async def test_reapplying_blocks(self, db_manager, market) -> None:
        market.add_block(4, [{"type": "BUY_ASSETS", "offerID": "o1"}])
        await _sync(db_manager, market)

        ingester = BlockIngester(db_manager, market)
        async with db_manager.get_async_session() as session:
            before = await LogicalClock(session).current()
            blocks = BlockRepository(session)
            stored = [await blocks.get(height) for height in (3, 4)]
        for block in stored:
            assert block is not None
            await ingester.ingest_block(block)

        async with db_manager.get_async_session() as session:
            after = await LogicalClock(session).current()
            offers = OfferRepository(session)
            offer = await offers.get_offer("o1")
            links = await offers.get_offer_assets("o1")
            assets = await AssetRepository(session).get_many(["x1"])

        assert after == before
        assert offer is not None and offer.closed == "COMPLETED"
        assert links == [("x1", "card")]
        assert list(assets) == ["x1"]


class TestBlockPlanning:
    """Tests for the read-only planning step and the write step."""

    @pytest.mark.asyncio
    async def test_buy_of_offer_listed_earlier_in_block(self, db_manager, fake_ledger) -> None:
        fake_ledger.accounts["alice"] = 5
        fake_ledger.set_asset("x1", 0, owner="alice", stamp=STAMP)
        fake_ledger.add_offer("o1", "alice", ["x1"])
        fake_ledger.add_block(
            0,
            [
                {"type": "OFFER_ASSETS", "assetIdentifiers": ["x1"]},
                {"type": "BUY_ASSETS", "offerID": "o1"},
            ],
        )
        await BlockFetcher(db_manager, fake_ledger).run_once()
        async with db_manager.get_async_session() as session:
            block = await BlockRepository(session).get(0)
        assert block is not None

        ingester = BlockIngester(db_manager, fake_ledger)
        plan = await ingester.plan_block(block)
        assert [type(c) for c in plan.changes] == [AffirmOffer, CloseOffer]
        assert plan.touched == ["x1"]
        assert list(plan.assets) == ["x1"]

        async with db_manager.get_async_session() as session:
            assert await OfferRepository(session).get_offer("o1") is None
            assert not (await BlockRepository(session).get(0)).ingested

        async with db_manager.get_async_session() as session:
            await ingester.apply_plan(session, plan)

        async with db_manager.get_async_session() as session:
            offer = await OfferRepository(session).get_offer("o1")
            assert offer is not None
            assert (offer.origin_nonce, offer.closed_nonce) == (1, 1)
            assert offer.closed == "COMPLETED"
            assert (await BlockRepository(session).get(0)).ingested

    @pytest.mark.asyncio
    async def test_fetcher_writes_while_ingest_waits_on_ledger(
        self, db_manager, market, monkeypatch
    ) -> None:
        market.add_block(4, [{"type": "OFFER_ASSETS", "assetIdentifiers": ["x1"]}])
        await BlockFetcher(db_manager, market).run_once()
        market.add_block(5, [])

        waiting = asyncio.Event()
        release = asyncio.Event()
        get_asset = market.get_asset

        async def slow_get_asset(asset_id, at=None):
            waiting.set()
            await release.wait()
            return await get_asset(asset_id, at)

        monkeypatch.setattr(market, "get_asset", slow_get_asset)
        ingest = asyncio.create_task(BlockIngester(db_manager, market).run_once())
        await asyncio.wait_for(waiting.wait(), timeout=2)

        fetcher = BlockFetcher(db_manager, market)

        async def fetch_new_block() -> bool:
            async with db_manager.get_async_session() as session:
                await BlockRepository(session).populate(market.height)
            return await fetcher._fetch_block(5)

        try:
            assert await asyncio.wait_for(fetch_new_block(), timeout=3)
        finally:
            release.set()
        result = await asyncio.wait_for(ingest, timeout=3)

        assert result.ingested == 2
        assert result.aborted_at is None
        async with db_manager.get_async_session() as session:
            block = await BlockRepository(session).get(5)
        assert block is not None and block.found
