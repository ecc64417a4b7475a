"""Tests for the HTTP query surface."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from vol_query.api import create_app
from vol_query.ingestor.ledger_client import LedgerClientTransientError
from vol_query.storage.repos import (
    AssetDTO,
    AssetRepository,
    BlockRepository,
    ControlCommandRepository,
    OfferClosedReason,
    OfferDTO,
    OfferRepository,
)

ADMIN_KEY = "s3cret"


@pytest.fixture
async def client(db_manager, fake_ledger):
    app = create_app(db_manager, fake_ledger, admin_key=ADMIN_KEY)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
async def seeded(db_manager):
    async with db_manager.get_async_session() as session:
        offers = OfferRepository(session)
        for i, seller in enumerate((5, 6, 5)):
            await offers.affirm_known_offer(
                OfferDTO(
                    offer_id=f"o{i}",
                    seller_index=seller,
                    assets=[{"assetID": f"x{i}", "type": "card"}],
                    minimum_price=10 * (i + 1),
                    expiration=datetime.now(UTC) + timedelta(days=1),
                )
            )
        await offers.close_offer("o2", OfferClosedReason.CANCELLED)

        blocks = BlockRepository(session)
        await blocks.populate(50)
        for height in range(50):
            await blocks.mark_found(height, block="{}", tx_count=0)
        assets = AssetRepository(session)
        await assets.save(
            AssetDTO(asset_id="x0", owner=5, height=10, stamp_on=10, asset={}, stamp={"k": 1})
        )
        await assets.save(AssetDTO(asset_id="x1", owner=6, height=12))


class TestRoot:
    """Tests for service identity and consensus."""

    @pytest.mark.asyncio
    async def test_root(self, client) -> None:
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json() == {"type": "VOL_QUERY"}

    @pytest.mark.asyncio
    async def test_consensus(self, client, fake_ledger) -> None:
        fake_ledger.height = 42
        response = await client.get("/consensus")
        assert response.json() == {"height": 42, "digest": "abc"}

    @pytest.mark.asyncio
    async def test_consensus_ledger_down(self, client, fake_ledger, monkeypatch) -> None:
        async def down():
            raise LedgerClientTransientError("down")

        monkeypatch.setattr(fake_ledger, "get_consensus", down)
        response = await client.get("/consensus")
        assert response.status_code == 502


class TestOffersEndpoint:
    """Tests for offer searches."""

    @pytest.mark.asyncio
    async def test_open_offers(self, client, seeded) -> None:
        response = await client.get("/offers")
        body = response.json()
        assert response.status_code == 200
        assert [o["offerID"] for o in body["offers"]] == ["o0", "o1"]
        assert body["count"] == 2
        assert body["token"]

    @pytest.mark.asyncio
    async def test_all_flag_by_presence(self, client, seeded) -> None:
        body = (await client.get("/offers?all")).json()
        assert [o["offerID"] for o in body["offers"]] == ["o0", "o1", "o2"]
        assert body["offers"][2]["closed"] == "CANCELLED"

        body = (await client.get("/offers", params={"all": "false"})).json()
        assert body["count"] == 2

    @pytest.mark.asyncio
    async def test_paging_with_token(self, client, seeded) -> None:
        first = (await client.get("/offers", params={"count": 1})).json()
        second = (
            await client.get("/offers", params={"count": 1, "base": 1, "token": first["token"]})
        ).json()
        assert [o["offerID"] for o in second["offers"]] == ["o1"]
        assert "count" not in second

    @pytest.mark.asyncio
    async def test_seller_filters(self, client, seeded) -> None:
        body = (await client.get("/offers", params={"match_seller": 5})).json()
        assert [o["sellerIndex"] for o in body["offers"]] == [5]
        body = (await client.get("/offers", params={"exclude_seller": 5})).json()
        assert [o["offerID"] for o in body["offers"]] == ["o1"]

    @pytest.mark.asyncio
    async def test_bad_token(self, client, seeded) -> None:
        response = await client.get("/offers", params={"token": "garbage"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_bad_count(self, client) -> None:
        response = await client.get("/offers", params={"count": -1})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_single_offer(self, client, seeded) -> None:
        response = await client.get("/offers/o1")
        assert response.status_code == 200
        assert response.json()["offer"]["minimumPrice"] == 20

        assert (await client.get("/offers/nope")).status_code == 404


class TestStampsEndpoint:
    """Tests for stamp searches."""

    @pytest.mark.asyncio
    async def test_current_stamps(self, client, seeded) -> None:
        body = (await client.get("/stamps")).json()
        assert body["count"] == 1
        [stamp] = body["stamps"]
        assert stamp == {
            "assetID": "x0",
            "ownerIndex": 5,
            "stampOn": 10,
            "stampOff": 0,
            "asset": {},
            "stamp": {"k": 1},
        }

    @pytest.mark.asyncio
    async def test_owner_filter(self, client, seeded) -> None:
        body = (await client.get("/stamps", params={"exclude_seller": 5})).json()
        assert body["stamps"] == []


class TestCommandsEndpoint:
    """Tests for the administrative command channel."""

    @pytest.mark.asyncio
    async def test_queue_reset(self, client, db_manager) -> None:
        response = await client.post("/commands/RESET_INGEST", params={"key": ADMIN_KEY})
        assert response.status_code == 200
        assert response.json() == {"command": "RESET_INGEST", "status": "queued"}

        async with db_manager.get_async_session() as session:
            pending = await ControlCommandRepository(session).list_pending()
        assert pending.reset_requested

    @pytest.mark.asyncio
    async def test_wrong_key(self, client) -> None:
        response = await client.post("/commands/RESET_INGEST", params={"key": "nope"})
        assert response.status_code == 403
        assert (await client.post("/commands/RESET_INGEST")).status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_command(self, client) -> None:
        response = await client.post("/commands/EXPLODE", params={"key": ADMIN_KEY})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_disabled_without_admin_key(self, db_manager, fake_ledger) -> None:
        app = create_app(db_manager, fake_ledger)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            response = await c.post("/commands/RESET_INGEST", params={"key": ""})
        assert response.status_code == 403
