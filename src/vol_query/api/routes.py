"""Read-only query endpoints and the administrative command channel."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from vol_query.ingestor.ledger_client import LedgerClient, LedgerClientError
from vol_query.storage.cursor import InvalidTokenError
from vol_query.storage.database import DatabaseManager
from vol_query.storage.repos import (
    DEFAULT_PAGE_SIZE,
    AssetRepository,
    ControlCommandRepository,
    OfferQuery,
    OfferRepository,
    StampQuery,
    UnknownCommandError,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

router = APIRouter()


def get_db_manager(request: Request) -> DatabaseManager:
    return request.app.state.db_manager


def get_ledger(request: Request) -> LedgerClient:
    return request.app.state.ledger


def get_admin_key(request: Request) -> str | None:
    return request.app.state.admin_key


async def get_session(
    db: Annotated[DatabaseManager, Depends(get_db_manager)],
) -> AsyncGenerator[AsyncSession, None]:
    async with db.get_async_session() as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_session)]
LedgerDep = Annotated[LedgerClient, Depends(get_ledger)]
AdminKeyDep = Annotated[str | None, Depends(get_admin_key)]

BaseParam = Annotated[int, Query(ge=0)]
CountParam = Annotated[int, Query(ge=0, le=MAX_PAGE_SIZE)]
SellerParam = Annotated[int | None, Query()]


def _flag(value: str | None) -> bool:
    """Presence flag: ``?all`` and ``?all=1`` are true, ``?all=false`` is not."""
    if value is None:
        return False
    return value.strip().lower() not in ("0", "false", "no")


def _bad_token(err: InvalidTokenError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(err))


@router.get("/")
async def get_root() -> dict[str, str]:
    return {"type": "VOL_QUERY"}


@router.get("/consensus")
async def get_consensus(ledger: LedgerDep) -> dict[str, Any]:
    """Current ledger height and digest, as reported by the upstream node."""
    try:
        consensus = await ledger.get_consensus()
    except LedgerClientError as err:
        logger.warning("Consensus lookup failed: %s", err)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Ledger unavailable"
        ) from err
    return {"height": consensus.height, "digest": consensus.digest}


@router.get("/offers")
async def get_offers(
    session: SessionDep,
    all: Annotated[str | None, Query()] = None,
    base: BaseParam = 0,
    count: CountParam = DEFAULT_PAGE_SIZE,
    exclude_seller: SellerParam = None,
    match_seller: SellerParam = None,
    token: Annotated[str | None, Query()] = None,
) -> dict[str, Any]:
    """Search offers against a snapshot; ``count`` is returned only when starting a search."""
    query = OfferQuery(
        all=_flag(all),
        base=base,
        count=count,
        exclude_seller=exclude_seller,
        match_seller=match_seller,
        token=token or None,
    )
    try:
        page = await OfferRepository(session).get_offers(query)
    except InvalidTokenError as err:
        raise _bad_token(err) from err
    return page.to_dict()


@router.get("/offers/{offer_id}")
async def get_offer(offer_id: str, session: SessionDep) -> dict[str, Any]:
    offer = await OfferRepository(session).get_offer(offer_id)
    if offer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Offer not found")
    return {"offer": offer.to_dict()}


@router.get("/stamps")
async def get_stamps(
    session: SessionDep,
    base: BaseParam = 0,
    count: CountParam = DEFAULT_PAGE_SIZE,
    exclude_seller: SellerParam = None,
    match_seller: SellerParam = None,
    token: Annotated[str | None, Query()] = None,
) -> dict[str, Any]:
    query = StampQuery(
        base=base,
        count=count,
        exclude_seller=exclude_seller,
        match_seller=match_seller,
        token=token or None,
    )
    try:
        page = await AssetRepository(session).get_stamps(query)
    except InvalidTokenError as err:
        raise _bad_token(err) from err
    return page.to_dict()


@router.post("/commands/{command}")
async def post_command(
    command: str,
    session: SessionDep,
    admin_key: AdminKeyDep,
    key: Annotated[str | None, Query()] = None,
) -> dict[str, str]:
    """Queue an administrative command for the ingestion loop.

    Raises:
        HTTPException: 403 on a wrong or missing key, 400 on an unknown command.
    """
    if not admin_key or not key or not secrets.compare_digest(key, admin_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid key")
    try:
        queued = await ControlCommandRepository(session).push(command)
    except UnknownCommandError as err:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(err)) from err
    return {"command": queued.value, "status": "queued"}
