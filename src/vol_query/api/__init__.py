"""HTTP query surface."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware

from vol_query import __version__
from vol_query.api.routes import router
from vol_query.ingestor.ledger_client import LedgerClient
from vol_query.storage.database import DatabaseManager


def create_app(
    db_manager: DatabaseManager,
    ledger: LedgerClient,
    *,
    admin_key: str | None = None,
) -> FastAPI:
    """Build the query application around shared resources.

    The caller owns ``db_manager`` and ``ledger``; the app never closes them.
    """
    app = FastAPI(
        title="vol-query",
        description="Snapshot-consistent queries over ingested ledger state",
        version=__version__,
    )
    app.add_middleware(GZipMiddleware)
    app.state.db_manager = db_manager
    app.state.ledger = ledger
    app.state.admin_key = admin_key
    app.include_router(router)
    return app


__all__ = ["create_app", "router"]
