"""Main pipeline orchestrator for vol-query.

This module provides the Pipeline class that wires the block fetcher and
the block ingester to shared storage and ledger resources, and runs each
on its own fixed-delay loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from vol_query.config import Settings, get_settings
from vol_query.ingestor.accounts import AccountIndexCache
from vol_query.ingestor.fetcher import BlockFetcher
from vol_query.ingestor.ingester import BlockIngester
from vol_query.ingestor.ledger_client import LedgerClient
from vol_query.ingestor.scheduler import FixedDelayLoop, LoopStats
from vol_query.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    fetch: LoopStats | None = None
    ingest: LoopStats | None = None
    last_error: str | None = None


class Pipeline:
    """Runs block fetching and block ingestion against one database.

    Pipeline flow:
        Ledger node -> BlockFetcher -> blocks table -> BlockIngester -> offers/assets

    Example:
        ```python
        pipeline = Pipeline(get_settings())
        await pipeline.start()
        app = create_app(pipeline.db_manager, pipeline.ledger)
        ...
        await pipeline.stop()
        ```
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
        """
        self._settings = settings or get_settings()
        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()
        self._stop_event: asyncio.Event | None = None

        self._db_manager: DatabaseManager | None = None
        self._redis: Redis | None = None
        self._ledger: LedgerClient | None = None
        self._fetch_loop: FixedDelayLoop | None = None
        self._ingest_loop: FixedDelayLoop | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        if self._fetch_loop:
            self._stats.fetch = self._fetch_loop.stats
        if self._ingest_loop:
            self._stats.ingest = self._ingest_loop.stats
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def db_manager(self) -> DatabaseManager:
        if self._db_manager is None:
            raise RuntimeError("Pipeline has not been started")
        return self._db_manager

    @property
    def ledger(self) -> LedgerClient:
        if self._ledger is None:
            raise RuntimeError("Pipeline has not been started")
        return self._ledger

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_loops()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop both loops and release shared resources."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        for loop in (self._fetch_loop, self._ingest_loop):
            if loop:
                await loop.stop()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        settings = self._settings

        self._db_manager = DatabaseManager(settings.database.url)
        await self._db_manager.init_schema_async()
        logger.debug("Database schema ready")

        if settings.redis.enabled and settings.redis.url:
            self._redis = Redis.from_url(settings.redis.url, decode_responses=True)
            await self._redis.ping()
            logger.debug("Redis connected")

        ledger_cfg = settings.ledger
        self._ledger = LedgerClient(
            ledger_cfg.url,
            timeout_seconds=ledger_cfg.request_timeout_seconds,
            redis=self._redis,
        )
        accounts = AccountIndexCache(self._ledger)

        fetcher = BlockFetcher(
            self._db_manager, self._ledger, batch_size=ledger_cfg.fetch_batch_size
        )
        ingester = BlockIngester(
            self._db_manager,
            self._ledger,
            accounts=accounts,
            batch_size=ledger_cfg.fetch_batch_size,
            asset_fetch_attempts=ledger_cfg.asset_fetch_attempts,
        )
        self._fetch_loop = FixedDelayLoop(
            "fetch", fetcher.run_once, delay_seconds=ledger_cfg.fetch_delay_seconds
        )
        self._ingest_loop = FixedDelayLoop(
            "ingest", ingester.run_once, delay_seconds=ledger_cfg.ingest_delay_seconds
        )

    async def _start_loops(self) -> None:
        assert self._fetch_loop is not None and self._ingest_loop is not None
        await self._fetch_loop.start()
        await self._ingest_loop.start()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._ledger:
            await self._ledger.aclose()
            self._ledger = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        if self._fetch_loop:
            self._stats.fetch = self._fetch_loop.stats
        if self._ingest_loop:
            self._stats.ingest = self._ingest_loop.stats
        self._fetch_loop = None
        self._ingest_loop = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and block until stop() is called."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
