"""Block discovery and concurrent block retrieval.

Each pass asks the ledger for its height, makes sure a block row exists
for every height below it, then keeps up to ``batch_size`` fetches in
flight (newest heights first) until nothing is left to fetch. A failed
fetch leaves its height unfound for the next pass.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from vol_query.storage.repos import BlockRepository

if TYPE_CHECKING:
    from vol_query.ingestor.ledger_client import LedgerClient
    from vol_query.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 32


class FetchPool:
    """Bounded set of in-flight tasks keyed by block height."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._tasks: dict[int, asyncio.Task[bool]] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, key: int) -> bool:
        return key in self._tasks

    @property
    def keys(self) -> set[int]:
        return set(self._tasks)

    @property
    def free(self) -> int:
        return self._capacity - len(self._tasks)

    def submit(self, key: int, coro: Coroutine[Any, Any, bool]) -> None:
        if key in self._tasks:
            coro.close()
            return
        if self.free <= 0:
            coro.close()
            raise RuntimeError("FetchPool is full")
        self._tasks[key] = asyncio.create_task(coro)

    async def wait_any(self) -> dict[int, bool]:
        """Wait for at least one task to finish and remove finished tasks.

        Returns:
            Mapping of finished keys to their success flag.
        """
        if not self._tasks:
            return {}
        await asyncio.wait(self._tasks.values(), return_when=asyncio.FIRST_COMPLETED)
        finished: dict[int, bool] = {}
        for key, task in list(self._tasks.items()):
            if task.done():
                del self._tasks[key]
                finished[key] = not task.cancelled() and task.exception() is None and task.result()
        return finished

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task


@dataclass
class FetchPassResult:
    ledger_height: int = 0
    rows_created: int = 0
    fetched: int = 0
    failed: int = 0


class BlockFetcher:
    """Fills the block store from the ledger."""

    def __init__(
        self,
        db: DatabaseManager,
        ledger: LedgerClient,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._batch_size = batch_size

    async def _fetch_block(self, height: int) -> bool:
        try:
            block = await self._ledger.get_block(height)
            if block is None:
                logger.debug("Block %d not available yet", height)
                return False
            tx_count = block.tx_count
            async with self._db.get_async_session() as session:
                await BlockRepository(session).mark_found(
                    height, block=block.to_json(), tx_count=tx_count
                )
            return True
        except Exception as e:
            logger.warning("Failed to fetch block %d: %s", height, e)
            return False

    async def run_once(self) -> FetchPassResult:
        """Run one discovery/fetch pass to completion."""
        result = FetchPassResult()
        result.ledger_height = await self._ledger.get_height()

        async with self._db.get_async_session() as session:
            result.rows_created = await BlockRepository(session).populate(result.ledger_height)
        if result.rows_created:
            logger.info(
                "Ledger height %d; added %d block rows", result.ledger_height, result.rows_created
            )

        pool = FetchPool(self._batch_size)
        failed: set[int] = set()
        try:
            while True:
                if pool.free > 0:
                    async with self._db.get_async_session() as session:
                        heights = await BlockRepository(session).list_unfound(
                            limit=pool.free, exclude=pool.keys | failed
                        )
                    for height in heights:
                        pool.submit(height, self._fetch_block(height))
                if not len(pool):
                    break
                for height, ok in (await pool.wait_any()).items():
                    if ok:
                        result.fetched += 1
                    else:
                        failed.add(height)
        finally:
            await pool.cancel_all()

        result.failed = len(failed)
        if result.fetched or result.failed:
            logger.info(
                "Fetch pass complete: fetched=%d failed=%d", result.fetched, result.failed
            )
        return result
