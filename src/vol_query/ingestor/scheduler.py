"""Fixed-delay background loops.

A loop runs its pass to completion (or failure), then waits a fixed delay
before the next one, so a slow upstream slows the whole pipeline instead
of piling up overlapping passes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    """State of a background loop."""

    STOPPED = "stopped"
    RUNNING = "running"
    IDLE = "idle"
    STOPPING = "stopping"


@dataclass
class LoopStats:
    """Statistics for a background loop."""

    total_passes: int = 0
    failed_passes: int = 0
    last_pass_time: datetime | None = None
    last_pass_duration_seconds: float = 0.0
    last_error: str | None = None


class FixedDelayLoop:
    """Re-invokes an async pass with a fixed delay between runs.

    Example:
        ```python
        loop = FixedDelayLoop("ingest", ingester.run_once, delay_seconds=5)
        await loop.start()
        ...
        await loop.stop()
        ```
    """

    def __init__(
        self,
        name: str,
        run_pass: Callable[[], Awaitable[Any]],
        *,
        delay_seconds: float,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.name = name
        self._run_pass = run_pass
        self._delay = delay_seconds
        self._stop_event = stop_event or asyncio.Event()
        self._state = LoopState.STOPPED
        self._stats = LoopStats()
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def stats(self) -> LoopStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_pass(self) -> None:
        """Run a single pass, recording its outcome. Never raises except on cancellation."""
        self._state = LoopState.RUNNING
        started = asyncio.get_running_loop().time()
        self._stats.total_passes += 1
        try:
            await self._run_pass()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats.failed_passes += 1
            self._stats.last_error = str(e)
            logger.warning("%s pass failed: %s", self.name, e)
        finally:
            self._stats.last_pass_time = datetime.now(UTC)
            self._stats.last_pass_duration_seconds = asyncio.get_running_loop().time() - started
            self._state = LoopState.IDLE

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.run_pass()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._delay)
                break
            except TimeoutError:
                pass

    async def start(self) -> None:
        if self.is_running:
            raise RuntimeError(f"Loop {self.name} is already running")
        logger.debug("Starting %s loop", self.name)
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-loop")

    async def stop(self) -> None:
        """Signal the loop to stop and cancel any in-progress pass."""
        if self._task is None:
            return
        self._state = LoopState.STOPPING
        self._stop_event.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self._state = LoopState.STOPPED
        logger.debug("Stopped %s loop", self.name)
