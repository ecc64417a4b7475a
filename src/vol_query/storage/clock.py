"""Persisted logical clock for offer versioning.

The clock is a pair of counters stored in a singleton ``nonces`` row.
``origin`` advances each time an offer's content becomes known and
``closed`` each time an offer is closed. Neither counter is ever rolled
back; only an ingest reset drops the row.

The ingestion loop is the only writer. Readers use ``current()`` to pin
a pagination snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select

from vol_query.storage.models import NonceModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class Nonces:
    origin: int = 0
    closed: int = 0


class LogicalClock:
    """Single-writer logical clock bound to a session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _row(self) -> NonceModel | None:
        result = await self.session.execute(select(NonceModel).order_by(NonceModel.id).limit(1))
        return result.scalar_one_or_none()

    async def _row_for_update(self) -> NonceModel:
        row = await self._row()
        if row is None:
            row = NonceModel(origin=0, closed=0)
            self.session.add(row)
        return row

    async def current(self) -> Nonces:
        row = await self._row()
        if row is None:
            return Nonces()
        return Nonces(origin=row.origin, closed=row.closed)

    async def advance_origin(self) -> int:
        """Advance the origin counter and return its new value."""
        row = await self._row_for_update()
        row.origin += 1
        await self.session.flush()
        return row.origin

    async def advance_closed(self) -> int:
        """Advance the closed counter and return its new value."""
        row = await self._row_for_update()
        row.closed += 1
        await self.session.flush()
        return row.closed
