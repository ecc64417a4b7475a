"""Opaque continuation tokens for snapshot-consistent pagination.

A token pins the values a paginated search was started with so that every
later page is filtered against the same logical point in time. Tokens are
a JSON array encoded as URL-safe base64.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


class InvalidTokenError(ValueError):
    """Raised when a client-supplied token cannot be decoded."""


def _encode(values: list[Any]) -> str:
    raw = json.dumps(values, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _decode(token: str, arity: int) -> list[Any]:
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii"))
        values = json.loads(raw.decode("utf-8"))
    except (UnicodeError, binascii.Error, ValueError) as e:
        raise InvalidTokenError(f"Malformed pagination token: {e}") from e
    if not isinstance(values, list) or len(values) != arity:
        raise InvalidTokenError("Malformed pagination token: unexpected shape")
    return values


def _require_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidTokenError("Malformed pagination token: expected a non-negative integer")
    return value


def utc_now_seconds() -> datetime:
    """Current wall-clock time truncated to the second."""
    return datetime.now(UTC).replace(microsecond=0)


@dataclass(frozen=True)
class SnapshotToken:
    """Snapshot for offer searches.

    Attributes:
        base_utc: Wall-clock cutoff; offers expiring at or before it are hidden.
        origin_ceiling: Offers whose origin nonce exceeds this are excluded.
        closed_floor: Offers closed after this nonce still count as open.
    """

    base_utc: datetime
    origin_ceiling: int
    closed_floor: int

    def encode(self) -> str:
        return _encode(
            [
                self.base_utc.isoformat(),
                self.origin_ceiling,
                self.closed_floor,
            ]
        )

    @classmethod
    def decode(cls, token: str) -> SnapshotToken:
        base_utc, origin, closed = _decode(token, 3)
        if not isinstance(base_utc, str):
            raise InvalidTokenError("Malformed pagination token: expected a timestamp")
        try:
            parsed = datetime.fromisoformat(base_utc)
        except ValueError as e:
            raise InvalidTokenError(f"Malformed pagination token: {e}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return cls(
            base_utc=parsed,
            origin_ceiling=_require_int(origin),
            closed_floor=_require_int(closed),
        )


@dataclass(frozen=True)
class StampToken:
    """Snapshot for stamp searches, pinned to the ingestion frontier at search start."""

    height: int

    def encode(self) -> str:
        return _encode([self.height])

    @classmethod
    def decode(cls, token: str) -> StampToken:
        (height,) = _decode(token, 1)
        return cls(height=_require_int(height))
