"""Bounded memo of account ID to account index."""

from __future__ import annotations

import logging
from collections import OrderedDict

from vol_query.ingestor.ledger_client import LedgerClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000


class AccountIndexCache:
    """Resolves account IDs to integer indices, remembering recent answers.

    Indices never change once assigned, so entries never go stale; the
    bound only limits memory. Dropping the cache is always safe.
    """

    def __init__(self, ledger: LedgerClient, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._ledger = ledger
        self._max_entries = max_entries
        self._entries: OrderedDict[str, int] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def resolve(self, account_id: str, at: int | None = None) -> int | None:
        """Return the account's index, or None if the ledger has no such account."""
        index = self._entries.get(account_id)
        if index is not None:
            self._entries.move_to_end(account_id)
            return index

        account = await self._ledger.get_account(account_id, at)
        if account is None:
            return None

        logger.debug("Resolved account %s to index %d", account_id, account.index)
        self._entries[account_id] = account.index
        if len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
        return account.index

    def clear(self) -> None:
        self._entries.clear()
