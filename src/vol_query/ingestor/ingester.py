"""Sequential application of ledger blocks to derived state.

The ingester is the only writer of offers, assets and the logical clock.
Each pass first applies pending administrative commands, then walks
found, not yet ingested blocks that carry transactions in ascending
height order.

A block is ingested in two steps. Planning decodes its transactions and
makes every ledger lookup they need (offers, seller accounts, touched
assets) while only reading the store. Applying then writes the planned
offer changes, the refreshed assets and the ``ingested`` flag in one short
transaction with no network calls inside it, so the fetch loop never waits
on the database lock while the ledger is slow. Any failure leaves the
block un-ingested for the next pass, so every step must be safe to repeat.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from vol_query.ingestor.accounts import AccountIndexCache
from vol_query.ingestor.models import (
    BuyAssets,
    CancelOffer,
    IgnoredTransaction,
    IngestionError,
    LedgerBlock,
    OfferAssets,
    RunScript,
    SendAssets,
    Transaction,
)
from vol_query.ingestor.stamps import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_ATTEMPTS,
    ResolvedAsset,
    StampTracker,
)
from vol_query.storage.repos import (
    BlockDTO,
    BlockRepository,
    ControlCommandRepository,
    OfferClosedReason,
    OfferDTO,
    OfferRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from vol_query.ingestor.ledger_client import LedgerClient
    from vol_query.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


# ============================================================================
# Planned changes
# ============================================================================


@dataclass(frozen=True)
class AffirmOffer:
    offer: OfferDTO


@dataclass(frozen=True)
class CloseOffer:
    offer_id: str
    reason: OfferClosedReason


OfferChange = AffirmOffer | CloseOffer


@dataclass
class BlockPlan:
    """Everything one block will write, gathered before any write starts."""

    height: int
    changes: list[OfferChange] = field(default_factory=list)
    touched: list[str] = field(default_factory=list)
    assets: dict[str, ResolvedAsset] = field(default_factory=dict)

    def affirmed(self, offer_id: str) -> OfferDTO | None:
        """Latest content planned for ``offer_id`` earlier in this block."""
        for change in reversed(self.changes):
            if isinstance(change, AffirmOffer) and change.offer.offer_id == offer_id:
                return change.offer
        return None


Handler = Callable[[OfferRepository, Any, BlockPlan], Awaitable[list[str]]]


@dataclass
class IngestPassResult:
    ingested: int = 0
    reset: bool = False
    aborted_at: int | None = None
    last_error: str | None = None


# ============================================================================
# Ingester
# ============================================================================


class BlockIngester:
    """Applies stored blocks to offers, assets and the logical clock."""

    def __init__(
        self,
        db: DatabaseManager,
        ledger: LedgerClient,
        *,
        accounts: AccountIndexCache | None = None,
        stamps: StampTracker | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        asset_fetch_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._accounts = accounts or AccountIndexCache(ledger)
        self._stamps = stamps or StampTracker(
            ledger,
            self._accounts,
            batch_size=batch_size,
            max_attempts=asset_fetch_attempts,
        )
        self._handlers: dict[type, Handler] = {
            BuyAssets: self._on_buy_assets,
            CancelOffer: self._on_cancel_offer,
            OfferAssets: self._on_offer_assets,
            RunScript: self._on_run_script,
            SendAssets: self._on_send_assets,
            IgnoredTransaction: self._on_ignored,
        }

    # ------------------------------------------------------------------
    # Transaction handlers. Each plans its offer changes and returns the
    # asset IDs it touched; ``offers`` is only read from.
    # ------------------------------------------------------------------

    async def _on_buy_assets(
        self, offers: OfferRepository, tx: BuyAssets, plan: BlockPlan
    ) -> list[str]:
        planned = plan.affirmed(tx.offer_id)
        if planned is not None:
            touched = planned.asset_ids
        else:
            offer = await offers.get_offer(tx.offer_id)
            touched = offer.asset_ids if offer is not None and offer.known else []
        plan.changes.append(CloseOffer(tx.offer_id, OfferClosedReason.COMPLETED))
        return touched

    async def _on_cancel_offer(
        self, offers: OfferRepository, tx: CancelOffer, plan: BlockPlan
    ) -> list[str]:
        height = plan.height
        # The offer no longer exists at this height; look it up just before.
        at = height - 1 if height > 0 else None
        offer = await self._ledger.get_offer(tx.identifier, at)
        if offer is None:
            raise IngestionError(f"CANCEL_OFFER at {height}: no offer for {tx.identifier}")
        plan.changes.append(CloseOffer(offer.offer_id, OfferClosedReason.CANCELLED))
        return []

    async def _on_offer_assets(
        self, offers: OfferRepository, tx: OfferAssets, plan: BlockPlan
    ) -> list[str]:
        height = plan.height
        offer = await self._ledger.get_offer(tx.asset_identifiers[0], height)
        if offer is None:
            raise IngestionError(
                f"OFFER_ASSETS at {height}: no offer for {tx.asset_identifiers[0]}"
            )
        seller_index = await self._accounts.resolve(offer.seller, height)
        if seller_index is None:
            raise IngestionError(f"OFFER_ASSETS at {height}: unknown seller {offer.seller}")

        plan.changes.append(
            AffirmOffer(
                OfferDTO(
                    offer_id=offer.offer_id,
                    seller_index=seller_index,
                    assets=list(offer.assets),
                    minimum_price=offer.minimum_price,
                    expiration=offer.expiration,
                )
            )
        )
        return offer.asset_ids

    async def _on_run_script(
        self, offers: OfferRepository, tx: RunScript, plan: BlockPlan
    ) -> list[str]:
        return tx.asset_ids

    async def _on_send_assets(
        self, offers: OfferRepository, tx: SendAssets, plan: BlockPlan
    ) -> list[str]:
        return list(tx.asset_identifiers)

    async def _on_ignored(
        self, offers: OfferRepository, tx: IgnoredTransaction, plan: BlockPlan
    ) -> list[str]:
        logger.debug("%d: ignoring %s", plan.height, tx.type)
        return []

    # ------------------------------------------------------------------

    async def plan_transaction(
        self, offers: OfferRepository, tx: Transaction, plan: BlockPlan
    ) -> list[str]:
        handler = self._handlers.get(type(tx))
        if handler is None:
            raise IngestionError(f"No handler for {type(tx).__name__}")
        return await handler(offers, tx, plan)

    async def plan_block(self, block: BlockDTO) -> BlockPlan:
        """Decode a stored block and make every ledger lookup it needs.

        Raises:
            IngestionError: If an invariant fails or assets cannot be fetched.
            MalformedLedgerDataError: If the block body cannot be decoded.
            LedgerClientError: If a required ledger lookup fails.
        """
        if block.block is None:
            raise IngestionError(f"Block {block.height} has no body")
        ledger_block = LedgerBlock.from_json(block.block)
        plan = BlockPlan(height=block.height)
        logger.debug("Planning block %d", block.height)

        async with self._db.get_async_session() as session:
            offers = OfferRepository(session)
            for tx in ledger_block.transactions():
                plan.touched.extend(await self.plan_transaction(offers, tx, plan))
            plan.touched = list(dict.fromkeys(plan.touched))
            plan.assets = await self._stamps.fetch_stale(session, plan.touched, plan.height)
        return plan

    async def apply_plan(self, session: AsyncSession, plan: BlockPlan) -> None:
        offers = OfferRepository(session)
        for change in plan.changes:
            if isinstance(change, AffirmOffer):
                await offers.affirm_known_offer(change.offer)
                logger.debug(
                    "Offer %s affirmed (seller=%d)",
                    change.offer.offer_id,
                    change.offer.seller_index,
                )
            else:
                await offers.close_offer(change.offer_id, change.reason)
        await self._stamps.apply(session, plan.assets, plan.height)
        await BlockRepository(session).mark_ingested(plan.height)

    async def ingest_block(self, block: BlockDTO) -> BlockPlan:
        """Plan one stored block, then write it in a single transaction.

        Returns:
            The applied plan.
        """
        plan = await self.plan_block(block)
        async with self._db.get_async_session() as session:
            await self.apply_plan(session, plan)
        return plan

    async def _apply_pending_commands(self) -> bool:
        async with self._db.get_async_session() as session:
            pending = await ControlCommandRepository(session).list_pending()
        if not pending.ids:
            return False

        if pending.reset_requested:
            logger.warning("Applying RESET_INGEST")
            await self._db.reset_ingest_async()
        async with self._db.get_async_session() as session:
            await ControlCommandRepository(session).acknowledge(pending)
        return pending.reset_requested

    async def run_once(self) -> IngestPassResult:
        """Ingest blocks until none remain or one fails."""
        result = IngestPassResult()
        result.reset = await self._apply_pending_commands()

        while True:
            height: int | None = None
            try:
                async with self._db.get_async_session() as session:
                    block = await BlockRepository(session).next_for_ingest()
                if block is None:
                    break
                height = block.height
                await self.ingest_block(block)
            except Exception as e:
                logger.exception("Ingestion aborted at block %s", height)
                result.aborted_at = height
                result.last_error = str(e)
                break
            result.ingested += 1

        if result.ingested:
            logger.info("Ingested %d block(s)", result.ingested)
        return result
