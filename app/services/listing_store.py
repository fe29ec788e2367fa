"""
Durable listing state with optimistic concurrency.

Every sale-state write is a compare-and-swap on ``listings.version``:
the UPDATE only matches while the row is still at the version the caller
read. Nothing holds a row lock across a gateway call.
"""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.enums import AvailabilityState, PollTier, SoldFrom
from app.core.exceptions import ConcurrencyConflict, DataIntegrityError, ListingNotFoundError
from app.core.utils import model_to_schema, utc_now
from app.models.listing import Listing
from app.schemas.listing import CatalogSnapshot, ListingState

logger = logging.getLogger(__name__)

# Columns the engine may change through transition_state
STATE_FIELDS = {
    "availability",
    "sold_from",
    "pending_remote_order",
    "remote_order_ids",
    "storefront_order_id",
    "cancelled_storefront_order_ids",
    "storefront_synced",
    "needs_review",
    "review_reason",
    "sync_attempt_count",
    "last_error_code",
    "sold_at",
    "last_reconciled_at",
    "last_seen_selling_at",
    "not_found_since",
    "storefront_inventory_item_id",
}

CATALOG_FIELDS = ("storefront_id", "storefront_inventory_item_id", "title", "original_price_minor")


def check_invariants(state: ListingState) -> None:
    """Raise DataIntegrityError when a state would break the listing invariants."""
    active_ids = state.active_remote_order_ids()
    if state.pending_remote_order:
        if state.sold_from not in (SoldFrom.STOREFRONT, SoldFrom.BOTH):
            raise DataIntegrityError(
                f"Listing {state.marketplace_pid}: pending remote order without a storefront sale"
            )
        if active_ids:
            raise DataIntegrityError(
                f"Listing {state.marketplace_pid}: pending remote order but remote order {active_ids[-1]} exists"
            )
    if state.sold_from is SoldFrom.BOTH:
        settled = state.availability is AvailabilityState.SOLD_BOTH and active_ids
        if not settled and not state.last_error_code and not state.pending_remote_order:
            raise DataIntegrityError(
                f"Listing {state.marketplace_pid}: sold_from=both without a remote order or error code"
            )


class ListingRepository(ABC):
    """Storage operations the reconciliation components depend on."""

    @abstractmethod
    async def get_by_marketplace_id(self, pid: str) -> Optional[ListingState]:
        pass

    @abstractmethod
    async def get_by_storefront_id(self, storefront_id: str) -> Optional[ListingState]:
        pass

    @abstractmethod
    async def upsert_from_catalog(self, snapshot: CatalogSnapshot) -> ListingState:
        pass

    @abstractmethod
    async def transition_state(self, key: str, expected_version: int, changes: Dict[str, Any]) -> ListingState:
        """Apply ``changes`` iff the listing is still at ``expected_version``."""
        pass

    @abstractmethod
    async def list_for_polling(self, tier: PollTier) -> List[ListingState]:
        pass

    @abstractmethod
    async def list_needing_review(self) -> List[ListingState]:
        pass


class SqlAlchemyListingRepository(ListingRepository):

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_state(row: Listing) -> ListingState:
        return model_to_schema(row, ListingState)

    @staticmethod
    def _column_value(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, list):
            return [str(v) for v in value]
        return value

    async def _fetch(self, session: AsyncSession, pid: str) -> Optional[Listing]:
        result = await session.execute(select(Listing).where(Listing.marketplace_pid == str(pid)))
        return result.scalar_one_or_none()

    async def get_by_marketplace_id(self, pid: str) -> Optional[ListingState]:
        async with self.session_factory() as session:
            row = await self._fetch(session, pid)
            return self._to_state(row) if row else None

    async def get_by_storefront_id(self, storefront_id: str) -> Optional[ListingState]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Listing).where(Listing.storefront_id == str(storefront_id)).limit(1)
            )
            row = result.scalar_one_or_none()
            return self._to_state(row) if row else None

    async def upsert_from_catalog(self, snapshot: CatalogSnapshot) -> ListingState:
        async with self.session_factory() as session:
            async with session.begin():
                row = await self._fetch(session, snapshot.marketplace_pid)
                if row is None:
                    row = Listing(
                        marketplace_pid=snapshot.marketplace_pid,
                        storefront_id=snapshot.storefront_id,
                        storefront_inventory_item_id=snapshot.storefront_inventory_item_id,
                        title=snapshot.title,
                        original_price_minor=snapshot.original_price_minor,
                        availability=AvailabilityState.ACTIVE.value,
                        sold_from=SoldFrom.NONE.value,
                        pending_remote_order=False,
                        remote_order_ids=[],
                        cancelled_storefront_order_ids=[],
                        storefront_synced=True,
                        version=1,
                    )
                    session.add(row)
                    logger.info("Listing %s created from catalog", snapshot.marketplace_pid)
                else:
                    # Catalog fields only; sale state belongs to the engine
                    values = {
                        field: getattr(snapshot, field)
                        for field in CATALOG_FIELDS
                        if getattr(snapshot, field) is not None
                    }
                    values["version"] = Listing.version + 1
                    values["updated_at"] = utc_now()
                    await session.execute(
                        update(Listing)
                        .where(Listing.marketplace_pid == snapshot.marketplace_pid)
                        .values(**values)
                    )
                    logger.info("Listing %s catalog fields refreshed", snapshot.marketplace_pid)
            row = await self._fetch(session, snapshot.marketplace_pid)
            await session.refresh(row)
            return self._to_state(row)

    async def transition_state(self, key: str, expected_version: int, changes: Dict[str, Any]) -> ListingState:
        unknown = set(changes) - STATE_FIELDS
        if unknown:
            raise ValueError(f"transition_state cannot change {sorted(unknown)}")

        async with self.session_factory() as session:
            async with session.begin():
                row = await self._fetch(session, key)
                if row is None:
                    raise ListingNotFoundError(f"No listing for marketplace id {key}")
                if row.version != expected_version:
                    raise ConcurrencyConflict(key, expected_version)

                current = self._to_state(row)
                if "remote_order_ids" in changes:
                    new_ids = [str(v) for v in changes["remote_order_ids"]]
                    if new_ids[:len(current.remote_order_ids)] != current.remote_order_ids:
                        raise DataIntegrityError(f"Listing {key}: remote_order_ids is append-only")

                check_invariants(ListingState.model_validate({**current.model_dump(), **changes}))

                values = {field: self._column_value(value) for field, value in changes.items()}
                values["version"] = expected_version + 1
                values["updated_at"] = utc_now()
                result = await session.execute(
                    update(Listing)
                    .where(and_(Listing.marketplace_pid == key, Listing.version == expected_version))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrencyConflict(key, expected_version)

            row = await self._fetch(session, key)
            await session.refresh(row)
            state = self._to_state(row)
            logger.debug("Listing %s now v%s %s", key, state.version, state.availability.value)
            return state

    async def list_for_polling(self, tier: PollTier) -> List[ListingState]:
        now = utc_now()
        watched = Listing.availability.in_([
            AvailabilityState.ACTIVE.value,
            AvailabilityState.SOLD_REMOTE_ONLY.value,
        ])
        if tier is PollTier.FREQUENT:
            condition = or_(
                Listing.pending_remote_order.is_(True),
                and_(watched, Listing.updated_at >= now - timedelta(hours=24)),
            )
        elif tier is PollTier.HOURLY:
            condition = or_(
                Listing.pending_remote_order.is_(True),
                and_(watched, Listing.updated_at >= now - timedelta(days=7)),
            )
        else:
            condition = or_(Listing.pending_remote_order.is_(True), watched)

        async with self.session_factory() as session:
            result = await session.execute(
                select(Listing)
                .where(condition)
                .where(Listing.storefront_id.is_not(None))
                .order_by(Listing.updated_at.desc())
            )
            return [self._to_state(row) for row in result.scalars().all()]

    async def list_needing_review(self) -> List[ListingState]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Listing).where(Listing.needs_review.is_(True)).order_by(Listing.updated_at.desc())
            )
            return [self._to_state(row) for row in result.scalars().all()]
