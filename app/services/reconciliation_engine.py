# app/services/reconciliation_engine.py
"""
Cross-platform sale reconciliation state machine.

Each event is applied as: read the listing, decide against the stored
state, compare-and-swap the new state, then run the storefront side
effects and mark the listing synced. A ConcurrencyConflict re-reads and
re-decides. Storefront state is always derived from the stored listing
state, so an unsynced listing is repaired by replaying its side effects.

States:
    ACTIVE -> SOLD_PENDING_REMOTE -> SOLD_BOTH | SOLD_REMOTE_ONLY
    ACTIVE -> SOLD_REMOTE_ONLY
    SOLD_BOTH | SOLD_REMOTE_ONLY -> RESTORED -> ACTIVE
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel

from app.core.enums import (
    AvailabilityState,
    EventKind,
    MarketplaceOrderStatus,
    MarketplaceSaleStatus,
    PlacementOutcome,
    SoldFrom,
)
from app.core.exceptions import ConcurrencyConflict, InvalidTransition, ListingNotFoundError
from app.core.utils import as_naive_utc, utc_now
from app.integrations.base import MarketplaceListingDetails
from app.integrations.events import ReconciliationEvent
from app.schemas.listing import VOID_PREFIX, ListingState
from app.services.activity_logger import ActivityLogger
from app.services.listing_store import ListingRepository
from app.services.notification_service import OperatorAlertService
from app.services.remote_order_workflow import PlacementResult, RemoteOrderWorkflow
from app.services.storefront_sync import StorefrontSync, not_available_code

logger = logging.getLogger(__name__)

SOLD_STATES = (AvailabilityState.SOLD_BOTH, AvailabilityState.SOLD_REMOTE_ONLY)


class EngineResult(BaseModel):
    pid: str
    event: EventKind
    action: str  # transition, duplicate, ignored, annotated, held, invalid
    from_state: AvailabilityState
    to_state: AvailabilityState
    placement: Optional[PlacementResult] = None
    detail: Optional[str] = None


class ReconciliationEngine:

    def __init__(
        self,
        repository: ListingRepository,
        storefront: StorefrontSync,
        workflow: RemoteOrderWorkflow,
        alerts: OperatorAlertService,
        activity: Optional[ActivityLogger] = None,
        not_found_confirm_minutes: int = 30,
        cas_max_retries: int = 5,
    ):
        self.repository = repository
        self.storefront = storefront
        self.workflow = workflow
        self.alerts = alerts
        self.activity = activity
        self.not_found_confirm_window = timedelta(minutes=not_found_confirm_minutes)
        self.cas_max_retries = cas_max_retries

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def handle(self, event: ReconciliationEvent) -> EngineResult:
        """Apply one event. Raises ListingNotFoundError for unknown listings."""
        last_conflict = None
        for attempt in range(1, self.cas_max_retries + 1):
            listing = await self._load(event.listing_key)
            try:
                return await self._dispatch(listing, event)
            except ConcurrencyConflict as e:
                last_conflict = e
                logger.info("CAS conflict applying %s (attempt %s), re-reading", event.describe(), attempt)
            except InvalidTransition as e:
                logger.warning("Rejected %s: %s", event.describe(), e)
                await self._audit("invalid_transition", listing, event, {"error": str(e)})
                return self._result(listing, event, "invalid", listing.availability, detail=str(e))
        raise last_conflict

    async def _load(self, pid: str) -> ListingState:
        listing = await self.repository.get_by_marketplace_id(pid)
        if listing is None:
            raise ListingNotFoundError(f"No listing for marketplace id {pid}")
        return listing

    async def _dispatch(self, listing: ListingState, event: ReconciliationEvent) -> EngineResult:
        handlers = {
            EventKind.STOREFRONT_SALE: self._on_storefront_sale,
            EventKind.MARKETPLACE_SALE_DETECTED: self._on_marketplace_sale,
            EventKind.STOREFRONT_ORDER_CANCELLED: self._on_storefront_cancelled,
            EventKind.MARKETPLACE_ORDER_STATUS_CHANGED: self._on_remote_status,
            EventKind.REMOTE_ORDER_PLACED: self._on_remote_order_placed,
        }
        return await handlers[event.kind](listing, event)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    async def _on_storefront_sale(self, listing: ListingState, event: ReconciliationEvent) -> EngineResult:
        order_id = event.platform_order_id
        state = listing.availability

        if order_id in listing.cancelled_storefront_order_ids:
            return await self._duplicate(listing, event, "order already released")

        if state.is_sellable:
            pending = await self._transition(listing, event, {
                "availability": AvailabilityState.SOLD_PENDING_REMOTE,
                "sold_from": SoldFrom.STOREFRONT,
                "pending_remote_order": True,
                "storefront_order_id": order_id,
                "sold_at": as_naive_utc(event.observed_at),
                "last_error_code": None,
                "needs_review": False,
                "review_reason": None,
                "sync_attempt_count": 0,
            })
            return await self._place_remote_order(pending, event, listing.availability)

        if state is AvailabilityState.SOLD_PENDING_REMOTE:
            if order_id == listing.storefront_order_id:
                return await self._place_remote_order(listing, event, state)
            return await self._reject_second_order(listing, event)

        if order_id == listing.storefront_order_id:
            return await self._duplicate(listing, event, "sale already applied")

        if state is AvailabilityState.SOLD_REMOTE_ONLY and listing.sold_from is SoldFrom.MARKETPLACE:
            # Storefront sold an item the marketplace already sold
            code = not_available_code(listing.marketplace_pid)
            updated = await self._transition(listing, event, {
                "sold_from": SoldFrom.BOTH,
                "storefront_order_id": order_id,
                "last_error_code": code,
                "needs_review": True,
                "review_reason": "Storefront order placed after marketplace sale; refund required",
                "storefront_synced": False,
            })
            updated = await self._sync_storefront(updated)
            await self.alerts.alert_manual_refund(listing.marketplace_pid, order_id, "item already sold on marketplace")
            return self._result(listing, event, "transition", updated.availability)

        return await self._reject_second_order(listing, event)

    async def _on_marketplace_sale(self, listing: ListingState, event: ReconciliationEvent) -> EngineResult:
        state = listing.availability

        if state.is_sellable:
            updated = await self._transition(listing, event, {
                "availability": AvailabilityState.SOLD_REMOTE_ONLY,
                "sold_from": SoldFrom.MARKETPLACE,
                "sold_at": as_naive_utc(event.observed_at),
                "storefront_synced": False,
                "last_reconciled_at": utc_now(),
            })
            updated = await self._sync_storefront(updated)
            return self._result(listing, event, "transition", updated.availability)

        if state is AvailabilityState.SOLD_PENDING_REMOTE:
            # Our order may not exist yet; the workflow re-checks live availability
            return await self._place_remote_order(listing, event, state)

        return await self._duplicate(listing, event, "item already recorded as sold")

    async def _on_storefront_cancelled(self, listing: ListingState, event: ReconciliationEvent) -> EngineResult:
        order_id = event.platform_order_id
        state = listing.availability

        if order_id != listing.storefront_order_id or order_id is None:
            if order_id in listing.cancelled_storefront_order_ids:
                return await self._duplicate(listing, event, "cancellation already applied")
            logger.info("Cancellation of order %s does not concern listing %s", order_id, listing.marketplace_pid)
            await self._audit("ignored", listing, event, {"reason": "order not behind current sale"})
            return self._result(listing, event, "ignored", state, detail="order not behind current sale")

        if state in (AvailabilityState.SOLD_BOTH, AvailabilityState.SOLD_PENDING_REMOTE):
            active_ids = listing.active_remote_order_ids()
            restored = await self._restore(listing, event, release_order=order_id)
            if active_ids:
                await self.alerts.send_alert(
                    f"Storefront order {order_id} cancelled after marketplace purchase",
                    [
                        f"Marketplace item: {listing.marketplace_pid}",
                        f"Marketplace order(s): {', '.join(active_ids)}",
                        "The storefront listing has been restored. Cancel or resell the marketplace purchase.",
                    ],
                )
            return self._result(listing, event, "transition", restored.availability)

        if state is AvailabilityState.SOLD_REMOTE_ONLY and listing.sold_from is SoldFrom.BOTH:
            # The conflicting storefront order is gone but the marketplace item is still sold
            updated = await self._transition(listing, event, {
                "sold_from": SoldFrom.MARKETPLACE,
                "storefront_order_id": None,
                "cancelled_storefront_order_ids": listing.cancelled_storefront_order_ids + [order_id],
                "last_error_code": None,
                "needs_review": False,
                "review_reason": None,
            })
            return self._result(listing, event, "transition", updated.availability, detail="conflict cleared")

        raise InvalidTransition(listing.marketplace_pid, state, event.kind)

    async def _on_remote_status(self, listing: ListingState, event: ReconciliationEvent) -> EngineResult:
        status = (event.order_status or "").upper()
        remote_id = event.platform_order_id
        state = listing.availability

        if remote_id and f"{VOID_PREFIX}{remote_id}" in listing.remote_order_ids:
            return await self._duplicate(listing, event, "remote order already voided")

        if listing.storefront_order_id and remote_id:
            await self.storefront.annotate_remote_status(listing.storefront_order_id, remote_id, status)

        releases = status in MarketplaceOrderStatus.__members__ and MarketplaceOrderStatus(status).releases_item
        if not releases:
            await self._audit("annotated", listing, event, {"status": status})
            return self._result(listing, event, "annotated", state)

        if state.is_sellable:
            return await self._duplicate(listing, event, "item already sellable")

        if state in SOLD_STATES:
            if remote_id and remote_id not in listing.active_remote_order_ids():
                logger.info("Status %s for unknown remote order %s on %s ignored", status, remote_id, listing.marketplace_pid)
                await self._audit("ignored", listing, event, {"reason": "unknown remote order"})
                return self._result(listing, event, "ignored", state, detail="unknown remote order")
            storefront_order = listing.storefront_order_id
            restored = await self._restore(listing, event, release_order=storefront_order)
            if storefront_order and state is AvailabilityState.SOLD_BOTH:
                await self.alerts.send_alert(
                    f"Marketplace order {remote_id} {status.lower()}",
                    [
                        f"Marketplace item: {listing.marketplace_pid}",
                        f"Storefront order: {storefront_order}",
                        "The storefront listing has been restored. Check whether the storefront customer needs a refund.",
                    ],
                )
            return self._result(listing, event, "transition", restored.availability)

        raise InvalidTransition(listing.marketplace_pid, state, event.kind)

    async def _on_remote_order_placed(self, listing: ListingState, event: ReconciliationEvent) -> EngineResult:
        remote_id = event.platform_order_id
        if listing.availability is AvailabilityState.SOLD_PENDING_REMOTE and remote_id:
            logger.info("Recovered marketplace order %s for %s (was %s)", remote_id, listing.marketplace_pid,
                        listing.last_error_code or "pending")
            if listing.storefront_order_id:
                await self.storefront.annotate_remote_order(listing.storefront_order_id, listing.marketplace_pid, remote_id)
            result = PlacementResult.placed(remote_id, confirmed=True, recovered=True)
            return await self._apply_placement(listing, event, result, listing.availability)
        if remote_id and remote_id in listing.remote_order_ids:
            return await self._duplicate(listing, event, "remote order already recorded")
        raise InvalidTransition(listing.marketplace_pid, listing.availability, event.kind)

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------
    async def _place_remote_order(
        self, listing: ListingState, event: ReconciliationEvent, from_state: AvailabilityState
    ) -> EngineResult:
        result = await self.workflow.place(listing)
        if self.activity:
            await self.activity.log_placement(listing.marketplace_pid, result.outcome.value, {
                "storefront_order_id": listing.storefront_order_id,
                "remote_order_id": result.remote_order_id,
                "error_code": result.error_code,
                "detail": result.detail,
            })
        return await self._apply_placement(listing, event, result, from_state)

    async def _apply_placement(
        self,
        listing: ListingState,
        event: ReconciliationEvent,
        result: PlacementResult,
        from_state: AvailabilityState,
    ) -> EngineResult:
        """Record a placement outcome. Re-reads on conflict but never re-places."""
        pid = listing.marketplace_pid
        for _ in range(self.cas_max_retries):
            if listing.availability is not AvailabilityState.SOLD_PENDING_REMOTE:
                logger.error("Listing %s left SOLD_PENDING_REMOTE before placement %s was recorded",
                             pid, result.outcome.value)
                await self._audit("placement_orphaned", listing, event, result.model_dump(mode="json"))
                return self._result(listing, event, "invalid", listing.availability, placement=result)
            try:
                updated = await self._transition(listing, event, self._placement_changes(listing, result))
                break
            except ConcurrencyConflict:
                listing = await self._load(pid)
        else:
            raise ConcurrencyConflict(pid, listing.version)

        updated = await self._sync_storefront(updated)

        if result.outcome is PlacementOutcome.CONFLICT and listing.storefront_order_id:
            await self.alerts.alert_manual_refund(pid, listing.storefront_order_id, result.detail or result.error_code)

        action = "held" if result.outcome is PlacementOutcome.HELD else "transition"
        return self._result(listing, event, action, updated.availability, placement=result, from_state=from_state)

    @staticmethod
    def _placement_changes(listing: ListingState, result: PlacementResult) -> Dict[str, Any]:
        now = utc_now()
        if result.outcome is PlacementOutcome.PLACED:
            ids = list(listing.remote_order_ids)
            if result.remote_order_id not in ids:
                ids.append(result.remote_order_id)
            return {
                "availability": AvailabilityState.SOLD_BOTH,
                "sold_from": SoldFrom.BOTH,
                "pending_remote_order": False,
                "remote_order_ids": ids,
                "last_error_code": result.error_code,
                "needs_review": not result.confirmed,
                "review_reason": None if result.confirmed else "Marketplace order not confirmed",
                "storefront_synced": False,
                "last_reconciled_at": now,
            }
        if result.outcome is PlacementOutcome.CONFLICT:
            return {
                "availability": AvailabilityState.SOLD_REMOTE_ONLY,
                "sold_from": SoldFrom.BOTH,
                "pending_remote_order": False,
                "last_error_code": result.error_code,
                "needs_review": True,
                "review_reason": f"Manual refund required: {result.detail}",
                "storefront_synced": False,
                "last_reconciled_at": now,
            }
        return {
            "last_error_code": result.error_code,
            "needs_review": True,
            "review_reason": result.detail,
            "sync_attempt_count": listing.sync_attempt_count + 1,
            "storefront_synced": False,
            "last_reconciled_at": now,
        }

    async def _reject_second_order(self, listing: ListingState, event: ReconciliationEvent) -> EngineResult:
        """A further storefront order for an item that is already sold."""
        order_id = event.platform_order_id
        code = not_available_code(listing.marketplace_pid)
        logger.warning("Listing %s already sold (%s); flagging storefront order %s",
                       listing.marketplace_pid, listing.availability.value, order_id)
        if order_id:
            await self.storefront.flag_for_refund(order_id, code)
            await self.alerts.alert_manual_refund(listing.marketplace_pid, order_id, "item already sold")
        await self._audit("second_order_flagged", listing, event, {"error_code": code})
        return self._result(listing, event, "ignored", listing.availability, detail="second order flagged for refund")

    # ------------------------------------------------------------------
    # Restore and storefront sync
    # ------------------------------------------------------------------
    async def _restore(self, listing: ListingState, event: ReconciliationEvent, release_order: Optional[str]) -> ListingState:
        voids = [f"{VOID_PREFIX}{oid}" for oid in listing.active_remote_order_ids()]
        released = list(listing.cancelled_storefront_order_ids)
        if release_order and release_order not in released:
            released.append(release_order)
        restored = await self._transition(listing, event, {
            "availability": AvailabilityState.RESTORED,
            "sold_from": SoldFrom.NONE,
            "pending_remote_order": False,
            "remote_order_ids": listing.remote_order_ids + voids,
            "storefront_order_id": None,
            "cancelled_storefront_order_ids": released,
            "last_error_code": None,
            "needs_review": False,
            "review_reason": None,
            "storefront_synced": False,
            "sold_at": None,
            "last_reconciled_at": utc_now(),
        })
        return await self._sync_storefront(restored)

    async def _sync_storefront(self, listing: ListingState) -> ListingState:
        """
        Make the storefront reflect ``listing`` and mark it synced.
        RESTORED folds to ACTIVE here. Gateway errors propagate so the job
        is retried; the listing stays unsynced until then.
        """
        state = listing.availability
        if state is AvailabilityState.SOLD_BOTH:
            await self.storefront.delist(listing, sold_both=True)
        elif state is AvailabilityState.SOLD_REMOTE_ONLY:
            if listing.sold_from is SoldFrom.BOTH and listing.storefront_order_id:
                await self.storefront.flag_for_refund(
                    listing.storefront_order_id,
                    listing.last_error_code or not_available_code(listing.marketplace_pid),
                )
            await self.storefront.delist(listing, sold_both=False)
        elif state is AvailabilityState.SOLD_PENDING_REMOTE:
            if listing.last_error_code and listing.storefront_order_id:
                urgent = [listing.last_error_code] if listing.last_error_code.startswith("URGENT-") else []
                await self.storefront.annotate_hold(listing.storefront_order_id, listing.last_error_code, urgent)
        else:
            await self.storefront.restore(listing)

        changes: Dict[str, Any] = {"storefront_synced": True}
        if state is AvailabilityState.RESTORED:
            changes["availability"] = AvailabilityState.ACTIVE

        for _ in range(self.cas_max_retries):
            try:
                updated = await self.repository.transition_state(listing.marketplace_pid, listing.version, changes)
            except ConcurrencyConflict:
                fresh = await self._load(listing.marketplace_pid)
                if fresh.availability is not state or fresh.storefront_synced:
                    return fresh
                listing = fresh
                continue
            if state is AvailabilityState.RESTORED:
                logger.info("Listing %s restored and active again", listing.marketplace_pid)
                await self._audit_transition(listing.marketplace_pid, state, AvailabilityState.ACTIVE, "RestoreCompleted")
            return updated
        return await self._load(listing.marketplace_pid)

    async def _duplicate(self, listing: ListingState, event: ReconciliationEvent, reason: str) -> EngineResult:
        logger.info("Duplicate %s for %s in %s: %s", event.describe(), listing.marketplace_pid,
                    listing.availability.value, reason)
        current = listing
        if not listing.storefront_synced:
            logger.info("Listing %s not synced to storefront; replaying side effects", listing.marketplace_pid)
            current = await self._sync_storefront(listing)
        await self._audit("duplicate", listing, event, {"reason": reason})
        return self._result(listing, event, "duplicate", current.availability, detail=reason)

    # ------------------------------------------------------------------
    # Marketplace observations
    # ------------------------------------------------------------------
    async def record_marketplace_observation(
        self, pid: str, details: Optional[MarketplaceListingDetails]
    ) -> MarketplaceSaleStatus:
        """
        Record a poll result and return the status to act on.

        A missing item is only SOLD once it has been missing for the
        confirmation window with no SELLING observation in between.
        """
        for _ in range(self.cas_max_retries):
            listing = await self._load(pid)
            now = utc_now()
            changes: Dict[str, Any] = {}

            if details is None:
                if listing.not_found_since is None:
                    changes["not_found_since"] = now
                    status = MarketplaceSaleStatus.UNKNOWN
                elif now - listing.not_found_since >= self.not_found_confirm_window:
                    status = MarketplaceSaleStatus.SOLD
                else:
                    status = MarketplaceSaleStatus.UNKNOWN
            elif details.status is MarketplaceSaleStatus.SELLING:
                status = MarketplaceSaleStatus.SELLING
                if listing.not_found_since is not None or listing.last_seen_selling_at is None \
                        or now - listing.last_seen_selling_at >= timedelta(hours=1):
                    changes["not_found_since"] = None
                    changes["last_seen_selling_at"] = now
            else:
                status = details.status

            if not changes:
                return status
            try:
                await self.repository.transition_state(pid, listing.version, changes)
                return status
            except ConcurrencyConflict:
                continue
        return MarketplaceSaleStatus.UNKNOWN

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _transition(self, listing: ListingState, event: ReconciliationEvent, changes: Dict[str, Any]) -> ListingState:
        updated = await self.repository.transition_state(listing.marketplace_pid, listing.version, changes)
        if updated.availability is not listing.availability:
            logger.info("Listing %s: %s -> %s on %s", listing.marketplace_pid,
                        listing.availability.value, updated.availability.value, event.kind.value)
            await self._audit_transition(listing.marketplace_pid, listing.availability, updated.availability,
                                         event.kind.value, event.platform_order_id)
        return updated

    async def _audit_transition(self, pid, from_state, to_state, event_name, order_id=None):
        if self.activity:
            await self.activity.log_transition(pid, from_state.value, to_state.value, event_name,
                                               {"platform_order_id": order_id} if order_id else None)

    async def _audit(self, action: str, listing: ListingState, event: ReconciliationEvent, details: Dict[str, Any]):
        if self.activity:
            await self.activity.log_activity(
                action=action,
                entity_type="listing",
                entity_id=listing.marketplace_pid,
                details={
                    "event": event.kind.value,
                    "platform_order_id": event.platform_order_id,
                    "state": listing.availability.value,
                    **details,
                },
            )

    @staticmethod
    def _result(listing, event, action, to_state, placement=None, detail=None, from_state=None) -> EngineResult:
        return EngineResult(
            pid=listing.marketplace_pid,
            event=event.kind,
            action=action,
            from_state=from_state or listing.availability,
            to_state=to_state,
            placement=placement,
            detail=detail,
        )
