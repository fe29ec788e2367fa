"""
Schemas for listing state snapshots and catalog upserts.
"""

from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.enums import AvailabilityState, SoldFrom

VOID_PREFIX = "void:"


class ListingState(BaseModel):
    """
    Read-only snapshot of a Listing row. The engine decides transitions
    against this snapshot and writes back with compare-and-swap on ``version``.
    """
    model_config = ConfigDict(from_attributes=True, frozen=True)

    marketplace_pid: str
    storefront_id: Optional[str] = None
    storefront_inventory_item_id: Optional[str] = None
    title: str = ""
    original_price_minor: Optional[int] = None

    availability: AvailabilityState = AvailabilityState.ACTIVE
    sold_from: SoldFrom = SoldFrom.NONE
    pending_remote_order: bool = False
    remote_order_ids: List[str] = Field(default_factory=list)
    storefront_order_id: Optional[str] = None
    cancelled_storefront_order_ids: List[str] = Field(default_factory=list)
    storefront_synced: bool = True

    needs_review: bool = False
    review_reason: Optional[str] = None
    sync_attempt_count: int = 0
    last_error_code: Optional[str] = None

    sold_at: Optional[datetime] = None
    last_reconciled_at: Optional[datetime] = None
    last_seen_selling_at: Optional[datetime] = None
    not_found_since: Optional[datetime] = None

    version: int = 1

    @field_validator('remote_order_ids', 'cancelled_storefront_order_ids', mode='before')
    @classmethod
    def coerce_id_list(cls, v):
        if v is None:
            return []
        return [str(item) for item in v]

    @property
    def effective_quantity(self) -> int:
        """Quantity exposed on the storefront: 1 only while sellable."""
        return 1 if self.availability.is_sellable else 0

    def active_remote_order_ids(self) -> List[str]:
        """Remote order ids that have not been voided by a later tombstone."""
        voided = {oid[len(VOID_PREFIX):] for oid in self.remote_order_ids if oid.startswith(VOID_PREFIX)}
        return [
            oid for oid in self.remote_order_ids
            if not oid.startswith(VOID_PREFIX) and oid not in voided
        ]


class CatalogSnapshot(BaseModel):
    """Catalog-owned fields pushed in by the ingestion pipeline."""
    marketplace_pid: str
    storefront_id: Optional[str] = None
    storefront_inventory_item_id: Optional[str] = None
    title: str
    original_price_minor: Optional[int] = None

    @field_validator('marketplace_pid', mode='before')
    @classmethod
    def pid_as_string(cls, v):
        if v is None or str(v).strip() == '':
            raise ValueError('marketplace_pid is required')
        return str(v).strip()


class ListingSummary(BaseModel):
    """Admin view of a listing."""
    model_config = ConfigDict(from_attributes=True)

    marketplace_pid: str
    storefront_id: Optional[str] = None
    title: str
    availability: AvailabilityState
    sold_from: SoldFrom
    pending_remote_order: bool
    remote_order_ids: List[str]
    storefront_order_id: Optional[str] = None
    needs_review: bool
    review_reason: Optional[str] = None
    last_error_code: Optional[str] = None
    version: int
