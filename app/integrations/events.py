"""
Canonical reconciliation events.

Webhooks and marketplace polls are normalized into ReconciliationEvent
before they reach the job queue. Events are keyed by marketplace_pid so
every event for one item is applied in arrival order by a single worker.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from app.core.enums import EventKind
from app.core.utils import utc_now


class ReconciliationEvent(BaseModel):
    kind: EventKind
    listing_key: str
    platform_order_id: Optional[str] = None
    observed_at: datetime = Field(default_factory=utc_now)
    # Only for MarketplaceOrderStatusChanged
    order_status: Optional[str] = None
    source: Optional[str] = None

    def describe(self) -> str:
        order = f" order={self.platform_order_id}" if self.platform_order_id else ""
        status = f" status={self.order_status}" if self.order_status else ""
        return f"{self.kind.value} pid={self.listing_key}{order}{status}"
