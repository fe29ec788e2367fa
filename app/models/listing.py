# app/models/listing.py
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Text, BigInteger, text

from app.database import Base
from app.core.enums import AvailabilityState, SoldFrom
from app.core.utils import utc_now


class Listing(Base):
    """
    One single-unit item listed on both the storefront and the marketplace.

    Sale state columns (availability, sold_from, pending_remote_order,
    remote_order_ids, ...) are only written through
    ListingRepository.transition_state, which bumps ``version``.
    """
    __tablename__ = "listings"

    id = Column(Integer, primary_key=True)
    marketplace_pid = Column(String(64), nullable=False, unique=True, index=True)
    storefront_id = Column(String(128), nullable=True, index=True)
    storefront_inventory_item_id = Column(String(128), nullable=True)
    title = Column(Text, nullable=False, default="")
    original_price_minor = Column(BigInteger, nullable=True)

    availability = Column(String(32), nullable=False, default=AvailabilityState.ACTIVE.value, index=True)
    sold_from = Column(String(16), nullable=False, default=SoldFrom.NONE.value)
    pending_remote_order = Column(Boolean, nullable=False, default=False, index=True)
    remote_order_ids = Column(JSON, nullable=False, default=list)
    storefront_order_id = Column(String(128), nullable=True)
    cancelled_storefront_order_ids = Column(JSON, nullable=False, default=list)
    storefront_synced = Column(Boolean, nullable=False, default=True)

    needs_review = Column(Boolean, nullable=False, default=False)
    review_reason = Column(Text, nullable=True)
    sync_attempt_count = Column(Integer, nullable=False, default=0)
    last_error_code = Column(String(128), nullable=True)

    sold_at = Column(DateTime, nullable=True)
    last_reconciled_at = Column(DateTime, nullable=True)
    last_seen_selling_at = Column(DateTime, nullable=True)
    not_found_since = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utc_now, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now, server_default=text("CURRENT_TIMESTAMP"))

    def __repr__(self):
        return f"<Listing pid={self.marketplace_pid} {self.availability} v{self.version}>"
