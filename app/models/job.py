from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, text

from app.database import Base
from app.core.enums import JobStatus
from app.core.utils import utc_now


class ReconciliationJob(Base):
    """
    Durable queue row holding one reconciliation event for a listing.
    """

    __tablename__ = "reconciliation_jobs"

    id = Column(Integer, primary_key=True)
    listing_key = Column(String(64), nullable=False, index=True)
    event_kind = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(32), nullable=False, default=JobStatus.QUEUED.value, index=True)  # queued, in_progress, completed, parked
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(
        DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationJob(id={self.id}, key={self.listing_key}, kind={self.event_kind}, status={self.status})>"
