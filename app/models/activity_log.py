# app/models/activity_log.py
from sqlalchemy import Column, Integer, String, DateTime, JSON, text

from app.database import Base
from app.core.utils import utc_now


class ActivityLog(Base):
    """
    Audit trail of reconciliation activity.

    This includes:
    - State transitions (with from/to state and the event that caused them)
    - Duplicate and rejected events
    - Remote order placements, conflicts and holds
    - Parked jobs
    """
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True)
    action = Column(String(50), nullable=False, index=True)  # 'transition', 'duplicate', 'invalid_transition', 'placement', 'parked'
    entity_type = Column(String(50), nullable=False, index=True)  # 'listing', 'job'
    entity_id = Column(String(100), nullable=False, index=True)
    platform = Column(String(50), nullable=True, index=True)

    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, index=True, default=utc_now, server_default=text("CURRENT_TIMESTAMP"))

    def __repr__(self):
        return f"<ActivityLog {self.action} {self.entity_type} {self.entity_id}>"
