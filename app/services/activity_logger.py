# app/services/activity_logger.py
import logging
from typing import Dict, Any, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.activity_log import ActivityLog
from app.core.utils import utc_now

logger = logging.getLogger(__name__)


class ActivityLogger:
    """
    Audit trail for reconciliation activity.

    Each entry is written in its own short transaction so it never joins
    (or rolls back with) a listing compare-and-swap.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def log_activity(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        platform: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[ActivityLog]:
        """
        Log an activity in the system.

        Args:
            action: transition, duplicate, invalid_transition, placement, parked
            entity_type: listing or job
            entity_id: marketplace pid or job id
            platform: Optional platform the activity concerns
            details: Optional additional details as a dictionary
        """
        try:
            async with self.session_factory() as session:
                log_entry = ActivityLog(
                    action=action,
                    entity_type=entity_type,
                    entity_id=str(entity_id),
                    platform=platform,
                    details=details,
                    created_at=utc_now(),
                )
                session.add(log_entry)
                await session.commit()
        except SQLAlchemyError as e:
            # Audit rows are best effort; the listing state is the source of truth
            logger.error(f"Error logging activity {action} {entity_type} {entity_id}: {str(e)}")
            return None

        logger.debug(f"Activity logged: {action} {entity_type} {entity_id} (platform: {platform or 'N/A'})")
        return log_entry

    async def log_transition(
        self,
        pid: str,
        from_state: str,
        to_state: str,
        event: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[ActivityLog]:
        return await self.log_activity(
            action="transition",
            entity_type="listing",
            entity_id=pid,
            details={
                "from": from_state,
                "to": to_state,
                "event": event,
                **(details or {}),
            },
        )

    async def log_placement(self, pid: str, outcome: str, details: Dict[str, Any]) -> Optional[ActivityLog]:
        return await self.log_activity(
            action="placement",
            entity_type="listing",
            entity_id=pid,
            platform="marketplace",
            details={"outcome": outcome, **details},
        )
