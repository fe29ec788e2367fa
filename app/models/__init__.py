from .listing import Listing
from .job import ReconciliationJob
from .activity_log import ActivityLog

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'Listing',
    'ReconciliationJob',
    'ActivityLog',
]
