"""
Circuit breaker guarding marketplace order placement.

Opened by failures that no amount of retrying will fix (expired
credentials, empty purchasing balance). While open, placements are held
and at most one probe call is allowed per probe interval.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.core.utils import utc_now

logger = logging.getLogger(__name__)


class MarketplaceCircuitBreaker:

    def __init__(self, probe_interval_seconds: int = 300, clock: Callable[[], datetime] = utc_now):
        self.probe_interval = timedelta(seconds=probe_interval_seconds)
        self._clock = clock
        self._opened_at: Optional[datetime] = None
        self._last_probe_at: Optional[datetime] = None
        self.reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._opened_at is not None

    def trip(self, reason: str) -> None:
        if not self.is_open:
            logger.error("Marketplace circuit opened: %s", reason)
            self._opened_at = self._clock()
        self.reason = reason
        self._last_probe_at = self._clock()

    def reset(self) -> None:
        if self.is_open:
            logger.info("Marketplace circuit closed (was open for: %s)", self.reason)
        self._opened_at = None
        self._last_probe_at = None
        self.reason = None

    def probe_due(self) -> bool:
        """True once per probe interval while open. Claims the probe slot."""
        if not self.is_open:
            return False
        now = self._clock()
        if self._last_probe_at is not None and now - self._last_probe_at < self.probe_interval:
            return False
        self._last_probe_at = now
        return True

    def status(self) -> dict:
        return {
            "open": self.is_open,
            "reason": self.reason,
            "opened_at": self._opened_at.isoformat() if self._opened_at else None,
        }
