"""
Durable, per-listing single-flight job queue for reconciliation events.

Every enqueued event is first written to ``reconciliation_jobs``; the
in-process dispatcher then partitions jobs by listing key. A key is held
by at most one worker at a time and its jobs run in arrival order, while
different keys run in parallel. A failing job stays at the head of its
partition (blocking later events for that listing) until it succeeds or
is parked.
"""

import asyncio
import logging
from collections import deque
from datetime import timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.enums import JobStatus
from app.core.exceptions import (
    DataIntegrityError,
    ListingNotFoundError,
    PermanentGatewayError,
    ValidationError,
)
from app.core.utils import utc_now
from app.integrations.events import ReconciliationEvent
from app.integrations.retry import compute_backoff_seconds
from app.models.job import ReconciliationJob
from app.services.activity_logger import ActivityLogger
from app.services.notification_service import OperatorAlertService

logger = logging.getLogger(__name__)

# Errors that will fail identically on every retry
PERMANENT_ERRORS = (ListingNotFoundError, DataIntegrityError, ValidationError, PermanentGatewayError)

EventHandler = Callable[[ReconciliationEvent], Awaitable[Any]]


# ----------------------------------------------------------------------
# Job row helpers
# ----------------------------------------------------------------------
async def insert_job(db: AsyncSession, event: ReconciliationEvent) -> ReconciliationJob:
    job = ReconciliationJob(
        listing_key=event.listing_key,
        event_kind=event.kind.value,
        payload=event.model_dump(mode="json"),
        status=JobStatus.QUEUED.value,
        attempts=0,
    )
    db.add(job)
    await db.flush()
    await db.refresh(job)
    return job


async def fetch_unfinished_jobs(db: AsyncSession) -> List[ReconciliationJob]:
    """Queued and interrupted jobs, oldest first."""
    stmt = (
        select(ReconciliationJob)
        .where(ReconciliationJob.status.in_([JobStatus.QUEUED.value, JobStatus.IN_PROGRESS.value]))
        .order_by(ReconciliationJob.id.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def fetch_parked_jobs(db: AsyncSession, limit: int = 100) -> List[ReconciliationJob]:
    stmt = (
        select(ReconciliationJob)
        .where(ReconciliationJob.status == JobStatus.PARKED.value)
        .order_by(ReconciliationJob.updated_at.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_jobs_by_status(db: AsyncSession) -> Dict[str, int]:
    stmt = select(ReconciliationJob.status, func.count(ReconciliationJob.id)).group_by(ReconciliationJob.status)
    result = await db.execute(stmt)
    return {status: count for status, count in result.all()}


class ReconciliationJobQueue:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        handler: EventHandler,
        alerts: Optional[OperatorAlertService] = None,
        activity: Optional[ActivityLogger] = None,
        concurrency: int = 4,
        max_attempts: int = 5,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
    ):
        self.session_factory = session_factory
        self.handler = handler
        self.alerts = alerts
        self.activity = activity
        self.concurrency = max(1, concurrency)
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self._partitions: Dict[str, Deque[int]] = {}
        self._scheduled: Set[str] = set()
        self._ready: asyncio.Queue = asyncio.Queue()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._in_flight: Dict[str, int] = {}
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._stopping = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._stopping = False
        await self.recover()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"reconciliation-worker-{i}")
            for i in range(self.concurrency)
        ]
        self._running = True
        logger.info("Reconciliation queue started with %s workers", self.concurrency)

    async def stop(self) -> None:
        """Stop taking new work and wait for in-flight jobs to finish."""
        if not self._running:
            return
        self._stopping = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for _ in self._workers:
            self._ready.put_nowait(None)
        await asyncio.gather(*self._workers)
        self._workers = []
        self._running = False
        # Unstarted jobs stay queued in the database for the next start
        self._partitions.clear()
        self._scheduled.clear()
        self._ready = asyncio.Queue()
        logger.info("Reconciliation queue stopped")

    async def recover(self) -> int:
        """Load queued and interrupted jobs from the database into the dispatcher."""
        async with self.session_factory() as db:
            jobs = await fetch_unfinished_jobs(db)
            for job in jobs:
                if job.status == JobStatus.IN_PROGRESS.value:
                    job.status = JobStatus.QUEUED.value
            await db.commit()

        now = utc_now()
        for job in jobs:
            if job.listing_key in self._partitions and job.id in self._partitions[job.listing_key]:
                continue
            delay = 0.0
            if job.next_attempt_at and job.next_attempt_at > now:
                delay = (job.next_attempt_at - now).total_seconds()
            self._add(job.listing_key, job.id, delay)
        if jobs:
            logger.info("Recovered %s unfinished reconciliation jobs", len(jobs))
        return len(jobs)

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        """Block until every partition has drained."""
        while self._partitions or self._in_flight:
            await asyncio.sleep(poll_interval)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------
    async def enqueue(self, event: ReconciliationEvent) -> int:
        async with self.session_factory() as db:
            job = await insert_job(db, event)
            await db.commit()
        logger.info("Queued job %s: %s", job.id, event.describe())
        if self._running and not self._stopping:
            self._add(event.listing_key, job.id)
        return job.id

    async def requeue_parked(self, job_id: int) -> bool:
        async with self.session_factory() as db:
            job = await db.get(ReconciliationJob, job_id)
            if job is None or job.status != JobStatus.PARKED.value:
                return False
            job.status = JobStatus.QUEUED.value
            job.attempts = 0
            job.next_attempt_at = None
            await db.commit()
            listing_key = job.listing_key
        logger.info("Parked job %s requeued", job_id)
        if self._running and not self._stopping:
            self._add(listing_key, job_id)
        return True

    def _add(self, key: str, job_id: int, delay: float = 0.0) -> None:
        partition = self._partitions.setdefault(key, deque())
        partition.append(job_id)
        if key in self._scheduled:
            return
        self._scheduled.add(key)
        if delay > 0:
            self._release_later(key, delay)
        else:
            self._ready.put_nowait(key)

    def _release_later(self, key: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._release, key)

    def _release(self, key: str) -> None:
        self._timers.pop(key, None)
        if not self._stopping:
            self._ready.put_nowait(key)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    async def _worker(self, index: int) -> None:
        while True:
            key = await self._ready.get()
            if key is None or self._stopping:
                return
            partition = self._partitions.get(key)
            if not partition:
                self._scheduled.discard(key)
                continue

            job_id = partition[0]
            self._in_flight[key] = job_id
            try:
                retry_delay = await self._run_job(job_id)
            finally:
                self._in_flight.pop(key, None)

            if retry_delay is not None:
                # Head-of-line: later events for this listing wait for the retry
                if not self._stopping:
                    self._release_later(key, retry_delay)
                continue

            partition.popleft()
            if partition and not self._stopping:
                self._ready.put_nowait(key)
            else:
                self._partitions.pop(key, None)
                self._scheduled.discard(key)

    async def _run_job(self, job_id: int) -> Optional[float]:
        """Run one job. Returns a retry delay in seconds, or None when the job is finished."""
        async with self.session_factory() as db:
            job = await db.get(ReconciliationJob, job_id)
            if job is None or job.status not in (JobStatus.QUEUED.value, JobStatus.IN_PROGRESS.value):
                return None
            job.status = JobStatus.IN_PROGRESS.value
            job.attempts += 1
            attempts = job.attempts
            payload = dict(job.payload)
            listing_key = job.listing_key
            event_kind = job.event_kind
            await db.commit()

        try:
            event = ReconciliationEvent.model_validate(payload)
            await self.handler(event)
        except PERMANENT_ERRORS as e:
            await self._park(job_id, listing_key, event_kind, f"{type(e).__name__}: {e}")
            return None
        except Exception as e:
            # Worker must survive any handler failure; the job records it
            error = f"{type(e).__name__}: {e}"
            if attempts >= self.max_attempts:
                logger.error("Job %s failed %s times, parking: %s", job_id, attempts, error)
                await self._park(job_id, listing_key, event_kind, error)
                return None
            delay = compute_backoff_seconds(attempts, base=self.backoff_base, cap=self.backoff_max)
            logger.warning("Job %s (%s %s) failed attempt %s/%s, retrying in %.1fs: %s",
                           job_id, event_kind, listing_key, attempts, self.max_attempts, delay, error)
            await self._mark(job_id, JobStatus.QUEUED, error, next_attempt_at=utc_now() + timedelta(seconds=delay))
            return delay

        await self._mark(job_id, JobStatus.COMPLETED, None)
        logger.debug("Job %s completed", job_id)
        return None

    async def _mark(self, job_id: int, status: JobStatus, error: Optional[str], next_attempt_at=None) -> None:
        async with self.session_factory() as db:
            job = await db.get(ReconciliationJob, job_id)
            if job is None:
                return
            job.status = status.value
            job.last_error = error[:2000] if error else None
            job.next_attempt_at = next_attempt_at
            await db.commit()

    async def _park(self, job_id: int, listing_key: str, event_kind: str, error: str) -> None:
        await self._mark(job_id, JobStatus.PARKED, error)
        logger.error("Job %s for %s parked: %s", job_id, listing_key, error)
        if self.activity:
            await self.activity.log_activity(
                action="parked",
                entity_type="job",
                entity_id=str(job_id),
                details={"listing_key": listing_key, "event": event_kind, "error": error},
            )
        if self.alerts:
            await self.alerts.alert_parked_job(job_id, listing_key, event_kind, error)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "workers": len(self._workers),
            "partitions": len(self._partitions),
            "in_flight": dict(self._in_flight),
        }
