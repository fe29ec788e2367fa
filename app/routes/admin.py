from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import PollTier
from app.core.exceptions import ValidationError
from app.core.security import get_current_username
from app.core.utils import models_to_schemas
from app.dependencies import ReconciliationServices, get_db, get_services
from app.schemas.job import JobRead
from app.schemas.listing import CatalogSnapshot, ListingSummary
from app.services.job_queue import count_jobs_by_status, fetch_parked_jobs

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/jobs/parked", response_model=List[JobRead])
async def list_parked_jobs(
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_username)
):
    """Jobs that exhausted their retries or failed permanently"""
    jobs = await fetch_parked_jobs(db, limit=limit)
    return models_to_schemas(jobs, JobRead)


@router.post("/jobs/{job_id}/requeue")
async def requeue_job(
    job_id: int,
    services: ReconciliationServices = Depends(get_services),
    current_user: str = Depends(get_current_username)
):
    """Put a parked job back on the queue with a fresh retry budget"""
    if not await services.queue.requeue_parked(job_id):
        raise HTTPException(status_code=404, detail=f"Parked job {job_id} not found")
    return {"message": f"Job {job_id} requeued", "job_id": job_id}


@router.get("/jobs/status")
async def job_queue_status(
    db: AsyncSession = Depends(get_db),
    services: ReconciliationServices = Depends(get_services),
    current_user: str = Depends(get_current_username)
):
    return {
        "queue": services.queue.status(),
        "counts": await count_jobs_by_status(db),
        "circuit": services.circuit.status(),
    }


@router.get("/listings/review", response_model=List[ListingSummary])
async def listings_needing_review(
    services: ReconciliationServices = Depends(get_services),
    current_user: str = Depends(get_current_username)
):
    """Listings held for an operator: conflicts, held placements, unconfirmed orders"""
    listings = await services.repository.list_needing_review()
    return [ListingSummary.model_validate(listing.model_dump()) for listing in listings]


@router.get("/listings/{pid}", response_model=ListingSummary)
async def get_listing(
    pid: str,
    services: ReconciliationServices = Depends(get_services),
    current_user: str = Depends(get_current_username)
):
    listing = await services.repository.get_by_marketplace_id(pid)
    if listing is None:
        raise HTTPException(status_code=404, detail=f"Listing {pid} not found")
    return ListingSummary.model_validate(listing.model_dump())


@router.put("/listings", response_model=ListingSummary)
async def upsert_listing(
    snapshot: CatalogSnapshot,
    services: ReconciliationServices = Depends(get_services),
    current_user: str = Depends(get_current_username)
):
    """Create or refresh a listing's catalog fields"""
    listing = await services.repository.upsert_from_catalog(snapshot)
    return ListingSummary.model_validate(listing.model_dump())


@router.post("/polls/{tier}")
async def trigger_poll(
    tier: PollTier,
    services: ReconciliationServices = Depends(get_services),
    current_user: str = Depends(get_current_username)
):
    """Manually run one poll tier"""
    try:
        return await services.poller.run_tier(tier)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/circuit/reset")
async def reset_circuit(
    services: ReconciliationServices = Depends(get_services),
    current_user: str = Depends(get_current_username)
):
    services.circuit.reset()
    return services.circuit.status()
