from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.dependencies import get_db
from app.scheduler import get_scheduler_status

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "service": "Sale Reconciliation Service"}


@router.get("/health/db")
async def database_health(db: AsyncSession = Depends(get_db)):
    """Check database connectivity"""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return {"status": "unhealthy", "database": "error", "error": str(e)}
    return {"status": "healthy", "database": "connected"}


@router.get("/health/workers")
async def worker_health(request: Request):
    """Queue, circuit breaker and scheduler state"""
    services = getattr(request.app.state, "services", None)
    if services is None:
        return {"status": "starting"}
    return {
        "status": "healthy" if services.queue.is_running else "degraded",
        "queue": services.queue.status(),
        "circuit": services.circuit.status(),
        "scheduler": await get_scheduler_status(),
    }
