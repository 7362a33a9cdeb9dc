"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
Manual job triggers, the timer tick, run status and single-account payouts.
"""
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import get_engine, verify_internal_key
from ..database import get_db
from ..errors import JobAlreadyRunning
from ..models.domain import JobType
from ..services.engine import RoyaltyEngine


router = APIRouter(prefix="/internal", tags=["scheduler"])


class JobTriggerRequest(BaseModel):
    period_start: Optional[date] = None


class TickRequest(BaseModel):
    now: Optional[datetime] = None


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

# Handlers that can reach a payout channel are plain `def`: channel calls are
# blocking HTTP requests, so FastAPI runs them in its threadpool.

@router.post("/jobs/{job_type}", response_model=dict)
def trigger_job(
    job_type: JobType,
    body: Optional[JobTriggerRequest] = None,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: bool = Depends(verify_internal_key),
):
    """
    Run one job for a period.

    Without a period_start the elapsed period is used. A period that already
    succeeded returns its stored result without running again.
    """
    period_start = body.period_start if body else None
    try:
        return engine.scheduler(db).trigger(job_type, period_start)
    except JobAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/scheduler/tick", response_model=dict)
def scheduler_tick(
    body: Optional[TickRequest] = None,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: bool = Depends(verify_internal_key),
):
    """
    Fire every job that is due.

    System-automatic - called by the external timer.
    """
    now = body.now if body and body.now else None
    if now is not None and now.tzinfo is not None:
        now = now.replace(tzinfo=None) - now.utcoffset()
    fired = engine.scheduler(db).tick(now)
    return {"fired": fired, "count": len(fired)}


@router.get("/jobs", response_model=dict)
async def list_job_runs(
    job_type: Optional[JobType] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: bool = Depends(verify_internal_key),
):
    """Recent scheduler runs with status, attempts and errors."""
    return {"runs": engine.scheduler(db).list_runs(job_type, limit)}


@router.post("/payouts/{account_id}", response_model=dict)
def run_single_payout(
    account_id: str,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: bool = Depends(verify_internal_key),
):
    """Pay out one account now, outside the scheduled run."""
    return engine.orchestrator(db).process_payout(account_id).to_dict()
