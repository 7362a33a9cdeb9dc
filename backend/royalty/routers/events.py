"""
Ingestion API Routes

Internal endpoints fed by collaborators: stream/play events, period revenue
totals, creator profiles and collaboration splits. All require the internal key.
"""
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_engine, verify_internal_key
from ..database import get_db
from ..errors import DuplicateTransaction
from ..models.db_models import CreatorProfileDB, LedgerAccountDB, utcnow
from ..models.domain import ArtistTier, RevenueSource, StreamEventData
from ..services.engine import RoyaltyEngine


router = APIRouter(prefix="/internal", tags=["ingestion"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class StreamEventIn(BaseModel):
    creator_id: str = Field(..., min_length=1, max_length=64)
    viewer_id: Optional[str] = None
    duration_seconds: float = Field(..., ge=0)
    fraud_score: float = Field(..., ge=0, le=1)
    occurred_at: datetime
    event_id: Optional[str] = Field(None, max_length=100)


class StreamEventBatch(BaseModel):
    events: List[StreamEventIn]


class RevenueIn(BaseModel):
    period_start: date
    period_end: date
    total_revenue_cents: int = Field(..., ge=0)
    source_type: RevenueSource = RevenueSource.SUBSCRIPTION
    external_id: Optional[str] = Field(None, max_length=100)


class CreatorProfileIn(BaseModel):
    """Profile as maintained by the catalogue service; omitted fields are left unchanged."""
    tier: Optional[ArtistTier] = None
    country: Optional[str] = Field(None, min_length=2, max_length=2)
    connect_account_id: Optional[str] = None
    bank_iban: Optional[str] = Field(None, max_length=34)
    bank_account_name: Optional[str] = None
    crypto_wallet: Optional[str] = None
    crypto_asset: Optional[str] = None
    upload_count: Optional[int] = Field(None, ge=0)
    quality_score: Optional[float] = Field(None, ge=0, le=1)
    total_streams: Optional[int] = Field(None, ge=0)
    min_payout_cents: Optional[int] = Field(None, ge=0)


class CollaborationSplitIn(BaseModel):
    total_cents: int = Field(..., gt=0)
    splits: Dict[str, float]  # creator_id -> percentage


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/stream-events", response_model=dict)
async def ingest_stream_events(
    batch: StreamEventBatch,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: bool = Depends(verify_internal_key),
):
    """Store a batch of play/view events; replayed event ids are skipped."""
    result = engine.ingest_stream_events(db, [
        StreamEventData(
            creator_id=e.creator_id,
            viewer_id=e.viewer_id,
            duration_seconds=e.duration_seconds,
            fraud_score=e.fraud_score,
            occurred_at=_naive_utc(e.occurred_at),
            event_id=e.event_id,
        )
        for e in batch.events
    ])
    db.commit()
    return result


@router.post("/revenue", response_model=dict)
async def record_revenue(
    revenue: RevenueIn,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: bool = Depends(verify_internal_key),
):
    """Record a period revenue total for the monthly distribution."""
    try:
        row = engine.distributor(db).record_period_revenue(
            revenue.period_start,
            revenue.period_end,
            revenue.total_revenue_cents,
            revenue.source_type,
            external_id=revenue.external_id,
        )
    except DuplicateTransaction as e:
        return {"duplicate": True, "period_revenue_id": e.existing_id}
    db.commit()
    return {"duplicate": False, "period_revenue_id": row.id}


@router.put("/creators/{creator_id}", response_model=dict)
async def upsert_creator_profile(
    creator_id: str,
    profile: CreatorProfileIn,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Create or update a creator's tier, payout profile and promotion metrics."""
    now = utcnow()
    row = db.get(CreatorProfileDB, creator_id)
    if row is None:
        row = CreatorProfileDB(creator_id=creator_id, created_at=now)
        db.add(row)

    fields = profile.model_dump(exclude_unset=True)
    min_payout = fields.pop("min_payout_cents", None)
    if fields.get("country"):
        fields["country"] = fields["country"].upper()
    for name, value in fields.items():
        setattr(row, name, value)
    row.updated_at = now

    # Threshold lives on the ledger account, which exists only after the first credit
    threshold_applied = False
    if "min_payout_cents" in profile.model_fields_set:
        account = db.get(LedgerAccountDB, creator_id)
        if account is not None:
            account.min_payout_cents = min_payout
            threshold_applied = True

    db.commit()
    return {
        "creator_id": creator_id,
        "updated": sorted(profile.model_fields_set),
        "min_payout_applied": threshold_applied,
    }


@router.post("/collaborations/{content_id}/split", response_model=dict)
async def split_collaboration(
    content_id: str,
    body: CollaborationSplitIn,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: bool = Depends(verify_internal_key),
):
    """Credit each collaborator their percentage of a content item's earnings."""
    results = engine.ledger(db).apply_collaborator_split(content_id, body.total_cents, body.splits)
    db.commit()
    return {"content_id": content_id, "credits": results}
