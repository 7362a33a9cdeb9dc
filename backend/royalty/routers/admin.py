"""
Royalty Engine - Admin Router
Compliance console: audit log queries and export, plus the few operator
actions the engine allows (fraud reversal, manual invoice settlement,
priority override). Every action is itself audited.
"""
from datetime import date, datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import Principal, get_engine, require_admin
from ..database import get_db
from ..services.engine import RoyaltyEngine
from ..services.scheduler import manual_override

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class AuditEntry(BaseModel):
    id: str
    created_at: Optional[str] = None
    event_type: str
    actor: Optional[str] = None
    account_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    amount_cents: Optional[int] = None
    gross_cents: Optional[int] = None
    tax_cents: Optional[int] = None
    net_cents: Optional[int] = None
    channel: Optional[str] = None
    event_metadata: Optional[dict] = None


class AuditListResponse(BaseModel):
    entries: List[AuditEntry]
    count: int


class ReversalRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class SettleRequest(BaseModel):
    reference: Optional[str] = Field(None, max_length=120)


class PriorityOverrideRequest(BaseModel):
    active: bool
    priority_level: int = Field(1, ge=1, le=5)


# =============================================================================
# AUDIT LOG
# =============================================================================

@router.get("/audit", response_model=AuditListResponse)
async def query_audit_log(
    account_id: Optional[str] = None,
    event_type: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: Principal = Depends(require_admin),
):
    audit = engine.audit(db)
    entries = [audit.to_dict(entry) for entry in audit.query(account_id, event_type, since, limit)]
    return AuditListResponse(entries=entries, count=len(entries))


@router.get("/audit/export")
async def export_audit_log(
    fmt: str = Query("json", pattern="^(json|csv)$"),
    account_id: Optional[str] = None,
    event_type: Optional[str] = None,
    since: Optional[datetime] = None,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: Principal = Depends(require_admin),
):
    """Compliance export, oldest entry first."""
    content = engine.audit(db).export(fmt, account_id=account_id, event_type=event_type, since=since)
    media_type = "text/csv" if fmt == "csv" else "application/json"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="audit_log.{fmt}"'},
    )


# =============================================================================
# OPERATOR ACTIONS
# =============================================================================

@router.post("/transactions/{transaction_id}/reverse")
async def reverse_transaction(
    transaction_id: str,
    body: ReversalRequest,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    admin: Principal = Depends(require_admin),
):
    """Fraud reversal: a new negative transaction referencing the original."""
    reversal_id = engine.ledger(db).reverse_transaction(transaction_id, body.reason)
    db.commit()
    logger.info(f"Admin {admin.subject} reversed transaction {transaction_id}")
    return {"reversal_transaction_id": reversal_id, "reversed_transaction_id": transaction_id}


@router.post("/payouts/{payout_id}/settle")
async def settle_manual_invoice(
    payout_id: str,
    body: SettleRequest,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    admin: Principal = Depends(require_admin),
):
    """Confirm a manual invoice was paid out of band."""
    payout = engine.orchestrator(db).settle_manual_invoice(payout_id, body.reference)
    logger.info(f"Admin {admin.subject} settled manual invoice {payout_id}")
    return {
        "payout_id": payout.id,
        "status": payout.status.value,
        "gross_cents": payout.gross_cents,
        "net_cents": payout.net_cents,
    }


@router.put("/priority/{creator_id}")
async def override_priority(
    creator_id: str,
    body: PriorityOverrideRequest,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    admin: Principal = Depends(require_admin),
):
    """Pin a priority designation; auto-promotion will not touch it afterwards."""
    designation = manual_override(db, creator_id, body.active, body.priority_level, engine.audit(db))
    db.commit()
    logger.info(f"Admin {admin.subject} pinned priority for {creator_id}")
    return {
        "creator_id": creator_id,
        "active": designation.active,
        "priority_level": designation.priority_level,
        "manual_override": designation.manual_override,
    }


@router.get("/treasury")
async def treasury_balances(
    period_start: date,
    period_end: date,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    _: Principal = Depends(require_admin),
):
    return {
        "period_start": period_start.isoformat(),
        "period_end": period_end.isoformat(),
        "funds": engine.distributor(db).fund_balances(period_start, period_end),
    }
