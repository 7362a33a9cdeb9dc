"""
Royalty Engine - Account Router
Creator-facing, read-only views of confirmed ledger state.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, get_current_principal, get_engine, require_account_access
from ..database import get_db
from ..services.engine import RoyaltyEngine

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.get("/{account_id}/summary")
async def get_account_summary(
    account_id: str,
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    principal: Principal = Depends(get_current_principal),
):
    """Balance, lifetime earnings, lifetime payouts and recent transactions."""
    require_account_access(account_id, principal)
    return engine.ledger(db).get_account_summary(account_id, limit=limit)


@router.get("/{account_id}/payouts")
async def get_payout_history(
    account_id: str,
    months: int = Query(12, ge=1, le=120),
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
    principal: Principal = Depends(get_current_principal),
):
    """Completed payouts within the last `months` months."""
    require_account_access(account_id, principal)
    return {
        "account_id": account_id,
        "payouts": engine.ledger(db).get_payout_history(account_id, months=months),
    }
