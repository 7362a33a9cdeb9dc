"""
Processor Webhook Router

Receives asynchronous payment-processor events. Requests are authenticated
with an HMAC-SHA256 signature of the raw body.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..auth import get_engine
from ..database import get_db
from ..errors import DuplicateTransaction, ReconciliationMismatch
from ..services.engine import RoyaltyEngine
from ..services.payouts import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/processor")
async def processor_webhook(
    request: Request,
    db: Session = Depends(get_db),
    engine: RoyaltyEngine = Depends(get_engine),
):
    body = await request.body()
    if not verify_signature(engine.settings.processor_webhook_secret, body, request.headers.get(SIGNATURE_HEADER)):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Event must be a JSON object")

    try:
        result = engine.reconciler(db).handle_event(event)
    except DuplicateTransaction:
        db.rollback()
        return {"status": "duplicate", "duplicate": True, "event_id": event.get("id")}
    except ReconciliationMismatch as e:
        # Keep the audit entry; nothing else was changed
        db.commit()
        return JSONResponse(
            status_code=202,
            content={
                "status": "mismatch",
                "external_reference": e.external_reference,
                "local_status": e.local_status,
                "remote_status": e.remote_status,
            },
        )

    db.commit()
    return {**result, "event_id": event.get("id")}
