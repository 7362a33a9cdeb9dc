"""
Processor Webhook Reconciliation

Asynchronous confirmation from the payment processor. A timed-out channel
call may still have succeeded, so local state is reconciled against the
processor's events, keyed by external reference (or by our payout id, which
is sent as the idempotency key on every call).

Policy: the processor may advance a pending payout. It may never rewrite a
completed or failed one; such disagreements are audited and raised as
ReconciliationMismatch for manual review.
"""
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from dateutil import parser as date_parser
from sqlalchemy.orm import Session

from ...errors import ReconciliationMismatch, ReservationNotHeld, ValidationError
from ...models.db_models import PayoutDB, PayoutReservationDB, utcnow
from ...models.domain import ActorType, PayoutStatus, ReservationStatus, RevenueSource, TransactionSource
from ..ledger import AuditLogService, LedgerService
from ..treasury import TreasuryDistributor

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Processor-Signature"


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)


class PayoutReconciler:
    """Applies processor webhook events to payouts, tips and revenue."""

    def __init__(
        self,
        db: Session,
        ledger: LedgerService,
        distributor: TreasuryDistributor,
        audit: Optional[AuditLogService] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.distributor = distributor
        self.audit = audit or ledger.audit

    def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Dispatch one webhook event.

        Returns:
            {"status": ...} describing what changed

        Raises:
            ValidationError: malformed event
            DuplicateTransaction: tip or revenue already recorded
            ReconciliationMismatch: processor disagrees with local state
        """
        event_type = event.get("type")
        event_id = event.get("id")
        data = event.get("data") or {}
        if not event_type or not event_id:
            raise ValidationError("Webhook event needs an id and a type")

        if event_type == "payout.paid":
            return self._payout_paid(event_id, data)
        if event_type == "payout.failed":
            return self._payout_failed(event_id, data)
        if event_type == "tip.succeeded":
            return self._tip_succeeded(event_id, data)
        if event_type == "invoice.paid":
            return self._invoice_paid(event_id, data)

        logger.info(f"Ignoring processor event {event_id} of type {event_type}")
        return {"status": "ignored", "event_type": event_type}

    # =========================================================================
    # PAYOUTS
    # =========================================================================

    def _payout_paid(self, event_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        payout = self._find_payout(data)
        reference = data.get("external_reference") or data.get("payout_id")

        if payout is None:
            self._mismatch(event_id, reference, None, "paid")
        if payout.status == PayoutStatus.COMPLETED:
            return {"status": "noop", "payout_id": payout.id}
        if payout.status == PayoutStatus.FAILED:
            self._mismatch(event_id, reference, payout, "paid")

        try:
            self.ledger.mark_paid(payout.account_id, payout.gross_cents, payout.reservation_id)
        except ReservationNotHeld:
            self._mismatch(event_id, reference, payout, "paid")

        if data.get("external_reference") and not payout.external_reference:
            payout.external_reference = data["external_reference"]
        payout.status = PayoutStatus.COMPLETED
        payout.processed_at = utcnow()
        self._audit_payout("payout_reconciled_paid", event_id, payout)
        logger.info(f"Payout {payout.id} confirmed paid by processor event {event_id}")
        return {"status": "completed", "payout_id": payout.id}

    def _payout_failed(self, event_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        payout = self._find_payout(data)
        reference = data.get("external_reference") or data.get("payout_id")

        if payout is None:
            self._mismatch(event_id, reference, None, "failed")
        if payout.status == PayoutStatus.FAILED:
            return {"status": "noop", "payout_id": payout.id}
        if payout.status == PayoutStatus.COMPLETED:
            self._mismatch(event_id, reference, payout, "failed")

        payout.status = PayoutStatus.FAILED
        payout.failure_reason = data.get("reason") or "reported failed by processor"
        payout.processed_at = utcnow()
        self.db.flush()

        restored = self._restore_if_orphaned(payout)
        self._audit_payout("payout_reconciled_failed", event_id, payout, restored=restored)
        return {"status": "failed", "payout_id": payout.id, "reservation_restored": restored}

    def _restore_if_orphaned(self, payout: PayoutDB) -> bool:
        """Restore the reservation unless another attempt still carries it."""
        reservation = self.db.get(PayoutReservationDB, payout.reservation_id)
        if reservation is None or reservation.status != ReservationStatus.HELD:
            return False
        other_live = (
            self.db.query(PayoutDB.id)
            .filter(
                PayoutDB.reservation_id == payout.reservation_id,
                PayoutDB.id != payout.id,
                PayoutDB.status.in_([PayoutStatus.PENDING, PayoutStatus.COMPLETED]),
            )
            .first()
        )
        if other_live is not None:
            return False
        self.ledger.restore_reservation(payout.account_id, reservation.amount_cents, reservation.id)
        return True

    # =========================================================================
    # TIPS & REVENUE
    # =========================================================================

    def _tip_succeeded(self, event_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        creator_id = data.get("creator_id")
        amount = data.get("amount_cents")
        if not creator_id or not isinstance(amount, int):
            raise ValidationError("tip.succeeded needs creator_id and integer amount_cents")
        transaction_id = self.ledger.credit(
            creator_id,
            amount,
            TransactionSource.TIP,
            f"tip:{event_id}",
            metadata={"event_id": event_id, "tipper_id": data.get("tipper_id")},
            actor=ActorType.PROCESSOR,
        )
        return {"status": "credited", "transaction_id": transaction_id}

    def _invoice_paid(self, event_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            period_start = date_parser.isoparse(data["period_start"]).date()
            period_end = date_parser.isoparse(data["period_end"]).date()
            total = data["total_revenue_cents"]
            source_type = RevenueSource(data.get("source_type", RevenueSource.SUBSCRIPTION.value))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"invoice.paid is malformed: {e}")
        row = self.distributor.record_period_revenue(
            period_start, period_end, total, source_type, external_id=event_id
        )
        return {"status": "recorded", "period_revenue_id": row.id}

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _find_payout(self, data: Dict[str, Any]) -> Optional[PayoutDB]:
        reference = data.get("external_reference")
        if reference:
            payout = self.db.query(PayoutDB).filter(PayoutDB.external_reference == reference).first()
            if payout is not None:
                return payout
        payout_id = data.get("payout_id")
        if payout_id:
            return self.db.get(PayoutDB, payout_id)
        if not reference:
            raise ValidationError("Payout event needs external_reference or payout_id")
        return None

    def _mismatch(self, event_id: str, reference: str, payout: Optional[PayoutDB], remote_status: str):
        local_status = payout.status.value if payout else None
        logger.warning(
            f"Reconciliation mismatch for {reference}: local={local_status} remote={remote_status}"
        )
        self.audit.record(
            "reconciliation_mismatch",
            actor=ActorType.PROCESSOR,
            account_id=payout.account_id if payout else None,
            entity_type="payout",
            entity_id=payout.id if payout else None,
            gross_cents=payout.gross_cents if payout else None,
            channel=payout.method.value if payout else None,
            metadata={"event_id": event_id, "reference": reference,
                      "local_status": local_status, "remote_status": remote_status},
        )
        raise ReconciliationMismatch(reference, local_status, remote_status)

    def _audit_payout(self, event_type: str, event_id: str, payout: PayoutDB, **extra) -> None:
        self.audit.record(
            event_type,
            actor=ActorType.PROCESSOR,
            account_id=payout.account_id,
            entity_type="payout",
            entity_id=payout.id,
            gross_cents=payout.gross_cents,
            tax_cents=payout.tax_cents,
            net_cents=payout.net_cents,
            channel=payout.method.value,
            metadata={"event_id": event_id, "external_reference": payout.external_reference, **extra},
        )
