"""
Payout Orchestrator

Reserve -> threshold check -> tax -> channel fallback -> mark paid / restore.

Transaction boundaries are owned here: the reservation and every pending
attempt row are committed before the external call, so an in-flight amount
is durable and a crash mid-call leaves a pending row to reconcile instead of
a silent double payment.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import EngineSettings
from ...errors import PayoutChannelFailure, ValidationError
from ...models.db_models import CreatorProfileDB, LedgerAccountDB, PayoutDB, utcnow
from ...models.domain import (
    ActorType,
    PayoutMethod,
    PayoutProfile,
    PayoutRequest,
    PayoutStatus,
    TaxJurisdiction,
)
from ..ledger import AuditLogService, LedgerService
from .channels import PayoutChannel

logger = logging.getLogger(__name__)


@dataclass
class PayoutResult:
    """
    Outcome of one process_payout call.

    status is one of: completed, pending, failed, below_threshold, nothing_to_pay.
    """
    account_id: str
    status: str
    gross_cents: int = 0
    tax_cents: int = 0
    net_cents: int = 0
    reservation_id: Optional[str] = None
    payout: Optional[PayoutDB] = None
    attempts: List[PayoutDB] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.status in ("below_threshold", "nothing_to_pay")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "status": self.status,
            "gross_cents": self.gross_cents,
            "tax_cents": self.tax_cents,
            "net_cents": self.net_cents,
            "reservation_id": self.reservation_id,
            "payout_id": self.payout.id if self.payout else None,
            "method": self.payout.method.value if self.payout else None,
            "external_reference": self.payout.external_reference if self.payout else None,
            "attempts": [
                {
                    "payout_id": attempt.id,
                    "method": attempt.method.value,
                    "status": attempt.status.value,
                    "timed_out": attempt.timed_out,
                    "failure_reason": attempt.failure_reason,
                }
                for attempt in self.attempts
            ],
        }


class PayoutOrchestrator:
    """Pays out eligible ledger balances through the first channel that works."""

    def __init__(
        self,
        db: Session,
        settings: EngineSettings,
        channels: List[PayoutChannel],
        ledger: Optional[LedgerService] = None,
        audit: Optional[AuditLogService] = None,
    ):
        self.db = db
        self.settings = settings
        self.channels = channels
        self.audit = audit or AuditLogService(db)
        self.ledger = ledger or LedgerService(db, self.audit)

    # =========================================================================
    # SINGLE ACCOUNT
    # =========================================================================

    def process_payout(self, account_id: str) -> PayoutResult:
        account = self.ledger.get_account(account_id)
        threshold = account.min_payout_cents
        if threshold is None:
            threshold = self.settings.min_payout_cents

        gross, token = self.ledger.reserve_for_payout(account_id)
        if gross == 0:
            self.db.commit()
            return PayoutResult(account_id=account_id, status="nothing_to_pay")

        if gross < threshold:
            self.ledger.restore_reservation(account_id, gross, token)
            self.audit.record(
                "payout_below_threshold",
                account_id=account_id,
                amount_cents=gross,
                metadata={"min_payout_cents": threshold},
            )
            self.db.commit()
            return PayoutResult(account_id=account_id, status="below_threshold", gross_cents=gross)

        profile = self._load_profile(account_id)
        jurisdiction = TaxJurisdiction.for_country(profile.country)
        tax = jurisdiction.withholding(gross)
        net = gross - tax

        result = PayoutResult(
            account_id=account_id,
            status="failed",
            gross_cents=gross,
            tax_cents=tax,
            net_cents=net,
            reservation_id=token,
        )
        self.audit.record(
            "payout_started",
            account_id=account_id,
            entity_type="payout_reservation",
            entity_id=token,
            gross_cents=gross,
            tax_cents=tax,
            net_cents=net,
            metadata={"jurisdiction": jurisdiction.value},
        )
        self.db.commit()

        for channel in self.channels:
            if not channel.supports(profile):
                continue
            payout = self._attempt(channel, account_id, token, profile, result)
            result.attempts.append(payout)
            if payout.status == PayoutStatus.FAILED:
                continue

            result.payout = payout
            result.status = payout.status.value
            return result

        self.ledger.restore_reservation(account_id, gross, token)
        self.audit.record(
            "payout_failed",
            account_id=account_id,
            entity_type="payout_reservation",
            entity_id=token,
            gross_cents=gross,
            tax_cents=tax,
            net_cents=net,
            metadata={"attempts": len(result.attempts)},
        )
        self.db.commit()
        logger.error(f"All payout channels failed for {account_id}; {gross} cents restored")
        return result

    def _attempt(
        self,
        channel: PayoutChannel,
        account_id: str,
        token: str,
        profile: PayoutProfile,
        result: PayoutResult,
    ) -> PayoutDB:
        """One channel attempt: pending row committed, then completed / pending / failed."""
        payout = PayoutDB(
            id=str(uuid4()),
            account_id=account_id,
            reservation_id=token,
            attempt_number=len(result.attempts) + 1,
            method=channel.method,
            country=profile.country,
            gross_cents=result.gross_cents,
            tax_cents=result.tax_cents,
            net_cents=result.net_cents,
            status=PayoutStatus.PENDING,
            timed_out=False,
            created_at=utcnow(),
        )
        self.db.add(payout)
        self._audit_payout("payout_attempt_started", payout)
        self.db.commit()

        request = PayoutRequest(
            account_id=account_id,
            payout_id=payout.id,
            gross_cents=result.gross_cents,
            tax_cents=result.tax_cents,
            net_cents=result.net_cents,
            profile=profile,
        )
        failure = None
        try:
            receipt = channel.execute(request)
        except PayoutChannelFailure as e:
            failure = (e.reason, e.timed_out)
        except SQLAlchemyError:
            raise
        except Exception as e:
            # Any other channel error fails this attempt; fallback continues
            logger.exception(f"{channel.method.value} channel raised for {account_id}")
            failure = (f"{type(e).__name__}: {e}", False)

        if failure is not None:
            reason, timed_out = failure
            payout.status = PayoutStatus.FAILED
            payout.timed_out = timed_out
            payout.failure_reason = reason
            payout.processed_at = utcnow()
            self._audit_payout(
                "payout_attempt_failed", payout,
                metadata={"reason": reason, "timed_out": timed_out},
            )
            self.db.commit()
            logger.warning(f"{channel.method.value} payout failed for {account_id}: {reason}")
            return payout

        payout.external_reference = receipt.external_reference
        payout.channel_details = receipt.details
        if receipt.status == PayoutStatus.COMPLETED:
            self.ledger.mark_paid(account_id, result.gross_cents, token)
            payout.status = PayoutStatus.COMPLETED
            payout.processed_at = utcnow()
            self._audit_payout("payout_completed", payout)
        else:
            event_type = "invoice_created" if channel.method == PayoutMethod.MANUAL_INVOICE else "payout_pending"
            self._audit_payout(event_type, payout)
        self.db.commit()
        logger.info(
            f"Payout {payout.id} for {account_id} via {channel.method.value}: {payout.status.value}"
        )
        return payout

    # =========================================================================
    # BATCH
    # =========================================================================

    def process_all_eligible(self) -> Dict[str, Any]:
        """Pay every account whose balance meets its threshold; failures are isolated."""
        threshold = func.coalesce(LedgerAccountDB.min_payout_cents, self.settings.min_payout_cents)
        account_ids = [
            row.account_id
            for row in self.db.query(LedgerAccountDB.account_id)
            .filter(LedgerAccountDB.balance_cents > 0, LedgerAccountDB.balance_cents >= threshold)
            .order_by(LedgerAccountDB.account_id)
        ]

        summary = {
            "eligible": len(account_ids),
            "completed": 0,
            "pending": 0,
            "failed": 0,
            "skipped": 0,
            "paid_cents": 0,
            "errors": [],
        }
        for account_id in account_ids:
            try:
                result = self.process_payout(account_id)
            except SQLAlchemyError:
                raise
            except Exception as e:
                self.db.rollback()
                logger.error(f"Payout failed for account {account_id}: {type(e).__name__}: {e}")
                summary["errors"].append({"account_id": account_id, "error": str(e)})
                continue
            if result.status == "completed":
                summary["completed"] += 1
                summary["paid_cents"] += result.gross_cents
            elif result.status == "pending":
                summary["pending"] += 1
            elif result.status == "failed":
                summary["failed"] += 1
            else:
                summary["skipped"] += 1

        logger.info(
            f"Payout run: {summary['completed']} completed, {summary['pending']} pending, "
            f"{summary['failed']} failed, {len(summary['errors'])} errors"
        )
        return summary

    # =========================================================================
    # MANUAL INVOICES
    # =========================================================================

    def settle_manual_invoice(self, payout_id: str, reference: Optional[str] = None) -> PayoutDB:
        """Operator confirms a manual invoice was paid; consumes the reservation."""
        payout = self.db.get(PayoutDB, payout_id)
        if payout is None:
            raise ValidationError(f"Payout {payout_id} not found")
        if payout.method != PayoutMethod.MANUAL_INVOICE:
            raise ValidationError(f"Payout {payout_id} is not a manual invoice")
        if payout.status == PayoutStatus.COMPLETED:
            return payout
        if payout.status != PayoutStatus.PENDING:
            raise ValidationError(f"Payout {payout_id} is {payout.status.value}, cannot settle")

        self.ledger.mark_paid(payout.account_id, payout.gross_cents, payout.reservation_id)
        payout.status = PayoutStatus.COMPLETED
        payout.processed_at = utcnow()
        if reference:
            payout.channel_details = {**(payout.channel_details or {}), "settlement_reference": reference}
        self._audit_payout("payout_completed", payout, actor=ActorType.OPERATOR)
        self.db.commit()
        return payout

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _load_profile(self, account_id: str) -> PayoutProfile:
        profile = self.db.get(CreatorProfileDB, account_id)
        if profile is None:
            return PayoutProfile()
        return PayoutProfile(
            country=profile.country,
            connect_account_id=profile.connect_account_id,
            bank_iban=profile.bank_iban,
            bank_account_name=profile.bank_account_name,
            crypto_wallet=profile.crypto_wallet,
            crypto_asset=profile.crypto_asset,
        )

    def _audit_payout(
        self,
        event_type: str,
        payout: PayoutDB,
        actor: ActorType = ActorType.SYSTEM,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.record(
            event_type,
            actor=actor,
            account_id=payout.account_id,
            entity_type="payout",
            entity_id=payout.id,
            gross_cents=payout.gross_cents,
            tax_cents=payout.tax_cents,
            net_cents=payout.net_cents,
            channel=payout.method.value,
            metadata={
                "attempt_number": payout.attempt_number,
                "external_reference": payout.external_reference,
                **(metadata or {}),
            },
        )
