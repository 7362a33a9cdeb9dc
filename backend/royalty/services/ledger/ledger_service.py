"""
Ledger Service

Sole writer of creator balances.

Core Principles:
1. Every balance change is a single SQL statement (column + :amount), never
   a read-modify-write from Python, so concurrent credits cannot lose updates.
2. Transactions are append-only; a reversal is a new negative row.
3. Idempotency keys are enforced by a unique index, not by a lookup.
4. balance + reserved == total_earned - total_paid_out at every instant.

Flushes only; the caller owns the outer transaction and commits.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from dateutil.relativedelta import relativedelta
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import (
    AccountNotFound,
    DuplicateTransaction,
    ReservationNotHeld,
    ReversalExceedsBalance,
    RoyaltyEngineError,
    ValidationError,
)
from ...models.db_models import (
    LedgerAccountDB,
    PayoutDB,
    PayoutReservationDB,
    TransactionDB,
    utcnow,
)
from ...models.domain import (
    ActorType,
    PayoutStatus,
    ReservationStatus,
    TransactionSource,
    TransactionStatus,
    to_cents,
)
from .audit_log import AuditLogService

logger = logging.getLogger(__name__)

MAX_RESERVE_ATTEMPTS = 5


class LedgerService:
    """Atomic credit / reserve / restore / mark-paid operations on ledger accounts."""

    def __init__(self, db: Session, audit: Optional[AuditLogService] = None):
        self.db = db
        self.audit = audit or AuditLogService(db)

    # =========================================================================
    # CREDIT
    # =========================================================================

    def credit(
        self,
        account_id: str,
        amount_cents: int,
        source: TransactionSource,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: ActorType = ActorType.SYSTEM,
    ) -> str:
        """
        Credit an account and append the transaction.

        Args:
            account_id: Creator id; the account is created on first credit
            amount_cents: Positive integer amount
            source: Where the money came from (not fraud-reversal)
            idempotency_key: Caller-supplied key, unique per account
            metadata: Free-form context stored on the transaction

        Returns:
            The new transaction id

        Raises:
            ValidationError: Malformed input, nothing written
            DuplicateTransaction: Key already recorded; treat as success
        """
        source = self._coerce_source(source)
        self._validate_account_id(account_id)
        self._validate_amount(amount_cents)
        if source == TransactionSource.FRAUD_REVERSAL:
            raise ValidationError("Fraud reversals go through reverse_transaction")
        if not idempotency_key or len(idempotency_key) > 255:
            raise ValidationError("Idempotency key must be 1-255 characters")

        self._ensure_account(account_id)

        transaction_id = str(uuid4())
        try:
            with self.db.begin_nested():
                self.db.add(TransactionDB(
                    id=transaction_id,
                    account_id=account_id,
                    amount_cents=amount_cents,
                    source=source,
                    status=TransactionStatus.CREDITED,
                    idempotency_key=idempotency_key,
                    tx_metadata=metadata,
                    created_at=utcnow(),
                ))
                self.db.flush()
                self._update_account(
                    account_id,
                    balance_cents=LedgerAccountDB.balance_cents + amount_cents,
                    total_earned_cents=LedgerAccountDB.total_earned_cents + amount_cents,
                )
                self.audit.record(
                    "ledger_credit",
                    actor=actor,
                    account_id=account_id,
                    entity_type="transaction",
                    entity_id=transaction_id,
                    amount_cents=amount_cents,
                    metadata={"source": source.value, "idempotency_key": idempotency_key},
                )
        except IntegrityError:
            existing_id = (
                self.db.query(TransactionDB.id)
                .filter(
                    TransactionDB.account_id == account_id,
                    TransactionDB.idempotency_key == idempotency_key,
                )
                .scalar()
            )
            if existing_id is None:
                raise
            raise DuplicateTransaction(account_id, idempotency_key, existing_id)

        return transaction_id

    # =========================================================================
    # PAYOUT RESERVATION
    # =========================================================================

    def reserve_for_payout(self, account_id: str) -> Tuple[int, Optional[str]]:
        """
        Move the whole current balance into the reserved column.

        Compare-and-set: the decrement only applies while the balance still
        covers the snapshot, so a concurrent reservation makes us retry and a
        concurrent credit simply stays in the balance.

        Returns:
            (amount_cents, reservation_token); (0, None) when there is nothing to reserve
        """
        for _ in range(MAX_RESERVE_ATTEMPTS):
            balance = (
                self.db.query(LedgerAccountDB.balance_cents)
                .filter(LedgerAccountDB.account_id == account_id)
                .scalar()
            )
            if balance is None:
                raise AccountNotFound(account_id)
            if balance == 0:
                return 0, None

            token = str(uuid4())
            with self.db.begin_nested():
                rows = self._update_account(
                    account_id,
                    LedgerAccountDB.balance_cents >= balance,
                    balance_cents=LedgerAccountDB.balance_cents - balance,
                    reserved_cents=LedgerAccountDB.reserved_cents + balance,
                )
                if rows == 1:
                    self.db.add(PayoutReservationDB(
                        id=token,
                        account_id=account_id,
                        amount_cents=balance,
                        status=ReservationStatus.HELD,
                        created_at=utcnow(),
                    ))
                    self.audit.record(
                        "payout_reserved",
                        account_id=account_id,
                        entity_type="payout_reservation",
                        entity_id=token,
                        amount_cents=balance,
                    )
            if rows == 1:
                return balance, token
            logger.info(f"Reservation for {account_id} lost a race, retrying")

        raise RoyaltyEngineError(
            f"Could not reserve balance for {account_id} after {MAX_RESERVE_ATTEMPTS} attempts"
        )

    def restore_reservation(
        self,
        account_id: str,
        amount_cents: int,
        reservation_token: Optional[str] = None,
    ) -> None:
        """Put a reserved amount back into the balance; total_earned is untouched."""
        self._validate_amount(amount_cents)
        with self.db.begin_nested():
            if reservation_token:
                self._resolve_reservation(
                    account_id, reservation_token, amount_cents, ReservationStatus.RESTORED
                )
            self._release_reserved(
                account_id,
                amount_cents,
                balance_cents=LedgerAccountDB.balance_cents + amount_cents,
            )
            self.audit.record(
                "reservation_restored",
                account_id=account_id,
                entity_type="payout_reservation",
                entity_id=reservation_token,
                amount_cents=amount_cents,
            )

    def mark_paid(
        self,
        account_id: str,
        amount_cents: int,
        reservation_token: Optional[str] = None,
    ) -> None:
        """
        Record a confirmed payout of a reserved amount.

        The amount is the gross payout: tax is withheld from what leaves the
        platform, not from what the creator earned.
        """
        self._validate_amount(amount_cents)
        with self.db.begin_nested():
            if reservation_token:
                self._resolve_reservation(
                    account_id, reservation_token, amount_cents, ReservationStatus.CONSUMED
                )
            self._release_reserved(
                account_id,
                amount_cents,
                total_paid_out_cents=LedgerAccountDB.total_paid_out_cents + amount_cents,
            )
            self.audit.record(
                "payout_marked_paid",
                account_id=account_id,
                entity_type="payout_reservation",
                entity_id=reservation_token,
                amount_cents=amount_cents,
            )

    # =========================================================================
    # REVERSALS & SPLITS
    # =========================================================================

    def reverse_transaction(
        self,
        transaction_id: str,
        reason: str,
        actor: ActorType = ActorType.OPERATOR,
    ) -> str:
        """
        Reverse a fraudulent credit with a new negative transaction.

        Refused when the unpaid balance no longer covers the amount: money
        already paid out has to be recovered outside the ledger.
        """
        original = self.db.get(TransactionDB, transaction_id)
        if original is None:
            raise ValidationError(f"Transaction {transaction_id} not found")
        if original.amount_cents <= 0 or original.source == TransactionSource.FRAUD_REVERSAL:
            raise ValidationError(f"Transaction {transaction_id} is not a reversible credit")

        amount = original.amount_cents
        account_id = original.account_id
        idempotency_key = f"reversal:{transaction_id}"
        reversal_id = str(uuid4())

        try:
            with self.db.begin_nested():
                self.db.add(TransactionDB(
                    id=reversal_id,
                    account_id=account_id,
                    amount_cents=-amount,
                    source=TransactionSource.FRAUD_REVERSAL,
                    status=TransactionStatus.REVERSED,
                    idempotency_key=idempotency_key,
                    reversed_transaction_id=transaction_id,
                    tx_metadata={"reason": reason},
                    created_at=utcnow(),
                ))
                self.db.flush()
                rows = self._update_account(
                    account_id,
                    LedgerAccountDB.balance_cents >= amount,
                    balance_cents=LedgerAccountDB.balance_cents - amount,
                    total_earned_cents=LedgerAccountDB.total_earned_cents - amount,
                )
                if rows != 1:
                    raise ReversalExceedsBalance(
                        f"Reversal of {amount} cents exceeds unpaid balance of {account_id}"
                    )
                self.audit.record(
                    "fraud_reversal",
                    actor=actor,
                    account_id=account_id,
                    entity_type="transaction",
                    entity_id=reversal_id,
                    amount_cents=-amount,
                    metadata={"reversed_transaction_id": transaction_id, "reason": reason},
                )
        except IntegrityError:
            raise DuplicateTransaction(account_id, idempotency_key)

        logger.info(f"Reversed transaction {transaction_id} ({amount} cents) for {account_id}")
        return reversal_id

    def apply_collaborator_split(
        self,
        content_id: str,
        total_cents: int,
        splits: Dict[str, Any],
    ) -> Dict[str, Dict[str, Any]]:
        """
        Credit collaborators their percentage of a content item's earnings.

        Args:
            content_id: Content the earnings belong to (part of each idempotency key)
            total_cents: Amount being split
            splits: creator_id -> percentage (0-100); percentages may not exceed 100 in total

        Returns:
            creator_id -> {"amount_cents", "transaction_id", "duplicate"}
        """
        self._validate_amount(total_cents)
        percentages = {creator_id: Decimal(str(pct)) for creator_id, pct in splits.items()}
        if any(pct <= 0 for pct in percentages.values()):
            raise ValidationError("Split percentages must be positive")
        if sum(percentages.values()) > 100:
            raise ValidationError("Split percentages exceed 100%")

        results = {}
        for creator_id, pct in percentages.items():
            amount = to_cents(Decimal(total_cents) * pct / Decimal(100))
            if amount == 0:
                continue
            try:
                transaction_id = self.credit(
                    creator_id,
                    amount,
                    TransactionSource.COLLABORATION_SPLIT,
                    f"collab:{content_id}:{creator_id}",
                    metadata={"content_id": content_id, "percentage": str(pct)},
                )
                results[creator_id] = {"amount_cents": amount, "transaction_id": transaction_id, "duplicate": False}
            except DuplicateTransaction as e:
                results[creator_id] = {"amount_cents": amount, "transaction_id": e.existing_id, "duplicate": True}
        return results

    # =========================================================================
    # READ-ONLY VIEWS
    # =========================================================================

    def get_account(self, account_id: str) -> LedgerAccountDB:
        account = self.db.get(LedgerAccountDB, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def get_account_summary(self, account_id: str, limit: int = 20) -> Dict[str, Any]:
        """Confirmed balances and the most recent transactions."""
        account = self.get_account(account_id)
        transactions = (
            self.db.query(TransactionDB)
            .filter(TransactionDB.account_id == account_id)
            .order_by(TransactionDB.created_at.desc(), TransactionDB.id)
            .limit(limit)
            .all()
        )
        reversed_ids = {
            row.reversed_transaction_id
            for row in self.db.query(TransactionDB.reversed_transaction_id).filter(
                TransactionDB.account_id == account_id,
                TransactionDB.reversed_transaction_id.isnot(None),
            )
        }
        return {
            "account_id": account.account_id,
            "balance_cents": account.balance_cents,
            "total_earned_cents": account.total_earned_cents,
            "total_paid_out_cents": account.total_paid_out_cents,
            "recent_transactions": [
                {
                    "id": tx.id,
                    "amount_cents": tx.amount_cents,
                    "source": tx.source.value,
                    "status": tx.status.value,
                    "reversed": tx.id in reversed_ids,
                    "created_at": tx.created_at.isoformat() if tx.created_at else None,
                    "metadata": tx.tx_metadata,
                }
                for tx in transactions
            ],
        }

    def get_payout_history(self, account_id: str, months: int = 12) -> List[Dict[str, Any]]:
        """Completed payouts only; failed and in-flight attempts live in the audit log."""
        self.get_account(account_id)
        since = utcnow() - relativedelta(months=months)
        payouts = (
            self.db.query(PayoutDB)
            .filter(
                PayoutDB.account_id == account_id,
                PayoutDB.status == PayoutStatus.COMPLETED,
                PayoutDB.processed_at >= since,
            )
            .order_by(PayoutDB.processed_at.desc())
            .all()
        )
        return [
            {
                "id": payout.id,
                "method": payout.method.value,
                "gross_cents": payout.gross_cents,
                "tax_cents": payout.tax_cents,
                "net_cents": payout.net_cents,
                "external_reference": payout.external_reference,
                "processed_at": payout.processed_at.isoformat() if payout.processed_at else None,
            }
            for payout in payouts
        ]

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _ensure_account(self, account_id: str) -> None:
        if self.db.query(LedgerAccountDB.account_id).filter(
            LedgerAccountDB.account_id == account_id
        ).scalar() is not None:
            return
        try:
            with self.db.begin_nested():
                now = utcnow()
                self.db.add(LedgerAccountDB(
                    account_id=account_id,
                    balance_cents=0,
                    reserved_cents=0,
                    total_earned_cents=0,
                    total_paid_out_cents=0,
                    created_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            # Created by a concurrent credit between the check and the insert
            logger.debug(f"Ledger account {account_id} already exists")

    def _update_account(self, account_id: str, *criteria, **values) -> int:
        """Single UPDATE on one account row. Returns the matched row count."""
        values["updated_at"] = utcnow()
        result = self.db.execute(
            update(LedgerAccountDB)
            .where(LedgerAccountDB.account_id == account_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        cached = self.db.identity_map.get(self.db.identity_key(LedgerAccountDB, account_id))
        if cached is not None:
            self.db.expire(cached)
        return result.rowcount

    def _release_reserved(self, account_id: str, amount_cents: int, **values) -> None:
        rows = self._update_account(
            account_id,
            LedgerAccountDB.reserved_cents >= amount_cents,
            reserved_cents=LedgerAccountDB.reserved_cents - amount_cents,
            **values,
        )
        if rows == 1:
            return
        self.get_account(account_id)
        raise ReservationNotHeld(f"{account_id} has less than {amount_cents} cents reserved")

    def _resolve_reservation(
        self,
        account_id: str,
        token: str,
        amount_cents: int,
        status: ReservationStatus,
    ) -> None:
        """Move a held reservation to its final status, at most once."""
        reservation = self.db.get(PayoutReservationDB, token)
        if reservation is None or reservation.account_id != account_id:
            raise ReservationNotHeld(f"Reservation {token} not found for {account_id}")
        if reservation.amount_cents != amount_cents:
            raise ValidationError(
                f"Reservation {token} holds {reservation.amount_cents} cents, not {amount_cents}"
            )
        result = self.db.execute(
            update(PayoutReservationDB)
            .where(
                PayoutReservationDB.id == token,
                PayoutReservationDB.status == ReservationStatus.HELD,
            )
            .values(status=status, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.expire(reservation)
        if result.rowcount != 1:
            raise ReservationNotHeld(f"Reservation {token} is no longer held")

    @staticmethod
    def _coerce_source(source) -> TransactionSource:
        try:
            return TransactionSource(source)
        except ValueError:
            raise ValidationError(f"Unknown transaction source: {source!r}")

    @staticmethod
    def _validate_account_id(account_id: str) -> None:
        if not isinstance(account_id, str) or not account_id.strip() or len(account_id) > 64:
            raise ValidationError(f"Invalid account id: {account_id!r}")

    @staticmethod
    def _validate_amount(amount_cents: int) -> None:
        if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
            raise ValidationError(f"Amount must be a positive integer of cents, got {amount_cents!r}")
