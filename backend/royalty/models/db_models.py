"""
Royalty Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage

Keyed mutable rows: ledger accounts, treasury funds, creator profiles,
priority designations, scheduler runs.
Append-only rows: transactions, payouts, audit log, stream events.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, BigInteger, Float, DateTime, Date, Text, JSON, Boolean,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, Enum as SQLEnum, event, inspect,
)
from ..database import Base
from ..errors import ImmutableRecordError
from .domain import (
    ActorType, ArtistTier, FundName, JobStatus, JobType, PayoutMethod, PayoutStatus,
    ReservationStatus, RevenueSource, TransactionSource, TransactionStatus,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# LEDGER
# =============================================================================

class LedgerAccountDB(Base):
    """
    Per-creator balance store.

    balance + reserved == total_earned - total_paid_out at every instant.
    Only LedgerService mutates these columns, always with SQL-level arithmetic.
    """
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_ledger_balance_non_negative"),
        CheckConstraint("reserved_cents >= 0", name="ck_ledger_reserved_non_negative"),
    )

    account_id = Column(String(64), primary_key=True)  # creator id

    balance_cents = Column(BigInteger, nullable=False, default=0)
    reserved_cents = Column(BigInteger, nullable=False, default=0)
    total_earned_cents = Column(BigInteger, nullable=False, default=0)
    total_paid_out_cents = Column(BigInteger, nullable=False, default=0)

    # Per-account override of the default payout threshold
    min_payout_cents = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class TransactionDB(Base):
    """
    Immutable ledger transaction.
    A reversal is a new negative row pointing at the original.
    """
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_transaction_idempotency"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    account_id = Column(String(64), ForeignKey("ledger_accounts.account_id"), nullable=False, index=True)

    amount_cents = Column(BigInteger, nullable=False)  # signed
    source = Column(SQLEnum(TransactionSource), nullable=False)
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.CREDITED)
    idempotency_key = Column(String(255), nullable=False)
    reversed_transaction_id = Column(String(36), ForeignKey("ledger_transactions.id"), nullable=True)

    # Renamed from 'metadata' which is reserved in SQLAlchemy
    tx_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)


class PayoutReservationDB(Base):
    """Amount moved out of balance for an in-flight payout."""
    __tablename__ = "payout_reservations"

    id = Column(String(36), primary_key=True)  # reservation token
    account_id = Column(String(64), ForeignKey("ledger_accounts.account_id"), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    status = Column(SQLEnum(ReservationStatus), nullable=False, default=ReservationStatus.HELD)

    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)


# =============================================================================
# CREATORS
# =============================================================================

class CreatorProfileDB(Base):
    """Tier, payout profile and promotion metrics for a creator."""
    __tablename__ = "creator_profiles"

    creator_id = Column(String(64), primary_key=True)
    tier = Column(SQLEnum(ArtistTier), nullable=False, default=ArtistTier.EMERGING)

    # Payout profile
    country = Column(String(2), nullable=True)
    connect_account_id = Column(String(100), nullable=True)
    bank_iban = Column(String(34), nullable=True)
    bank_account_name = Column(String(255), nullable=True)
    crypto_wallet = Column(String(128), nullable=True)
    crypto_asset = Column(String(10), nullable=True)  # ETH, BTC, USDC

    # Promotion metrics (maintained by the catalogue/stream services)
    upload_count = Column(Integer, nullable=False, default=0)
    quality_score = Column(Float, nullable=False, default=0.0)
    total_streams = Column(BigInteger, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class PriorityArtistDesignationDB(Base):
    """
    Eligibility for the priority fund.
    Mutated only by the promotion job or an explicit operator override.
    """
    __tablename__ = "priority_designations"

    id = Column(String(36), primary_key=True)  # UUID
    creator_id = Column(String(64), ForeignKey("creator_profiles.creator_id"), nullable=False, unique=True)

    priority_level = Column(Integer, nullable=False, default=1)  # 1-5, distribution weight
    active = Column(Boolean, nullable=False, default=True)
    auto_promoted = Column(Boolean, nullable=False, default=False)
    manual_override = Column(Boolean, nullable=False, default=False)  # pinned by an operator

    # Thresholds in force when last evaluated
    min_uploads = Column(Integer, nullable=False, default=5)
    min_quality = Column(Float, nullable=False, default=0.8)
    min_streams = Column(BigInteger, nullable=False, default=10000)

    evaluated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class StreamEventDB(Base):
    """Play/view event received from the stream event source."""
    __tablename__ = "stream_events"
    __table_args__ = (
        Index("ix_stream_events_creator_time", "creator_id", "occurred_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    event_id = Column(String(100), nullable=True, unique=True)  # source-side id, for idempotent ingest
    creator_id = Column(String(64), nullable=False)
    viewer_id = Column(String(64), nullable=True)

    duration_seconds = Column(Float, nullable=False)
    fraud_score = Column(Float, nullable=False, default=0.0)
    qualified = Column(Boolean, nullable=False, default=False)

    occurred_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)


# =============================================================================
# TREASURY
# =============================================================================

class PeriodRevenueDB(Base):
    """Revenue total reported for a period by billing or the processor."""
    __tablename__ = "period_revenue"

    id = Column(String(36), primary_key=True)  # UUID
    external_id = Column(String(100), nullable=True, unique=True)
    period_start = Column(Date, nullable=False, index=True)
    period_end = Column(Date, nullable=False)
    source_type = Column(SQLEnum(RevenueSource), nullable=False)
    total_revenue_cents = Column(BigInteger, nullable=False)

    created_at = Column(DateTime, default=utcnow)


class TreasuryFundDB(Base):
    """
    One row per (fund, period).
    balance == allocated - distributed - spent.
    """
    __tablename__ = "treasury_funds"
    __table_args__ = (
        UniqueConstraint("fund", "period_start", "period_end", name="uq_treasury_fund_period"),
        CheckConstraint("balance_cents >= 0", name="ck_treasury_balance_non_negative"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    fund = Column(SQLEnum(FundName), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)

    allocated_cents = Column(BigInteger, nullable=False, default=0)
    balance_cents = Column(BigInteger, nullable=False, default=0)
    distributed_cents = Column(BigInteger, nullable=False, default=0)
    spent_cents = Column(BigInteger, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class TreasuryExpenseDB(Base):
    """Expense paid out of a treasury fund (infrastructure costs)."""
    __tablename__ = "treasury_expenses"

    id = Column(String(36), primary_key=True)  # UUID
    fund_id = Column(String(36), ForeignKey("treasury_funds.id"), nullable=False, index=True)
    category = Column(String(50), nullable=False)  # servers, storage, bandwidth, ai
    description = Column(String(255), nullable=True)
    amount_cents = Column(BigInteger, nullable=False)
    idempotency_key = Column(String(255), nullable=False, unique=True)

    created_at = Column(DateTime, default=utcnow)


class DistributionRunDB(Base):
    """Allocation record for one (period, revenue source)."""
    __tablename__ = "distribution_runs"
    __table_args__ = (
        UniqueConstraint("period_start", "period_end", "revenue_source", name="uq_distribution_period"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    revenue_source = Column(SQLEnum(RevenueSource), nullable=False)
    revenue_cents = Column(BigInteger, nullable=False)
    allocations = Column(JSON, nullable=False)
    shares = Column(JSON, nullable=True)  # per-fund creator shares fixed by the first run
    summary = Column(JSON, nullable=True)  # latest DistributionSummary

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# PAYOUTS
# =============================================================================

class PayoutDB(Base):
    """
    One row per channel attempt.
    Completed rows are frozen; a failed attempt is retried as a new row.
    """
    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True)  # UUID
    account_id = Column(String(64), ForeignKey("ledger_accounts.account_id"), nullable=False, index=True)
    reservation_id = Column(String(36), ForeignKey("payout_reservations.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False, default=1)

    method = Column(SQLEnum(PayoutMethod), nullable=False)
    country = Column(String(2), nullable=True)
    gross_cents = Column(BigInteger, nullable=False)
    tax_cents = Column(BigInteger, nullable=False, default=0)
    net_cents = Column(BigInteger, nullable=False)

    status = Column(SQLEnum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)
    external_reference = Column(String(120), nullable=True, unique=True)
    timed_out = Column(Boolean, nullable=False, default=False)  # outcome unknown, awaits webhook
    failure_reason = Column(Text, nullable=True)
    channel_details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)


# =============================================================================
# AUDIT + SCHEDULER
# =============================================================================

class AuditLogDB(Base):
    """
    Immutable record of every credit, distribution and payout step.
    Append-only - never updated, never deleted.
    """
    __tablename__ = "audit_log"

    id = Column(String(36), primary_key=True)  # UUID
    event_type = Column(String(50), nullable=False, index=True)  # ledger_credit, payout_completed, ...
    actor = Column(SQLEnum(ActorType), nullable=False, default=ActorType.SYSTEM)

    account_id = Column(String(64), nullable=True, index=True)
    entity_type = Column(String(50), nullable=True)  # transaction, payout, treasury_fund, scheduler_run
    entity_id = Column(String(36), nullable=True)

    amount_cents = Column(BigInteger, nullable=True)
    gross_cents = Column(BigInteger, nullable=True)
    tax_cents = Column(BigInteger, nullable=True)
    net_cents = Column(BigInteger, nullable=True)
    channel = Column(String(20), nullable=True)

    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)


class SchedulerRunDB(Base):
    """
    Run record for a period-boundary job.
    idle -> running -> succeeded | failed (failed -> running on retry).
    """
    __tablename__ = "scheduler_runs"
    __table_args__ = (
        UniqueConstraint("job_type", "period_start", name="uq_scheduler_job_period"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    job_type = Column(SQLEnum(JobType), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)

    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.IDLE)
    attempts = Column(Integer, nullable=False, default=0)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


# =============================================================================
# APPEND-ONLY GUARDS
# =============================================================================

def _refuse_mutation(mapper, connection, target):
    raise ImmutableRecordError(f"{type(target).__name__} {target.id} is append-only")


for _append_only in (TransactionDB, AuditLogDB, StreamEventDB):
    event.listen(_append_only, "before_update", _refuse_mutation)
    event.listen(_append_only, "before_delete", _refuse_mutation)

event.listen(PayoutDB, "before_delete", _refuse_mutation)


@event.listens_for(PayoutDB, "before_update")
def _freeze_completed_payouts(mapper, connection, target):
    history = inspect(target).attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous == PayoutStatus.COMPLETED:
        raise ImmutableRecordError(f"Payout {target.id} is completed and cannot change")
