"""
Royalty Scheduler

Period-boundary jobs, each independently triggerable and idempotent per
period:
- monthly_distribution    day 1, 00:00 - distribute last month's revenue
- priority_promotion      day 1, 01:00 - re-evaluate priority designations
- infrastructure_payment  day 1, 02:00 - pay platform-ops infrastructure costs
- payout_run              days 1 and 15, 09:00 - pay eligible balances
- daily_stream_royalties  daily, 01:00 - distribute yesterday's streaming revenue

State machine per (job, period_start): idle -> running -> succeeded | failed,
failed -> running on retry. A succeeded period is never run again. A running
claim is a lease: once it is older than `job_lease_seconds` the period can be
claimed again, so a crashed worker never blocks it for good. A job that
reports `skipped` (infrastructure payment without funds) is recorded as
failed so later ticks re-evaluate it.
"""
import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import EngineSettings
from ...errors import InsufficientTreasuryFunds, JobAlreadyRunning, ValidationError
from ...models.db_models import (
    CreatorProfileDB,
    PriorityArtistDesignationDB,
    SchedulerRunDB,
    utcnow,
)
from ...models.domain import ActorType, JobStatus, JobType, RevenueSource
from ..ledger import AuditLogService
from ..payouts import PayoutOrchestrator
from ..treasury import TreasuryDistributor

logger = logging.getLogger(__name__)


# (days of month, time of day) each job fires at, UTC; None means every day
JOB_SCHEDULE: Dict[JobType, Tuple[Optional[Tuple[int, ...]], time]] = {
    JobType.MONTHLY_DISTRIBUTION: ((1,), time(0, 0)),
    JobType.PRIORITY_PROMOTION: ((1,), time(1, 0)),
    JobType.INFRASTRUCTURE_PAYMENT: ((1,), time(2, 0)),
    JobType.PAYOUT_RUN: ((1, 15), time(9, 0)),
    JobType.DAILY_STREAM_ROYALTIES: (None, time(1, 0)),
}

# Stream counts -> priority level, highest first
PRIORITY_LEVELS = [
    (100_000, 5),
    (50_000, 4),
    (25_000, 3),
    (10_000, 2),
]


def priority_level_for(total_streams: int) -> int:
    for minimum, level in PRIORITY_LEVELS:
        if total_streams >= minimum:
            return level
    return 1


def previous_month(now: datetime) -> Tuple[date, date]:
    """The calendar month before `now`, as inclusive dates."""
    first_of_this_month = now.date().replace(day=1)
    start = first_of_this_month - relativedelta(months=1)
    return start, first_of_this_month - timedelta(days=1)


def month_of(period_start: date) -> Tuple[date, date]:
    start = period_start.replace(day=1)
    return start, start + relativedelta(months=1) - timedelta(days=1)


def payout_window(day: date) -> Tuple[date, date]:
    """Half-month window containing `day`: 1st-14th or 15th-end of month."""
    if day.day >= 15:
        return day.replace(day=15), day.replace(day=1) + relativedelta(months=1) - timedelta(days=1)
    return day.replace(day=1), day.replace(day=14)


class RoyaltyScheduler:
    """Runs period jobs through the SchedulerRun state machine."""

    def __init__(
        self,
        db: Session,
        settings: EngineSettings,
        distributor: TreasuryDistributor,
        orchestrator: PayoutOrchestrator,
        audit: Optional[AuditLogService] = None,
    ):
        self.db = db
        self.settings = settings
        self.distributor = distributor
        self.orchestrator = orchestrator
        self.audit = audit or AuditLogService(db)

        self._jobs: Dict[JobType, Callable[[date, date], Dict[str, Any]]] = {
            JobType.MONTHLY_DISTRIBUTION: self._monthly_distribution,
            JobType.PRIORITY_PROMOTION: self._priority_promotion,
            JobType.INFRASTRUCTURE_PAYMENT: self._infrastructure_payment,
            JobType.PAYOUT_RUN: self._payout_run,
            JobType.DAILY_STREAM_ROYALTIES: self._daily_stream_royalties,
        }

    # =========================================================================
    # MANUAL TRIGGERS
    # =========================================================================

    def trigger_monthly_distribution(self, period_start: Optional[date] = None, now: Optional[datetime] = None):
        return self.trigger(JobType.MONTHLY_DISTRIBUTION, period_start, now)

    def trigger_priority_promotion(self, period_start: Optional[date] = None, now: Optional[datetime] = None):
        return self.trigger(JobType.PRIORITY_PROMOTION, period_start, now)

    def trigger_infrastructure_payment(self, period_start: Optional[date] = None, now: Optional[datetime] = None):
        return self.trigger(JobType.INFRASTRUCTURE_PAYMENT, period_start, now)

    def trigger_payout_run(self, period_start: Optional[date] = None, now: Optional[datetime] = None):
        return self.trigger(JobType.PAYOUT_RUN, period_start, now)

    def trigger_daily_stream_royalties(self, period_start: Optional[date] = None, now: Optional[datetime] = None):
        return self.trigger(JobType.DAILY_STREAM_ROYALTIES, period_start, now)

    def trigger(
        self,
        job_type: JobType,
        period_start: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Run a job for the given period, or for the period elapsed at `now`.

        Raises:
            JobAlreadyRunning: the same (job, period) is in flight
        """
        job_type = JobType(job_type)
        period_start, period_end = self.period_for(job_type, period_start, now or utcnow())
        return self._run(job_type, period_start, period_end)

    @staticmethod
    def period_for(job_type: JobType, period_start: Optional[date], now: datetime) -> Tuple[date, date]:
        if job_type == JobType.PAYOUT_RUN:
            return payout_window(period_start or now.date())
        if job_type == JobType.DAILY_STREAM_ROYALTIES:
            day = period_start or now.date() - timedelta(days=1)
            return day, day
        if period_start is not None:
            return month_of(period_start)
        return previous_month(now)

    # =========================================================================
    # TIMER
    # =========================================================================

    def tick(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Fire every job whose latest fire time has passed and whose period
        has not succeeded yet. Called by an external timer.
        """
        now = now or utcnow()
        fired = []
        for job_type, (days, at) in JOB_SCHEDULE.items():
            fire_at = self._latest_fire_time(days, at, now)
            if fire_at is None:
                continue
            period_start, period_end = self.period_for(job_type, None, fire_at)
            run = self._find_run(job_type, period_start)
            if run is not None and (
                run.status == JobStatus.SUCCEEDED
                or (run.status == JobStatus.RUNNING and not self._lease_expired(run))
            ):
                continue
            try:
                fired.append(self._run(job_type, period_start, period_end))
            except JobAlreadyRunning as e:
                logger.info(f"Tick skipped {job_type.value}: {e}")
        return fired

    @staticmethod
    def _latest_fire_time(days: Optional[Tuple[int, ...]], at: time, now: datetime) -> Optional[datetime]:
        """Most recent scheduled fire time at or before `now` (within this month for monthly jobs)."""
        if days is None:
            today = datetime.combine(now.date(), at)
            return today if today <= now else today - timedelta(days=1)
        candidates = [
            datetime.combine(now.date().replace(day=day), at)
            for day in days
            if day <= now.day
        ]
        candidates = [c for c in candidates if c <= now]
        return max(candidates) if candidates else None

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def _run(self, job_type: JobType, period_start: date, period_end: date) -> Dict[str, Any]:
        run = self._claim(job_type, period_start, period_end)
        if run.status == JobStatus.SUCCEEDED:
            return self.run_to_dict(run, already_succeeded=True)

        logger.info(f"Running {job_type.value} for {period_start}..{period_end} (attempt {run.attempts})")
        try:
            result = self._jobs[job_type](period_start, period_end)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"{job_type.value} for {period_start} failed: {e}")
            return self._finish(run.id, JobStatus.FAILED, error_message=f"{type(e).__name__}: {e}")

        if result.get("status") == "skipped":
            # Failed, not succeeded: a later tick retries the period
            return self._finish(
                run.id, JobStatus.FAILED, result=result, error_message=f"Skipped: {result['reason']}"
            )
        return self._finish(run.id, JobStatus.SUCCEEDED, result=result)

    def _claim(self, job_type: JobType, period_start: date, period_end: date) -> SchedulerRunDB:
        """Move the run to running (creating it idle first). Committed."""
        run = self._find_run(job_type, period_start)
        if run is None:
            try:
                with self.db.begin_nested():
                    run = SchedulerRunDB(
                        id=str(uuid4()),
                        job_type=job_type,
                        period_start=period_start,
                        period_end=period_end,
                        status=JobStatus.IDLE,
                        attempts=0,
                        created_at=utcnow(),
                    )
                    self.db.add(run)
            except IntegrityError:
                # Created by a concurrent trigger
                run = self._find_run(job_type, period_start)

        if run.status == JobStatus.SUCCEEDED:
            return run
        cutoff = self._lease_cutoff()
        if run.status == JobStatus.RUNNING:
            if not self._lease_expired(run, cutoff):
                raise JobAlreadyRunning(f"{job_type.value} for {period_start} is already running")
            logger.warning(
                f"Reclaiming {job_type.value} for {period_start}: running since {run.started_at}, lease expired"
            )

        claimed = self.db.execute(
            update(SchedulerRunDB)
            .where(
                SchedulerRunDB.id == run.id,
                or_(
                    SchedulerRunDB.status.in_([JobStatus.IDLE, JobStatus.FAILED]),
                    and_(
                        SchedulerRunDB.status == JobStatus.RUNNING,
                        or_(SchedulerRunDB.started_at.is_(None), SchedulerRunDB.started_at < cutoff),
                    ),
                ),
            )
            .values(
                status=JobStatus.RUNNING,
                attempts=SchedulerRunDB.attempts + 1,
                started_at=utcnow(),
                finished_at=None,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            self.db.rollback()
            raise JobAlreadyRunning(f"{job_type.value} for {period_start} was claimed concurrently")
        self.db.commit()
        self.db.refresh(run)
        return run

    def _lease_cutoff(self) -> datetime:
        return utcnow() - timedelta(seconds=self.settings.job_lease_seconds)

    def _lease_expired(self, run: SchedulerRunDB, cutoff: Optional[datetime] = None) -> bool:
        cutoff = cutoff or self._lease_cutoff()
        return run.started_at is None or run.started_at < cutoff

    def _finish(self, run_id: str, status: JobStatus, result=None, error_message=None) -> Dict[str, Any]:
        run = self.db.get(SchedulerRunDB, run_id)
        run.status = status
        run.result = result
        run.error_message = error_message
        run.finished_at = utcnow()
        self.audit.record(
            "job_succeeded" if status == JobStatus.SUCCEEDED else "job_failed",
            entity_type="scheduler_run",
            entity_id=run.id,
            metadata={
                "job_type": run.job_type.value,
                "period_start": run.period_start.isoformat(),
                "period_end": run.period_end.isoformat(),
                "attempts": run.attempts,
                "error": error_message,
            },
        )
        self.db.commit()
        return self.run_to_dict(run)

    def _find_run(self, job_type: JobType, period_start: date) -> Optional[SchedulerRunDB]:
        return (
            self.db.query(SchedulerRunDB)
            .filter(SchedulerRunDB.job_type == job_type, SchedulerRunDB.period_start == period_start)
            .populate_existing()
            .first()
        )

    def list_runs(self, job_type: Optional[JobType] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = self.db.query(SchedulerRunDB)
        if job_type:
            query = query.filter(SchedulerRunDB.job_type == job_type)
        runs = query.order_by(SchedulerRunDB.period_start.desc(), SchedulerRunDB.job_type).limit(limit).all()
        return [self.run_to_dict(run) for run in runs]

    @staticmethod
    def run_to_dict(run: SchedulerRunDB, already_succeeded: bool = False) -> Dict[str, Any]:
        return {
            "run_id": run.id,
            "job_type": run.job_type.value,
            "period_start": run.period_start.isoformat(),
            "period_end": run.period_end.isoformat(),
            "status": run.status.value,
            "attempts": run.attempts,
            "result": run.result,
            "error_message": run.error_message,
            "already_succeeded": already_succeeded,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        }

    # =========================================================================
    # JOBS
    # =========================================================================

    def _monthly_distribution(self, period_start: date, period_end: date) -> Dict[str, Any]:
        totals = self.distributor.period_revenue_totals(period_start, period_end)
        if not totals:
            logger.info(f"No revenue recorded for {period_start}..{period_end}")
        distributions = [
            self.distributor.distribute(total, period_start, period_end, source).to_dict()
            for source, total in sorted(totals.items(), key=lambda item: item[0].value)
        ]
        return {"distributions": distributions}

    def _priority_promotion(self, period_start: date, period_end: date) -> Dict[str, Any]:
        s = self.settings
        designations = {
            d.creator_id: d for d in self.db.query(PriorityArtistDesignationDB).all()
        }
        counts = {"promoted": 0, "demoted": 0, "updated": 0, "manual_skipped": 0}
        now = utcnow()

        for profile in self.db.query(CreatorProfileDB).order_by(CreatorProfileDB.creator_id):
            designation = designations.get(profile.creator_id)
            if designation is not None and designation.manual_override:
                counts["manual_skipped"] += 1
                continue

            eligible = (
                profile.upload_count >= s.priority_min_uploads
                and profile.quality_score >= s.priority_min_quality
                and profile.total_streams >= s.priority_min_streams
            )
            level = priority_level_for(profile.total_streams)

            if eligible and designation is None:
                designation = PriorityArtistDesignationDB(
                    id=str(uuid4()),
                    creator_id=profile.creator_id,
                    created_at=now,
                )
                self.db.add(designation)
                self._apply_designation(designation, level, now)
                counts["promoted"] += 1
                self._audit_designation("priority_promoted", designation)
            elif eligible:
                was_active = designation.active
                changed = was_active is not True or designation.priority_level != level
                self._apply_designation(designation, level, now)
                if not was_active:
                    counts["promoted"] += 1
                    self._audit_designation("priority_promoted", designation)
                elif changed:
                    counts["updated"] += 1
                    self._audit_designation("priority_level_changed", designation)
            elif designation is not None and designation.active and designation.auto_promoted:
                designation.active = False
                designation.evaluated_at = now
                counts["demoted"] += 1
                self._audit_designation("priority_demoted", designation)

        self.db.flush()
        logger.info(f"Priority promotion: {counts}")
        return counts

    def _apply_designation(self, designation: PriorityArtistDesignationDB, level: int, now: datetime) -> None:
        s = self.settings
        designation.priority_level = level
        designation.active = True
        designation.auto_promoted = True
        designation.manual_override = False
        designation.min_uploads = s.priority_min_uploads
        designation.min_quality = s.priority_min_quality
        designation.min_streams = s.priority_min_streams
        designation.evaluated_at = now

    def _audit_designation(self, event_type: str, designation: PriorityArtistDesignationDB) -> None:
        self.audit.record(
            event_type,
            account_id=designation.creator_id,
            entity_type="priority_designation",
            entity_id=designation.id,
            metadata={"priority_level": designation.priority_level, "active": designation.active},
        )

    def _infrastructure_payment(self, period_start: date, period_end: date) -> Dict[str, Any]:
        try:
            return self.distributor.pay_infrastructure_costs(period_start, period_end)
        except InsufficientTreasuryFunds as e:
            logger.warning(f"Infrastructure payment skipped for {period_start}: {e}")
            self.audit.record(
                "infrastructure_payment_skipped",
                amount_cents=e.required_cents,
                metadata={"fund": e.fund, "available_cents": e.available_cents},
            )
            return {
                "status": "skipped",
                "reason": str(e),
                "required_cents": e.required_cents,
                "available_cents": e.available_cents,
            }

    def _payout_run(self, period_start: date, period_end: date) -> Dict[str, Any]:
        return self.orchestrator.process_all_eligible()

    def _daily_stream_royalties(self, period_start: date, period_end: date) -> Dict[str, Any]:
        """Credit the day's streaming revenue as stream-view royalties."""
        revenue = self.distributor.period_revenue_totals(period_start, period_end).get(RevenueSource.STREAMING)
        if revenue is None:
            logger.info(f"No streaming revenue recorded for {period_start}")
            return {"distribution": None}
        summary = self.distributor.distribute(revenue, period_start, period_end, RevenueSource.STREAMING)
        return {"distribution": summary.to_dict()}


def manual_override(
    db: Session,
    creator_id: str,
    active: bool,
    priority_level: int,
    audit: Optional[AuditLogService] = None,
) -> PriorityArtistDesignationDB:
    """Operator pins a designation; the promotion job leaves it alone from then on."""
    if not 1 <= priority_level <= 5:
        raise ValidationError(f"Priority level must be 1-5, got {priority_level}")
    now = utcnow()
    if db.get(CreatorProfileDB, creator_id) is None:
        db.add(CreatorProfileDB(creator_id=creator_id, created_at=now, updated_at=now))
        db.flush()
    designation = (
        db.query(PriorityArtistDesignationDB)
        .filter(PriorityArtistDesignationDB.creator_id == creator_id)
        .first()
    )
    if designation is None:
        designation = PriorityArtistDesignationDB(
            id=str(uuid4()),
            creator_id=creator_id,
            auto_promoted=False,
            created_at=now,
        )
        db.add(designation)
    designation.active = active
    designation.priority_level = priority_level
    designation.manual_override = True
    designation.evaluated_at = now
    db.flush()
    (audit or AuditLogService(db)).record(
        "priority_override",
        actor=ActorType.OPERATOR,
        account_id=creator_id,
        entity_type="priority_designation",
        entity_id=designation.id,
        metadata={"priority_level": priority_level, "active": active},
    )
    return designation
