"""
Treasury Distributor

Splits a period's pooled revenue across the named funds, then feeds the
creator pool and the priority fund into ledger credits.

Guarantees:
- sum(fund allocations) == period revenue, exactly (residual to platform-ops)
- a (period, revenue source) is allocated to funds at most once
- creator shares are fixed by the first run and stored on the run row;
  with period-scoped idempotency keys, re-running a period credits only
  the stored shares that failed the first time
- every credit is paired with a conditional fund debit, so the fund can
  never pay out more than it holds
- a failed creator credit leaves its share in the fund balance
"""
import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import EngineSettings, RESIDUAL_FUND
from ...errors import (
    DuplicateTransaction,
    InsufficientTreasuryFunds,
    RoyaltyEngineError,
    ValidationError,
)
from ...models.db_models import (
    CreatorProfileDB,
    DistributionRunDB,
    PeriodRevenueDB,
    PriorityArtistDesignationDB,
    StreamEventDB,
    TreasuryExpenseDB,
    TreasuryFundDB,
    utcnow,
)
from ...models.domain import (
    ArtistTier,
    DistributionSummary,
    FundName,
    RevenueSource,
    StreamEventData,
    TransactionSource,
)
from ..fraud import FraudAnalyzer
from ..ledger import AuditLogService, LedgerService
from ..royalty import RoyaltyCalculator, apportion

logger = logging.getLogger(__name__)


def split_revenue(revenue_cents: int, allocations_bps: Dict[FundName, int]) -> Dict[FundName, int]:
    """Floor-divide revenue by basis points; the residual goes to platform-ops."""
    shares = {fund: revenue_cents * bps // 10_000 for fund, bps in allocations_bps.items()}
    shares[RESIDUAL_FUND] += revenue_cents - sum(shares.values())
    return shares


def period_bounds(period_start: date, period_end: date) -> Tuple[datetime, datetime]:
    """Half-open datetime range covering the inclusive date range."""
    return (
        datetime.combine(period_start, time.min),
        datetime.combine(period_end + timedelta(days=1), time.min),
    )


class TreasuryDistributor:
    """Fund split, creator-pool and priority-fund distribution, infrastructure payments."""

    def __init__(
        self,
        db: Session,
        settings: EngineSettings,
        ledger: Optional[LedgerService] = None,
        analyzer: Optional[FraudAnalyzer] = None,
        calculator: Optional[RoyaltyCalculator] = None,
        audit: Optional[AuditLogService] = None,
    ):
        self.db = db
        self.settings = settings
        self.audit = audit or AuditLogService(db)
        self.ledger = ledger or LedgerService(db, self.audit)
        self.analyzer = analyzer or FraudAnalyzer(
            settings.fraud_score_cutoff, settings.qualified_stream_seconds
        )
        self.calculator = calculator or RoyaltyCalculator()

    # =========================================================================
    # DISTRIBUTION
    # =========================================================================

    def distribute(
        self,
        period_revenue_cents: int,
        period_start: date,
        period_end: date,
        revenue_source: RevenueSource = RevenueSource.SUBSCRIPTION,
    ) -> DistributionSummary:
        """
        Allocate a period's revenue to funds and credit eligible creators.

        Safe to call again for the same period: fund rows are not touched a
        second time and every credit that already landed is a duplicate.
        """
        revenue_source = RevenueSource(revenue_source)
        if not isinstance(period_revenue_cents, int) or period_revenue_cents < 0:
            raise ValidationError(f"Period revenue must be non-negative cents, got {period_revenue_cents!r}")
        if period_start > period_end:
            raise ValidationError(f"Period start {period_start} is after period end {period_end}")

        run, already_allocated = self._allocate(period_revenue_cents, period_start, period_end, revenue_source)
        allocations = {FundName(name): cents for name, cents in run.allocations.items()}

        summary = DistributionSummary(
            period_start=period_start,
            period_end=period_end,
            revenue_source=revenue_source,
            period_revenue_cents=period_revenue_cents,
            allocations={fund.value: cents for fund, cents in allocations.items()},
            already_allocated=already_allocated,
        )

        shares = self._planned_shares(run, allocations, period_start, period_end)
        summary.pool_capped = shares["pool_capped"]
        self._credit_fund_shares(
            FundName.CREATOR_POOL, shares[FundName.CREATOR_POOL.value], revenue_source.ledger_source,
            revenue_source, period_start, period_end, summary,
        )
        self._credit_fund_shares(
            FundName.PRIORITY_FUND, shares[FundName.PRIORITY_FUND.value], TransactionSource.LICENSING_SHARE,
            revenue_source, period_start, period_end, summary,
        )

        for fund in (FundName.CREATOR_POOL, FundName.PRIORITY_FUND):
            summary.undistributed_cents[fund.value] = self._fund(fund, period_start, period_end).balance_cents

        run.summary = summary.to_dict()
        self.audit.record(
            "distribution_completed",
            entity_type="distribution_run",
            entity_id=run.id,
            amount_cents=summary.credited_cents,
            metadata=summary.to_dict(),
        )
        self.db.flush()

        logger.info(
            f"Distribution {revenue_source.value} {period_start}..{period_end}: "
            f"credited={summary.credited_count} failed={summary.failed_count} "
            f"duplicates={summary.duplicate_count} capped={summary.pool_capped}"
        )
        return summary

    def _allocate(
        self,
        revenue_cents: int,
        period_start: date,
        period_end: date,
        revenue_source: RevenueSource,
    ) -> Tuple[DistributionRunDB, bool]:
        """Create the run row and add the fund shares, once per (period, source)."""
        existing = self._find_run(period_start, period_end, revenue_source)
        if existing is None:
            allocations = split_revenue(revenue_cents, self.settings.fund_allocations)
            run = DistributionRunDB(
                id=str(uuid4()),
                period_start=period_start,
                period_end=period_end,
                revenue_source=revenue_source,
                revenue_cents=revenue_cents,
                allocations={fund.value: cents for fund, cents in allocations.items()},
                created_at=utcnow(),
            )
            try:
                with self.db.begin_nested():
                    self.db.add(run)
                    self.db.flush()
                    for fund, cents in allocations.items():
                        fund_row = self._fund(fund, period_start, period_end, create=True)
                        self._update_fund(
                            fund_row.id,
                            allocated_cents=TreasuryFundDB.allocated_cents + cents,
                            balance_cents=TreasuryFundDB.balance_cents + cents,
                        )
                    self.audit.record(
                        "treasury_allocation",
                        entity_type="distribution_run",
                        entity_id=run.id,
                        amount_cents=revenue_cents,
                        metadata={
                            "revenue_source": revenue_source.value,
                            "period_start": period_start.isoformat(),
                            "period_end": period_end.isoformat(),
                            "allocations": run.allocations,
                        },
                    )
                return run, False
            except IntegrityError:
                # Allocated by a concurrent run
                existing = self._find_run(period_start, period_end, revenue_source)
                if existing is None:
                    raise

        if existing.revenue_cents != revenue_cents:
            raise ValidationError(
                f"{revenue_source.value} {period_start}..{period_end} was already allocated "
                f"with {existing.revenue_cents} cents, not {revenue_cents}"
            )
        return existing, True

    def _planned_shares(
        self,
        run: DistributionRunDB,
        allocations: Dict[FundName, int],
        period_start: date,
        period_end: date,
    ) -> Dict:
        """
        Per-creator shares of the run, computed once and stored on the run.

        Reruns replay the stored shares, so events or designations arriving
        after the first run cannot change who is owed what for the period.
        """
        if run.shares is not None:
            return run.shares

        pool_credits, pool_capped = self._creator_pool_credits(
            allocations[FundName.CREATOR_POOL], period_start, period_end
        )
        priority_credits = self._priority_fund_credits(allocations[FundName.PRIORITY_FUND])
        run.shares = {
            "pool_capped": pool_capped,
            FundName.CREATOR_POOL.value: {
                creator_id: {"amount_cents": amount, "metadata": metadata}
                for creator_id, (amount, metadata) in pool_credits.items()
            },
            FundName.PRIORITY_FUND.value: {
                creator_id: {"amount_cents": amount, "metadata": metadata}
                for creator_id, (amount, metadata) in priority_credits.items()
            },
        }
        self.db.flush()
        return run.shares

    def _creator_pool_credits(
        self,
        pool_cents: int,
        period_start: date,
        period_end: date,
    ) -> Tuple[Dict[str, Tuple[int, dict]], bool]:
        """Per-creator calculator results for the pool, capped at the pool."""
        start, end = period_bounds(period_start, period_end)
        rows = (
            self.db.query(StreamEventDB)
            .filter(
                StreamEventDB.occurred_at >= start,
                StreamEventDB.occurred_at < end,
                StreamEventDB.qualified.is_(True),
            )
            .order_by(StreamEventDB.creator_id)
            .all()
        )
        analyses = self.analyzer.analyze_by_creator(
            StreamEventData(
                creator_id=row.creator_id,
                viewer_id=row.viewer_id,
                duration_seconds=row.duration_seconds,
                fraud_score=row.fraud_score,
                occurred_at=row.occurred_at,
                qualified=row.qualified,
                event_id=row.event_id,
            )
            for row in rows
        )
        platform_streams = sum(a.qualified_stream_count for a in analyses.values())

        tiers = {
            profile.creator_id: profile.tier
            for profile in self.db.query(CreatorProfileDB).filter(
                CreatorProfileDB.creator_id.in_(list(analyses))
            )
        }

        results = []
        for creator_id in sorted(analyses):
            analysis = analyses[creator_id]
            if analysis.qualified_stream_count == 0:
                continue
            tier = tiers.get(creator_id, ArtistTier.EMERGING)
            results.append(self.calculator.calculate(
                pool=pool_cents,
                creator_qualified_streams=analysis.qualified_stream_count,
                platform_qualified_streams=platform_streams,
                tier_multiplier=tier.multiplier,
                fraud_stream_count=analysis.fraud_stream_count,
                creator_id=creator_id,
            ))

        capped = self.calculator.apply_pool_cap(results, pool_cents)
        credits = {
            result.creator_id: (result.payable_amount, result.to_metadata())
            for result in results
        }
        return credits, capped

    def _priority_fund_credits(self, fund_cents: int) -> Dict[str, Tuple[int, dict]]:
        """Split the priority fund across active designations by priority level."""
        designations = (
            self.db.query(PriorityArtistDesignationDB)
            .filter(PriorityArtistDesignationDB.active.is_(True))
            .all()
        )
        weights = {d.creator_id: d.priority_level for d in designations}
        shares = apportion(weights, fund_cents)
        return {
            creator_id: (cents, {"priority_level": weights[creator_id]})
            for creator_id, cents in shares.items()
        }

    def _credit_fund_shares(
        self,
        fund: FundName,
        shares: Dict[str, dict],
        ledger_source: TransactionSource,
        revenue_source: RevenueSource,
        period_start: date,
        period_end: date,
        summary: DistributionSummary,
    ) -> None:
        """Credit each share together with a conditional debit of the fund."""
        fund_row = self._fund(fund, period_start, period_end)
        for creator_id in sorted(shares):
            amount = shares[creator_id]["amount_cents"]
            metadata = shares[creator_id]["metadata"]
            if amount <= 0:
                continue
            key = f"{fund.value}:{revenue_source.value}:{creator_id}:{period_start.isoformat()}:{period_end.isoformat()}"
            try:
                with self.db.begin_nested():
                    rows = self._update_fund(
                        fund_row.id,
                        TreasuryFundDB.balance_cents >= amount,
                        balance_cents=TreasuryFundDB.balance_cents - amount,
                        distributed_cents=TreasuryFundDB.distributed_cents + amount,
                    )
                    if rows != 1:
                        self.db.refresh(fund_row)
                        raise InsufficientTreasuryFunds(fund.value, amount, fund_row.balance_cents)
                    self.ledger.credit(
                        creator_id,
                        amount,
                        ledger_source,
                        key,
                        metadata={**metadata, "fund": fund.value},
                    )
            except DuplicateTransaction:
                summary.duplicate_count += 1
                continue
            except RoyaltyEngineError as e:
                logger.error(f"{fund.value} credit failed for creator {creator_id}: {e}")
                summary.failed_count += 1
                summary.failed_creators.append(creator_id)
                continue
            summary.credited_count += 1
            summary.credited_cents += amount

    # =========================================================================
    # INFRASTRUCTURE COSTS
    # =========================================================================

    def pay_infrastructure_costs(
        self,
        period_start: date,
        period_end: date,
        costs: Optional[Dict[str, int]] = None,
    ) -> Dict:
        """
        Debit the platform-ops fund for the period's infrastructure costs.

        All-or-nothing: an insufficient balance raises and changes nothing.
        """
        costs = dict(self.settings.infra_costs if costs is None else costs)
        if any(not isinstance(c, int) or c < 0 for c in costs.values()):
            raise ValidationError("Infrastructure costs must be non-negative cents")
        total = sum(costs.values())
        keys = {
            category: f"infra:{category}:{period_start.isoformat()}:{period_end.isoformat()}"
            for category in costs
        }

        already_paid = (
            self.db.query(func.count(TreasuryExpenseDB.id))
            .filter(TreasuryExpenseDB.idempotency_key.in_(list(keys.values())))
            .scalar()
        )
        if already_paid:
            return {"status": "already_paid", "total_cents": total, "costs": costs}

        fund_row = self._fund(FundName.PLATFORM_OPS, period_start, period_end)
        if fund_row is None:
            raise InsufficientTreasuryFunds(FundName.PLATFORM_OPS.value, total, 0)

        try:
            with self.db.begin_nested():
                rows = self._update_fund(
                    fund_row.id,
                    TreasuryFundDB.balance_cents >= total,
                    balance_cents=TreasuryFundDB.balance_cents - total,
                    spent_cents=TreasuryFundDB.spent_cents + total,
                )
                if rows != 1:
                    self.db.refresh(fund_row)
                    raise InsufficientTreasuryFunds(FundName.PLATFORM_OPS.value, total, fund_row.balance_cents)
                for category, cents in costs.items():
                    self.db.add(TreasuryExpenseDB(
                        id=str(uuid4()),
                        fund_id=fund_row.id,
                        category=category,
                        description=f"{category} costs {period_start.isoformat()}..{period_end.isoformat()}",
                        amount_cents=cents,
                        idempotency_key=keys[category],
                        created_at=utcnow(),
                    ))
                self.db.flush()
                self.audit.record(
                    "infrastructure_payment",
                    entity_type="treasury_fund",
                    entity_id=fund_row.id,
                    amount_cents=total,
                    metadata={"costs": costs},
                )
        except IntegrityError:
            raise DuplicateTransaction(FundName.PLATFORM_OPS.value, f"infra:{period_start.isoformat()}")

        logger.info(f"Paid {total} cents of infrastructure costs for {period_start}..{period_end}")
        return {"status": "paid", "total_cents": total, "costs": costs}

    # =========================================================================
    # REVENUE INPUTS
    # =========================================================================

    def record_period_revenue(
        self,
        period_start: date,
        period_end: date,
        total_revenue_cents: int,
        source_type: RevenueSource,
        external_id: Optional[str] = None,
    ) -> PeriodRevenueDB:
        """Store a revenue total reported by billing or a processor webhook."""
        source_type = RevenueSource(source_type)
        if not isinstance(total_revenue_cents, int) or total_revenue_cents < 0:
            raise ValidationError(f"Revenue must be non-negative cents, got {total_revenue_cents!r}")
        if period_start > period_end:
            raise ValidationError(f"Period start {period_start} is after period end {period_end}")

        row = PeriodRevenueDB(
            id=str(uuid4()),
            external_id=external_id,
            period_start=period_start,
            period_end=period_end,
            source_type=source_type,
            total_revenue_cents=total_revenue_cents,
            created_at=utcnow(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(row)
                self.db.flush()
        except IntegrityError:
            existing = self.db.query(PeriodRevenueDB.id).filter(PeriodRevenueDB.external_id == external_id).scalar()
            raise DuplicateTransaction("period-revenue", external_id, existing)

        self.audit.record(
            "period_revenue_recorded",
            entity_type="period_revenue",
            entity_id=row.id,
            amount_cents=total_revenue_cents,
            metadata={"source_type": source_type.value, "external_id": external_id},
        )
        return row

    def period_revenue_totals(self, period_start: date, period_end: date) -> Dict[RevenueSource, int]:
        rows = (
            self.db.query(PeriodRevenueDB.source_type, func.sum(PeriodRevenueDB.total_revenue_cents))
            .filter(
                PeriodRevenueDB.period_start == period_start,
                PeriodRevenueDB.period_end == period_end,
            )
            .group_by(PeriodRevenueDB.source_type)
            .all()
        )
        return {RevenueSource(source): int(total or 0) for source, total in rows}

    # =========================================================================
    # READ-ONLY VIEWS
    # =========================================================================

    def fund_balances(self, period_start: date, period_end: date) -> List[Dict]:
        return [
            {
                "fund": row.fund.value,
                "allocated_cents": row.allocated_cents,
                "balance_cents": row.balance_cents,
                "distributed_cents": row.distributed_cents,
                "spent_cents": row.spent_cents,
            }
            for row in self.db.query(TreasuryFundDB).filter(
                TreasuryFundDB.period_start == period_start,
                TreasuryFundDB.period_end == period_end,
            ).order_by(TreasuryFundDB.fund)
        ]

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _find_run(self, period_start, period_end, revenue_source) -> Optional[DistributionRunDB]:
        return (
            self.db.query(DistributionRunDB)
            .filter(
                DistributionRunDB.period_start == period_start,
                DistributionRunDB.period_end == period_end,
                DistributionRunDB.revenue_source == revenue_source,
            )
            .first()
        )

    def _fund(self, fund: FundName, period_start: date, period_end: date, create: bool = False):
        row = (
            self.db.query(TreasuryFundDB)
            .filter(
                TreasuryFundDB.fund == fund,
                TreasuryFundDB.period_start == period_start,
                TreasuryFundDB.period_end == period_end,
            )
            .populate_existing()
            .first()
        )
        if row is None and create:
            now = utcnow()
            row = TreasuryFundDB(
                id=str(uuid4()),
                fund=fund,
                period_start=period_start,
                period_end=period_end,
                allocated_cents=0,
                balance_cents=0,
                distributed_cents=0,
                spent_cents=0,
                created_at=now,
                updated_at=now,
            )
            self.db.add(row)
            self.db.flush()
        return row

    def _update_fund(self, fund_id: str, *criteria, **values) -> int:
        values["updated_at"] = utcnow()
        result = self.db.execute(
            update(TreasuryFundDB)
            .where(TreasuryFundDB.id == fund_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        cached = self.db.identity_map.get(self.db.identity_key(TreasuryFundDB, fund_id))
        if cached is not None:
            self.db.expire(cached)
        return result.rowcount
