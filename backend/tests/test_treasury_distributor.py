"""
Tests for TreasuryDistributor.

1. Fund split sums exactly to revenue, residual to platform-ops
2. Creator pool credited from qualified streams, capped at the pool
3. Re-running a period credits only what failed the first time
4. Priority fund split across active designations
5. Infrastructure payments: paid, already paid, insufficient funds
6. Period revenue inputs
"""
from datetime import date, datetime

import pytest

from royalty.config import FUND_ALLOCATIONS_BPS
from royalty.errors import DuplicateTransaction, InsufficientTreasuryFunds, ValidationError
from royalty.models.db_models import (
    DistributionRunDB,
    PriorityArtistDesignationDB,
    TransactionDB,
    TreasuryExpenseDB,
    TreasuryFundDB,
)
from royalty.models.domain import ArtistTier, FundName, RevenueSource, TransactionSource
from royalty.services.ledger import LedgerService
from royalty.services.treasury import TreasuryDistributor, split_revenue

from conftest import assert_ledger_invariant, make_profile, stream

JAN_START = date(2024, 1, 1)
JAN_END = date(2024, 1, 31)
IN_JAN = datetime(2024, 1, 10, 12, 0)


class FlakyLedger(LedgerService):
    """Refuses credits for the given accounts."""

    def __init__(self, db, failing):
        super().__init__(db)
        self.failing = set(failing)

    def credit(self, account_id, *args, **kwargs):
        if account_id in self.failing:
            raise ValidationError(f"simulated failure for {account_id}")
        return super().credit(account_id, *args, **kwargs)


@pytest.fixture
def distributor(db, settings):
    return TreasuryDistributor(db, settings)


def seed_streams(db, engine, counts, when=IN_JAN):
    events = [stream(creator_id, when) for creator_id, n in counts.items() for _ in range(n)]
    engine.ingest_stream_events(db, events)
    db.flush()


def fund_row(db, fund, start=JAN_START, end=JAN_END):
    return (
        db.query(TreasuryFundDB)
        .filter_by(fund=fund, period_start=start, period_end=end)
        .populate_existing()
        .one()
    )


# =============================================================================
# TEST: FUND SPLIT
# =============================================================================

class TestSplitRevenue:

    def test_split_follows_allocations(self):
        shares = split_revenue(100_000, FUND_ALLOCATIONS_BPS)

        assert shares == {
            FundName.PLATFORM_OPS: 30_000,
            FundName.PRIORITY_FUND: 10_000,
            FundName.GOVERNANCE: 5_000,
            FundName.RND: 5_000,
            FundName.CREATOR_POOL: 50_000,
        }

    @pytest.mark.parametrize("revenue", [0, 1, 7, 99_999, 123_456_789])
    def test_split_sums_exactly(self, revenue):
        shares = split_revenue(revenue, FUND_ALLOCATIONS_BPS)
        assert sum(shares.values()) == revenue

    def test_residual_goes_to_platform_ops(self):
        shares = split_revenue(7, FUND_ALLOCATIONS_BPS)
        # floor shares: 2, 0, 0, 0, 3 -> 2 cents residual
        assert shares[FundName.CREATOR_POOL] == 3
        assert shares[FundName.PLATFORM_OPS] == 4


# =============================================================================
# TEST: DISTRIBUTION
# =============================================================================

class TestDistribute:

    def test_creator_pool_split_by_streams(self, db, engine, distributor):
        seed_streams(db, engine, {"alice": 3, "bob": 1})

        summary = distributor.distribute(100_000, JAN_START, JAN_END)
        db.commit()

        assert summary.credited_count == 2
        assert summary.credited_cents == 50_000
        assert summary.pool_capped is False
        assert assert_ledger_invariant(db, "alice").balance_cents == 37_500
        assert assert_ledger_invariant(db, "bob").balance_cents == 12_500

        pool = fund_row(db, FundName.CREATOR_POOL)
        assert pool.allocated_cents == 50_000
        assert pool.distributed_cents == 50_000
        assert pool.balance_cents == 0

        tx = db.query(TransactionDB).filter_by(account_id="alice").one()
        assert tx.source == TransactionSource.SUBSCRIPTION_SHARE

    def test_unqualified_streams_earn_nothing(self, db, engine, distributor):
        seed_streams(db, engine, {"alice": 2})
        engine.ingest_stream_events(db, [stream("bob", IN_JAN, duration=5.0)])

        summary = distributor.distribute(100_000, JAN_START, JAN_END)

        assert summary.credited_count == 1
        assert db.query(TransactionDB).filter_by(account_id="bob").count() == 0

    def test_tier_multipliers_are_capped_at_pool(self, db, engine, distributor):
        make_profile(db, "alice", tier=ArtistTier.FEATURED)
        seed_streams(db, engine, {"alice": 3, "bob": 1})

        summary = distributor.distribute(100_000, JAN_START, JAN_END)
        db.commit()

        assert summary.pool_capped is True
        alice = assert_ledger_invariant(db, "alice").balance_cents
        bob = assert_ledger_invariant(db, "bob").balance_cents
        assert alice + bob == 50_000
        assert alice > bob

    def test_empty_period_leaves_pool_undistributed(self, db, distributor):
        summary = distributor.distribute(100_000, JAN_START, JAN_END)

        assert summary.credited_count == 0
        assert summary.undistributed_cents[FundName.CREATOR_POOL.value] == 50_000

    def test_rerun_is_a_no_op(self, db, engine, distributor):
        seed_streams(db, engine, {"alice": 1})
        distributor.distribute(100_000, JAN_START, JAN_END)
        db.commit()

        summary = distributor.distribute(100_000, JAN_START, JAN_END)
        db.commit()

        assert summary.already_allocated is True
        assert summary.credited_count == 0
        assert summary.duplicate_count == 1
        assert fund_row(db, FundName.CREATOR_POOL).allocated_cents == 50_000
        assert assert_ledger_invariant(db, "alice").balance_cents == 50_000

    def test_rerun_with_different_revenue_is_refused(self, db, distributor):
        distributor.distribute(100_000, JAN_START, JAN_END)

        with pytest.raises(ValidationError):
            distributor.distribute(90_000, JAN_START, JAN_END)

    def test_partial_failure_is_retried_on_rerun(self, db, engine, settings):
        seed_streams(db, engine, {"alice": 3, "bob": 1})
        flaky = TreasuryDistributor(db, settings, ledger=FlakyLedger(db, {"bob"}))

        first = flaky.distribute(100_000, JAN_START, JAN_END)
        db.commit()

        assert first.credited_count == 1
        assert first.failed_creators == ["bob"]
        assert fund_row(db, FundName.CREATOR_POOL).balance_cents == 12_500

        second = TreasuryDistributor(db, settings).distribute(100_000, JAN_START, JAN_END)
        db.commit()

        assert second.credited_count == 1
        assert second.duplicate_count == 1
        assert assert_ledger_invariant(db, "alice").balance_cents == 37_500
        assert assert_ledger_invariant(db, "bob").balance_cents == 12_500
        assert fund_row(db, FundName.CREATOR_POOL).balance_cents == 0

    def test_rerun_ignores_events_arriving_after_first_run(self, db, engine, settings):
        seed_streams(db, engine, {"alice": 3, "bob": 1})
        TreasuryDistributor(db, settings, ledger=FlakyLedger(db, {"bob"})).distribute(100_000, JAN_START, JAN_END)
        db.commit()

        seed_streams(db, engine, {"carol": 4})
        second = TreasuryDistributor(db, settings).distribute(100_000, JAN_START, JAN_END)
        db.commit()

        assert second.credited_count == 1
        assert second.credited_cents == 12_500
        assert assert_ledger_invariant(db, "alice").balance_cents == 37_500
        assert assert_ledger_invariant(db, "bob").balance_cents == 12_500
        assert db.query(TransactionDB).filter_by(account_id="carol").count() == 0
        pool = fund_row(db, FundName.CREATOR_POOL)
        assert pool.distributed_cents == pool.allocated_cents == 50_000
        assert pool.balance_cents == 0

    def test_rerun_ignores_designations_added_after_first_run(self, db, settings, distributor):
        distributor.distribute(100_000, JAN_START, JAN_END)
        db.commit()
        make_profile(db, "carol")
        db.add(PriorityArtistDesignationDB(id="designation-carol", creator_id="carol", priority_level=2, active=True))
        db.commit()

        summary = TreasuryDistributor(db, settings).distribute(100_000, JAN_START, JAN_END)

        assert summary.credited_count == 0
        assert db.query(TransactionDB).filter_by(account_id="carol").count() == 0
        assert fund_row(db, FundName.PRIORITY_FUND).balance_cents == 10_000

    def test_share_larger_than_fund_balance_fails_without_debit(self, db, engine, settings):
        seed_streams(db, engine, {"alice": 3, "bob": 1})
        TreasuryDistributor(db, settings, ledger=FlakyLedger(db, {"bob"})).distribute(100_000, JAN_START, JAN_END)
        db.commit()
        run = db.query(DistributionRunDB).one()
        shares = dict(run.shares)
        shares[FundName.CREATOR_POOL.value] = {
            **shares[FundName.CREATOR_POOL.value],
            "bob": {"amount_cents": 20_000, "metadata": {}},
        }
        run.shares = shares
        db.commit()

        summary = TreasuryDistributor(db, settings).distribute(100_000, JAN_START, JAN_END)
        db.commit()

        assert summary.failed_creators == ["bob"]
        assert db.query(TransactionDB).filter_by(account_id="bob").count() == 0
        assert fund_row(db, FundName.CREATOR_POOL).balance_cents == 12_500

    def test_sources_distribute_independently(self, db, engine, distributor):
        seed_streams(db, engine, {"alice": 1})

        distributor.distribute(100_000, JAN_START, JAN_END, RevenueSource.SUBSCRIPTION)
        distributor.distribute(20_000, JAN_START, JAN_END, RevenueSource.LICENSING)
        db.commit()

        assert fund_row(db, FundName.CREATOR_POOL).allocated_cents == 60_000
        sources = {tx.source for tx in db.query(TransactionDB).filter_by(account_id="alice")}
        assert sources == {TransactionSource.SUBSCRIPTION_SHARE, TransactionSource.LICENSING_SHARE}

    def test_rejects_inverted_period(self, distributor):
        with pytest.raises(ValidationError):
            distributor.distribute(100, JAN_END, JAN_START)


class TestPriorityFund:

    def test_split_by_priority_level(self, db, distributor):
        for creator_id, level, active in (("carol", 3, True), ("dave", 1, True), ("erin", 5, False)):
            make_profile(db, creator_id)
            db.add(PriorityArtistDesignationDB(
                id=f"designation-{creator_id}",
                creator_id=creator_id,
                priority_level=level,
                active=active,
            ))
        db.flush()

        summary = distributor.distribute(100_000, JAN_START, JAN_END)
        db.commit()

        assert assert_ledger_invariant(db, "carol").balance_cents == 7_500
        assert assert_ledger_invariant(db, "dave").balance_cents == 2_500
        assert db.query(TransactionDB).filter_by(account_id="erin").count() == 0
        assert summary.undistributed_cents[FundName.PRIORITY_FUND.value] == 0

        tx = db.query(TransactionDB).filter_by(account_id="carol").one()
        assert tx.source == TransactionSource.LICENSING_SHARE

    def test_no_designations_keeps_fund(self, db, distributor):
        summary = distributor.distribute(100_000, JAN_START, JAN_END)
        assert summary.undistributed_cents[FundName.PRIORITY_FUND.value] == 10_000


# =============================================================================
# TEST: INFRASTRUCTURE COSTS
# =============================================================================

class TestInfrastructureCosts:

    def test_pays_from_platform_ops(self, db, distributor, settings):
        distributor.distribute(1_000_000, JAN_START, JAN_END)

        result = distributor.pay_infrastructure_costs(JAN_START, JAN_END)
        db.commit()

        total = sum(settings.infra_costs.values())
        assert result["status"] == "paid"
        assert result["total_cents"] == total
        ops = fund_row(db, FundName.PLATFORM_OPS)
        assert ops.spent_cents == total
        assert ops.balance_cents == 300_000 - total
        assert db.query(TreasuryExpenseDB).count() == len(settings.infra_costs)

    def test_second_payment_is_skipped(self, db, distributor):
        distributor.distribute(1_000_000, JAN_START, JAN_END)
        distributor.pay_infrastructure_costs(JAN_START, JAN_END)

        result = distributor.pay_infrastructure_costs(JAN_START, JAN_END)
        db.commit()

        assert result["status"] == "already_paid"
        assert fund_row(db, FundName.PLATFORM_OPS).spent_cents == 110_000

    def test_insufficient_funds_changes_nothing(self, db, distributor):
        distributor.distribute(100_000, JAN_START, JAN_END)

        with pytest.raises(InsufficientTreasuryFunds) as exc_info:
            distributor.pay_infrastructure_costs(JAN_START, JAN_END)
        db.commit()

        assert exc_info.value.available_cents == 30_000
        ops = fund_row(db, FundName.PLATFORM_OPS)
        assert ops.balance_cents == 30_000
        assert ops.spent_cents == 0
        assert db.query(TreasuryExpenseDB).count() == 0

    def test_missing_fund_is_insufficient(self, distributor):
        with pytest.raises(InsufficientTreasuryFunds) as exc_info:
            distributor.pay_infrastructure_costs(JAN_START, JAN_END, costs={"servers": 100})
        assert exc_info.value.available_cents == 0


# =============================================================================
# TEST: REVENUE INPUTS
# =============================================================================

class TestPeriodRevenue:

    def test_totals_per_source(self, db, distributor):
        distributor.record_period_revenue(JAN_START, JAN_END, 60_000, RevenueSource.SUBSCRIPTION, "inv-1")
        distributor.record_period_revenue(JAN_START, JAN_END, 40_000, RevenueSource.SUBSCRIPTION, "inv-2")
        distributor.record_period_revenue(JAN_START, JAN_END, 5_000, RevenueSource.LICENSING)

        totals = distributor.period_revenue_totals(JAN_START, JAN_END)

        assert totals == {RevenueSource.SUBSCRIPTION: 100_000, RevenueSource.LICENSING: 5_000}

    def test_duplicate_external_id(self, distributor):
        distributor.record_period_revenue(JAN_START, JAN_END, 60_000, RevenueSource.SUBSCRIPTION, "inv-1")

        with pytest.raises(DuplicateTransaction):
            distributor.record_period_revenue(JAN_START, JAN_END, 60_000, RevenueSource.SUBSCRIPTION, "inv-1")

    def test_negative_revenue_is_refused(self, distributor):
        with pytest.raises(ValidationError):
            distributor.record_period_revenue(JAN_START, JAN_END, -1, RevenueSource.SUBSCRIPTION)
