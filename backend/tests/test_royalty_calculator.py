"""
Tests for RoyaltyCalculator and the pool cap.

Scenario A: pool 70000, 80 of 100 platform streams, tier 2.0, 10 fraud
streams -> base 56000, final 112000, ratio 0.125, adjusted 98000. The
adjusted amount exceeds the pool, so the cap scales it back to 70000.
"""
from decimal import Decimal

import pytest

from royalty.errors import ValidationError
from royalty.models.domain import ArtistTier
from royalty.services.royalty import RoyaltyCalculator, apportion


# =============================================================================
# TEST: CALCULATION
# =============================================================================

class TestCalculate:

    def test_scenario_a_formulas(self):
        result = RoyaltyCalculator().calculate(
            pool=70_000,
            creator_qualified_streams=80,
            platform_qualified_streams=100,
            tier_multiplier=Decimal("2.0"),
            fraud_stream_count=10,
        )

        assert result.base_amount == 56_000
        assert result.final_amount == 112_000
        assert result.fraud_ratio == Decimal("0.125")
        assert result.adjusted_amount == 98_000
        assert result.per_stream_rate == Decimal("1225")

    def test_scenario_a_capped_at_pool(self):
        """The policy is scale-down: a lone creator can never receive more than the pool."""
        calculator = RoyaltyCalculator()
        result = calculator.calculate(70_000, 80, 100, ArtistTier.FEATURED.multiplier, 10, creator_id="a")

        capped = calculator.apply_pool_cap([result], 70_000)

        assert capped is True
        assert result.adjusted_amount == 98_000
        assert result.capped_amount == 70_000
        assert result.payable_amount == 70_000

    def test_empty_period_is_all_zero(self):
        result = RoyaltyCalculator().calculate(50_000, 0, 0, Decimal("1.5"), 0)

        assert result.base_amount == 0
        assert result.final_amount == 0
        assert result.adjusted_amount == 0
        assert result.per_stream_rate == Decimal("0")
        assert result.fraud_ratio == Decimal("0")

    def test_zero_creator_streams(self):
        result = RoyaltyCalculator().calculate(50_000, 0, 100, Decimal("1"), 0)
        assert result.adjusted_amount == 0
        assert result.per_stream_rate == Decimal("0")

    def test_rounds_half_to_even(self):
        # 1 * 1/8 = 0.125 cents -> 0; 5 * 1/2 = 2.5 -> 2; 7 * 1/2 = 3.5 -> 4
        calc = RoyaltyCalculator()
        assert calc.calculate(1, 1, 8, 1, 0).base_amount == 0
        assert calc.calculate(5, 1, 2, 1, 0).base_amount == 2
        assert calc.calculate(7, 1, 2, 1, 0).base_amount == 4

    def test_full_fraud_pays_nothing(self):
        result = RoyaltyCalculator().calculate(10_000, 10, 10, 1, 10)
        assert result.fraud_ratio == Decimal("1")
        assert result.adjusted_amount == 0

    @pytest.mark.parametrize("kwargs", [
        dict(pool=-1, creator_qualified_streams=1, platform_qualified_streams=1, tier_multiplier=1, fraud_stream_count=0),
        dict(pool=100, creator_qualified_streams=5, platform_qualified_streams=1, tier_multiplier=1, fraud_stream_count=0),
        dict(pool=100, creator_qualified_streams=1, platform_qualified_streams=1, tier_multiplier=1, fraud_stream_count=2),
        dict(pool=100, creator_qualified_streams=1, platform_qualified_streams=1, tier_multiplier=0, fraud_stream_count=0),
        dict(pool=10.5, creator_qualified_streams=1, platform_qualified_streams=1, tier_multiplier=1, fraud_stream_count=0),
    ])
    def test_rejects_malformed_input(self, kwargs):
        with pytest.raises(ValidationError):
            RoyaltyCalculator().calculate(**kwargs)


# =============================================================================
# TEST: USER-CENTRIC AND HYBRID MODELS
# =============================================================================

LISTENER_STREAMS = {
    "l1": {"alice": 3, "bob": 1},
    "l2": {"alice": 1, "carol": 2},
    "l3": {"bob": 5},
}
LISTENER_REVENUE = {"l1": 1_000, "l2": 999, "l3": 500}


class TestUserCentric:

    def test_each_listener_revenue_follows_their_streams(self):
        calculator = RoyaltyCalculator()

        shares = {
            creator: calculator.calculate_user_centric(LISTENER_STREAMS, LISTENER_REVENUE, creator)
            for creator in ("alice", "bob", "carol")
        }

        assert shares == {"alice": 1_083, "bob": 750, "carol": 666}
        assert sum(shares.values()) == sum(LISTENER_REVENUE.values())

    def test_rounds_half_even(self):
        shares = RoyaltyCalculator().calculate_user_centric({"l1": {"alice": 1, "bob": 1}}, {"l1": 5}, "alice")
        assert shares == 2

    def test_unknown_creator_gets_nothing(self):
        assert RoyaltyCalculator().calculate_user_centric(LISTENER_STREAMS, LISTENER_REVENUE, "dave") == 0

    @pytest.mark.parametrize("streams,revenue", [
        ({"l1": {"alice": -1, "bob": 2}}, {"l1": 100}),
        ({"l1": {"alice": 1}}, {}),
        ({"l1": {"alice": 1}}, {"l1": -5}),
    ])
    def test_rejects_bad_inputs(self, streams, revenue):
        with pytest.raises(ValidationError):
            RoyaltyCalculator().calculate_user_centric(streams, revenue, "alice")


class TestHybrid:

    def hybrid(self, user_centric_amount, **kwargs):
        return RoyaltyCalculator().calculate_hybrid(
            pool=70_000,
            creator_qualified_streams=80,
            platform_qualified_streams=100,
            tier_multiplier=Decimal("2.0"),
            fraud_stream_count=10,
            user_centric_amount=user_centric_amount,
            **kwargs,
        )

    def test_default_blend_is_sixty_forty(self):
        result = self.hybrid(50_000)

        assert result.base_amount == 56_000
        assert result.final_amount == 112_000
        assert result.adjusted_amount == 78_800
        assert result.per_stream_rate == Decimal("985")

    @pytest.mark.parametrize("weight,expected", [(1, 98_000), (0, 50_000), (Decimal("0.25"), 62_000)])
    def test_weight_extremes(self, weight, expected):
        assert self.hybrid(50_000, pro_rata_weight=weight).adjusted_amount == expected

    def test_blend_rounds_half_even(self):
        result = RoyaltyCalculator().calculate_hybrid(
            pool=10,
            creator_qualified_streams=1,
            platform_qualified_streams=1,
            tier_multiplier=ArtistTier.EMERGING.multiplier,
            fraud_stream_count=0,
            user_centric_amount=5,
            pro_rata_weight=Decimal("0.5"),
        )
        assert result.adjusted_amount == 8

    @pytest.mark.parametrize("kwargs", [{"pro_rata_weight": Decimal("1.5")}, {"pro_rata_weight": -1}])
    def test_rejects_weight_outside_unit_range(self, kwargs):
        with pytest.raises(ValidationError):
            self.hybrid(50_000, **kwargs)

    def test_rejects_negative_user_centric_amount(self):
        with pytest.raises(ValidationError):
            self.hybrid(-1)


# =============================================================================
# TEST: POOL CAP
# =============================================================================

class TestPoolCap:

    def test_total_under_pool_is_untouched(self):
        calc = RoyaltyCalculator()
        results = [
            calc.calculate(10_000, 50, 100, 1, 0, creator_id="a"),
            calc.calculate(10_000, 50, 100, 1, 0, creator_id="b"),
        ]

        assert calc.apply_pool_cap(results, 10_000) is False
        assert all(r.capped_amount is None for r in results)
        assert sum(r.payable_amount for r in results) == 10_000

    def test_over_pool_scales_proportionally_and_sums_exactly(self):
        calc = RoyaltyCalculator()
        results = [
            calc.calculate(10_000, 40, 100, ArtistTier.FEATURED.multiplier, 0, creator_id="a"),  # 8000
            calc.calculate(10_000, 30, 100, ArtistTier.RISING.multiplier, 0, creator_id="b"),    # 3600
            calc.calculate(10_000, 30, 100, ArtistTier.EMERGING.multiplier, 0, creator_id="c"),  # 3000
        ]

        assert calc.apply_pool_cap(results, 10_000) is True

        payable = {r.creator_id: r.payable_amount for r in results}
        assert sum(payable.values()) == 10_000
        assert payable["a"] > payable["b"] > payable["c"]
        for r in results:
            assert r.payable_amount <= r.adjusted_amount


class TestApportion:

    def test_leftover_cents_go_to_largest_remainders(self):
        assert apportion({"a": 1, "b": 1, "c": 1}, 100) == {"a": 34, "b": 33, "c": 33}

    def test_zero_weights(self):
        assert apportion({"a": 0}, 100) == {"a": 0}

    def test_weighted_split(self):
        shares = apportion({"x": 5, "y": 2, "z": 1}, 1_000)
        assert sum(shares.values()) == 1_000
        assert shares == {"x": 625, "y": 250, "z": 125}
