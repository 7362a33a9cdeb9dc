"""
Royalty Calculator

Pro-rata share of a revenue pool, weighted by tier and discounted by the
creator's fraud ratio, plus the user-centric and hybrid (pro-rata blended
with user-centric) models. All money is integer cents; intermediate math
is Decimal and every rounding step is half-to-even.

Pool cap: the tier multiplier is applied after the pro-rata split, so the
per-creator amounts can add up to more than the pool. `apply_pool_cap`
scales every creator down proportionally when that happens; totals at or
below the pool are left untouched.
"""
from dataclasses import replace
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Dict, List, Mapping

from ...errors import ValidationError
from ...models.domain import RoyaltyCalculationResult, to_cents

RATE_PRECISION = Decimal("0.0001")
DEFAULT_PRO_RATA_WEIGHT = Decimal("0.6")


def per_stream_rate(amount: int, streams: int) -> Decimal:
    if streams == 0:
        return Decimal("0")
    return (Decimal(amount) / Decimal(streams)).quantize(RATE_PRECISION, rounding=ROUND_HALF_EVEN)


def apportion(weights: Mapping[str, int], total: int) -> Dict[str, int]:
    """
    Split `total` cents across keys proportionally to integer weights.

    Largest-remainder method: every key gets the floor of its exact share,
    then the leftover cents go one each to the largest fractional parts,
    ties broken by key. The result always sums to `total` exactly (or is
    all zeros when there is no positive weight).
    """
    if total < 0:
        raise ValidationError(f"Cannot apportion a negative total: {total}")
    positive = {key: weight for key, weight in weights.items() if weight > 0}
    weight_sum = sum(positive.values())
    if weight_sum == 0:
        return {key: 0 for key in weights}

    shares = {key: 0 for key in weights}
    remainders = []
    for key, weight in positive.items():
        shares[key], remainder = divmod(weight * total, weight_sum)
        remainders.append((-remainder, key))

    leftover = total - sum(shares.values())
    for _, key in sorted(remainders)[:leftover]:
        shares[key] += 1
    return shares


class RoyaltyCalculator:
    """Computes a creator's payable royalty for one distribution period."""

    def calculate(
        self,
        pool: int,
        creator_qualified_streams: int,
        platform_qualified_streams: int,
        tier_multiplier,
        fraud_stream_count: int,
        creator_id: str = None,
    ) -> RoyaltyCalculationResult:
        """
        Returns:
            RoyaltyCalculationResult. An empty period (no platform streams)
            yields an all-zero result rather than an error.
        """
        multiplier = Decimal(str(tier_multiplier))
        self._validate(pool, creator_qualified_streams, platform_qualified_streams, multiplier, fraud_stream_count)

        if platform_qualified_streams == 0:
            return RoyaltyCalculationResult(
                base_amount=0,
                tier_multiplier=multiplier,
                final_amount=0,
                fraud_stream_count=fraud_stream_count,
                fraud_ratio=Decimal("0"),
                adjusted_amount=0,
                per_stream_rate=Decimal("0"),
                creator_id=creator_id,
            )

        base_amount = to_cents(
            Decimal(pool) * Decimal(creator_qualified_streams) / Decimal(platform_qualified_streams)
        )
        final_amount = to_cents(Decimal(base_amount) * multiplier)

        if creator_qualified_streams == 0:
            fraud_ratio = Decimal("0")
        else:
            fraud_ratio = Decimal(fraud_stream_count) / Decimal(creator_qualified_streams)

        adjusted_amount = to_cents(Decimal(final_amount) * (Decimal("1") - fraud_ratio))

        return RoyaltyCalculationResult(
            base_amount=base_amount,
            tier_multiplier=multiplier,
            final_amount=final_amount,
            fraud_stream_count=fraud_stream_count,
            fraud_ratio=fraud_ratio,
            adjusted_amount=adjusted_amount,
            per_stream_rate=per_stream_rate(adjusted_amount, creator_qualified_streams),
            creator_id=creator_id,
        )

    def calculate_user_centric(
        self,
        listener_streams: Mapping[str, Mapping[str, int]],
        listener_revenue: Mapping[str, int],
        creator_id: str,
    ) -> int:
        """
        User-centric share: each listener's revenue is split across the
        creators that listener streamed, by that listener's stream counts.

        Args:
            listener_streams: listener id -> {creator id: qualified streams}
            listener_revenue: listener id -> revenue the listener brought in (cents)
            creator_id: creator whose share is wanted

        Returns:
            The creator's share in cents, rounded half-to-even once at the end.
        """
        total = Decimal("0")
        for listener_id, streams in listener_streams.items():
            for value in streams.values():
                if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                    raise ValidationError(f"Stream counts must be non-negative integers, got {value!r}")
            listener_total = sum(streams.values())
            creator_streams = streams.get(creator_id, 0)
            if listener_total == 0 or creator_streams == 0:
                continue
            if listener_id not in listener_revenue:
                raise ValidationError(f"No revenue given for listener {listener_id}")
            revenue = listener_revenue[listener_id]
            if not isinstance(revenue, int) or revenue < 0:
                raise ValidationError(f"Listener revenue must be non-negative cents, got {revenue!r}")
            total += Decimal(revenue) * Decimal(creator_streams) / Decimal(listener_total)
        return to_cents(total)

    def calculate_hybrid(
        self,
        pool: int,
        creator_qualified_streams: int,
        platform_qualified_streams: int,
        tier_multiplier,
        fraud_stream_count: int,
        user_centric_amount: int,
        pro_rata_weight=DEFAULT_PRO_RATA_WEIGHT,
        creator_id: str = None,
    ) -> RoyaltyCalculationResult:
        """Blend of the pro-rata result and a user-centric amount (60/40 by default)."""
        weight = Decimal(str(pro_rata_weight))
        if not Decimal("0") <= weight <= Decimal("1"):
            raise ValidationError(f"pro_rata_weight must be within [0, 1], got {pro_rata_weight}")
        if not isinstance(user_centric_amount, int) or user_centric_amount < 0:
            raise ValidationError(f"user_centric_amount must be non-negative cents, got {user_centric_amount!r}")

        pro_rata = self.calculate(
            pool,
            creator_qualified_streams,
            platform_qualified_streams,
            tier_multiplier,
            fraud_stream_count,
            creator_id=creator_id,
        )
        blended = to_cents(
            Decimal(pro_rata.adjusted_amount) * weight
            + Decimal(user_centric_amount) * (Decimal("1") - weight)
        )
        return replace(
            pro_rata,
            adjusted_amount=blended,
            per_stream_rate=per_stream_rate(blended, creator_qualified_streams),
        )

    def apply_pool_cap(self, results: List[RoyaltyCalculationResult], pool: int) -> bool:
        """
        Scale results down so their total does not exceed the pool.

        Sets `capped_amount` on every result when the adjusted total exceeds
        the pool and returns True; otherwise leaves results untouched and
        returns False.
        """
        total = sum(result.adjusted_amount for result in results)
        if total <= pool:
            return False

        keys = [result.creator_id or str(index) for index, result in enumerate(results)]
        if len(set(keys)) != len(keys):
            raise ValidationError("Pool cap needs one result per creator")

        shares = apportion(
            {key: result.adjusted_amount for key, result in zip(keys, results)},
            pool,
        )
        for key, result in zip(keys, results):
            result.capped_amount = shares[key]
        return True

    @staticmethod
    def _validate(pool, creator_streams, platform_streams, multiplier, fraud_count) -> None:
        for name, value in (
            ("pool", pool),
            ("creator_qualified_streams", creator_streams),
            ("platform_qualified_streams", platform_streams),
            ("fraud_stream_count", fraud_count),
        ):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer, got {value!r}")
        if multiplier <= 0:
            raise ValidationError(f"tier_multiplier must be positive, got {multiplier}")
        if creator_streams > platform_streams:
            raise ValidationError(
                f"Creator streams ({creator_streams}) exceed platform streams ({platform_streams})"
            )
        if fraud_count > creator_streams:
            raise ValidationError(
                f"Fraud streams ({fraud_count}) exceed qualified streams ({creator_streams})"
            )
