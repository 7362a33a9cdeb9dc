"""
Royalty Engine - Domain Types

Enumerations and value objects shared by the ledger, treasury, scheduler and
payout layers. Lookup tables keyed by an enum are checked for exhaustiveness
at import time, so adding a tier or jurisdiction without its rule fails
loudly instead of producing a silent default.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_EVEN
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import ConfigurationError


def to_cents(value) -> int:
    """Round a Decimal amount to whole cents, half-to-even."""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def _require_exhaustive(enum_cls, table: Dict) -> None:
    missing = [member.name for member in enum_cls if member not in table]
    if missing:
        raise ConfigurationError(f"{enum_cls.__name__} has no rule for: {', '.join(missing)}")


# =============================================================================
# LEDGER ENUMS
# =============================================================================

class TransactionSource(str, Enum):
    """Where a ledger credit came from."""
    STREAM_VIEW = "stream-view"
    SUBSCRIPTION_SHARE = "subscription-share"
    TIP = "tip"
    COLLABORATION_SPLIT = "collaboration-split"
    LICENSING_SHARE = "licensing-share"
    FRAUD_REVERSAL = "fraud-reversal"


class TransactionStatus(str, Enum):
    CREDITED = "credited"
    REVERSED = "reversed"


class ReservationStatus(str, Enum):
    """Lifecycle of a payout reservation token."""
    HELD = "held"
    CONSUMED = "consumed"
    RESTORED = "restored"


class ActorType(str, Enum):
    """Who caused an audit log entry."""
    SYSTEM = "SYSTEM"
    OPERATOR = "OPERATOR"
    PROCESSOR = "PROCESSOR"
    CREATOR = "CREATOR"


# =============================================================================
# TIERS
# =============================================================================

class ArtistTier(str, Enum):
    EMERGING = "emerging"
    RISING = "rising"
    ESTABLISHED = "established"
    FEATURED = "featured"
    PRIORITY = "priority"

    @property
    def multiplier(self) -> Decimal:
        return TIER_MULTIPLIERS[self]


TIER_MULTIPLIERS = {
    ArtistTier.EMERGING: Decimal("1.0"),
    ArtistTier.RISING: Decimal("1.2"),
    ArtistTier.ESTABLISHED: Decimal("1.5"),
    ArtistTier.FEATURED: Decimal("2.0"),
    ArtistTier.PRIORITY: Decimal("2.0"),
}
_require_exhaustive(ArtistTier, TIER_MULTIPLIERS)


# =============================================================================
# TREASURY
# =============================================================================

class FundName(str, Enum):
    PLATFORM_OPS = "platform-ops"
    PRIORITY_FUND = "priority-fund"
    GOVERNANCE = "governance"
    RND = "r&d"
    CREATOR_POOL = "creator-pool"


class RevenueSource(str, Enum):
    """Kind of pooled revenue being distributed."""
    SUBSCRIPTION = "subscription"
    LICENSING = "licensing"
    STREAMING = "streaming"  # per-stream revenue, distributed daily

    @property
    def ledger_source(self) -> TransactionSource:
        return REVENUE_LEDGER_SOURCES[self]


REVENUE_LEDGER_SOURCES = {
    RevenueSource.SUBSCRIPTION: TransactionSource.SUBSCRIPTION_SHARE,
    RevenueSource.LICENSING: TransactionSource.LICENSING_SHARE,
    RevenueSource.STREAMING: TransactionSource.STREAM_VIEW,
}
_require_exhaustive(RevenueSource, REVENUE_LEDGER_SOURCES)


# =============================================================================
# PAYOUTS
# =============================================================================

class PayoutMethod(str, Enum):
    CONNECT = "connect"
    BANK = "bank"
    CRYPTO = "crypto"
    MANUAL_INVOICE = "manual-invoice"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class TaxRule:
    rate: Decimal            # fraction of gross, e.g. 0.24
    threshold_cents: int     # gross below this is not withheld


class TaxJurisdiction(str, Enum):
    """Illustrative withholding table; anything unlisted is untaxed."""
    US = "US"
    CA = "CA"
    GB = "GB"
    AU = "AU"
    UNTAXED = "UNTAXED"

    @property
    def rule(self) -> TaxRule:
        return TAX_RULES[self]

    @classmethod
    def for_country(cls, country: Optional[str]) -> "TaxJurisdiction":
        code = (country or "").strip().upper()
        try:
            jurisdiction = cls(code)
        except ValueError:
            return cls.UNTAXED
        return jurisdiction

    def withholding(self, gross_cents: int) -> int:
        """Tax withheld on a gross payout, in cents."""
        rule = self.rule
        if gross_cents < rule.threshold_cents:
            return 0
        return to_cents(Decimal(gross_cents) * rule.rate)


TAX_RULES = {
    TaxJurisdiction.US: TaxRule(rate=Decimal("0.24"), threshold_cents=60_000),       # 1099-NEC
    TaxJurisdiction.CA: TaxRule(rate=Decimal("0.20"), threshold_cents=0),
    TaxJurisdiction.GB: TaxRule(rate=Decimal("0.20"), threshold_cents=8_500_000),
    TaxJurisdiction.AU: TaxRule(rate=Decimal("0.47"), threshold_cents=0),
    TaxJurisdiction.UNTAXED: TaxRule(rate=Decimal("0"), threshold_cents=0),
}
_require_exhaustive(TaxJurisdiction, TAX_RULES)


# =============================================================================
# SCHEDULER
# =============================================================================

class JobType(str, Enum):
    MONTHLY_DISTRIBUTION = "monthly_distribution"
    PRIORITY_PROMOTION = "priority_promotion"
    INFRASTRUCTURE_PAYMENT = "infrastructure_payment"
    PAYOUT_RUN = "payout_run"
    DAILY_STREAM_ROYALTIES = "daily_stream_royalties"


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass
class StreamEventData:
    """A play/view event as supplied by the stream event source."""
    creator_id: str
    viewer_id: Optional[str]
    duration_seconds: float
    fraud_score: float
    occurred_at: datetime
    qualified: Optional[bool] = None
    event_id: Optional[str] = None


@dataclass
class FraudAnalysis:
    qualified_stream_count: int = 0
    fraud_stream_count: int = 0

    @property
    def fraud_ratio(self) -> Decimal:
        if self.qualified_stream_count == 0:
            return Decimal("0")
        return Decimal(self.fraud_stream_count) / Decimal(self.qualified_stream_count)


@dataclass
class RoyaltyCalculationResult:
    """Per-creator, per-period calculation. Never persisted on its own."""
    base_amount: int
    tier_multiplier: Decimal
    final_amount: int
    fraud_stream_count: int
    fraud_ratio: Decimal
    adjusted_amount: int
    per_stream_rate: Decimal
    creator_id: Optional[str] = None
    capped_amount: Optional[int] = None

    @property
    def payable_amount(self) -> int:
        return self.adjusted_amount if self.capped_amount is None else self.capped_amount

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "base_amount": self.base_amount,
            "tier_multiplier": str(self.tier_multiplier),
            "final_amount": self.final_amount,
            "fraud_stream_count": self.fraud_stream_count,
            "fraud_ratio": str(self.fraud_ratio),
            "adjusted_amount": self.adjusted_amount,
            "per_stream_rate": str(self.per_stream_rate),
            "capped_amount": self.capped_amount,
        }


@dataclass
class DistributionSummary:
    period_start: date
    period_end: date
    revenue_source: RevenueSource
    period_revenue_cents: int
    allocations: Dict[str, int] = field(default_factory=dict)
    credited_count: int = 0
    failed_count: int = 0
    duplicate_count: int = 0
    credited_cents: int = 0
    failed_creators: List[str] = field(default_factory=list)
    pool_capped: bool = False
    undistributed_cents: Dict[str, int] = field(default_factory=dict)
    already_allocated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["period_start"] = self.period_start.isoformat()
        data["period_end"] = self.period_end.isoformat()
        data["revenue_source"] = self.revenue_source.value
        return data


@dataclass
class PayoutProfile:
    """Where a creator can be paid."""
    country: Optional[str] = None
    connect_account_id: Optional[str] = None
    bank_iban: Optional[str] = None
    bank_account_name: Optional[str] = None
    crypto_wallet: Optional[str] = None
    crypto_asset: Optional[str] = None


@dataclass
class PayoutRequest:
    account_id: str
    payout_id: str
    gross_cents: int
    tax_cents: int
    net_cents: int
    profile: PayoutProfile


@dataclass
class ChannelReceipt:
    """What a channel reports back after accepting a payout."""
    external_reference: str
    status: PayoutStatus = PayoutStatus.COMPLETED
    details: Dict[str, Any] = field(default_factory=dict)
