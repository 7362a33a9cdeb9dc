"""
Royalty Engine - Settings

All tunables are read once at process start. Fund allocations are fixed
constants and are validated when settings are built, never per call.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import ConfigurationError
from .models.domain import FundName


# =============================================================================
# FUND ALLOCATIONS (basis points, must sum to 10000)
# =============================================================================

FUND_ALLOCATIONS_BPS: Dict[FundName, int] = {
    FundName.PLATFORM_OPS: 3000,
    FundName.PRIORITY_FUND: 1000,
    FundName.GOVERNANCE: 500,
    FundName.RND: 500,
    FundName.CREATOR_POOL: 5000,
}

# Receives the floor-division residual
RESIDUAL_FUND = FundName.PLATFORM_OPS

DEFAULT_INFRA_COSTS: Dict[str, int] = {
    "servers": 50_000,
    "storage": 20_000,
    "bandwidth": 30_000,
    "ai": 10_000,
}


def validate_fund_allocations(allocations: Optional[Dict[FundName, int]] = None) -> Dict[FundName, int]:
    """Every fund has a non-negative share and the shares sum to 100%."""
    allocations = FUND_ALLOCATIONS_BPS if allocations is None else allocations
    missing = [fund.value for fund in FundName if fund not in allocations]
    if missing:
        raise ConfigurationError(f"No allocation for funds: {', '.join(missing)}")
    negative = [fund.value for fund, bps in allocations.items() if bps < 0]
    if negative:
        raise ConfigurationError(f"Negative allocation for funds: {', '.join(negative)}")
    total = sum(allocations.values())
    if total != 10_000:
        raise ConfigurationError(f"Fund allocations sum to {total} bps, expected 10000")
    return allocations


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_infra_costs() -> Dict[str, int]:
    raw = os.getenv("ROYALTY_INFRA_COSTS")
    if not raw:
        return dict(DEFAULT_INFRA_COSTS)
    try:
        costs = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"ROYALTY_INFRA_COSTS is not valid JSON: {e}")
    if not isinstance(costs, dict) or not all(isinstance(v, int) and v >= 0 for v in costs.values()):
        raise ConfigurationError("ROYALTY_INFRA_COSTS must map category -> non-negative cents")
    return costs


@dataclass
class EngineSettings:
    """Runtime configuration for the royalty engine."""

    qualified_stream_seconds: float = 30.0
    fraud_score_cutoff: float = 0.7
    min_payout_cents: int = 5_000

    infra_costs: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_INFRA_COSTS))

    # Priority auto-promotion thresholds
    priority_min_uploads: int = 5
    priority_min_quality: float = 0.8
    priority_min_streams: int = 10_000

    # Seconds a running scheduler job may hold its period before it can be reclaimed
    job_lease_seconds: int = 3_600

    # Payment processor / crypto gateway
    payment_gateway_url: Optional[str] = None
    payment_gateway_key: Optional[str] = None
    payment_gateway_timeout: float = 10.0
    crypto_gateway_url: Optional[str] = None
    crypto_gateway_key: Optional[str] = None

    # Secrets
    processor_webhook_secret: str = "processor-webhook-secret-change-in-production"
    internal_api_key: str = "scheduler-internal-key-change-in-production"
    jwt_secret_key: str = "royalty-engine-secret-key-change-in-production"

    log_level: str = "INFO"

    fund_allocations: Dict[FundName, int] = field(default_factory=lambda: dict(FUND_ALLOCATIONS_BPS))

    def __post_init__(self):
        validate_fund_allocations(self.fund_allocations)
        if not 0 <= self.fraud_score_cutoff <= 1:
            raise ConfigurationError("fraud_score_cutoff must be within [0, 1]")
        if self.min_payout_cents < 0:
            raise ConfigurationError("min_payout_cents must be non-negative")
        if self.job_lease_seconds <= 0:
            raise ConfigurationError("job_lease_seconds must be positive")

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            qualified_stream_seconds=_env_float("ROYALTY_QUALIFIED_STREAM_SECONDS", 30.0),
            fraud_score_cutoff=_env_float("ROYALTY_FRAUD_SCORE_CUTOFF", 0.7),
            min_payout_cents=_env_int("ROYALTY_MIN_PAYOUT_CENTS", 5_000),
            infra_costs=_env_infra_costs(),
            priority_min_uploads=_env_int("ROYALTY_PRIORITY_MIN_UPLOADS", 5),
            priority_min_quality=_env_float("ROYALTY_PRIORITY_MIN_QUALITY", 0.8),
            priority_min_streams=_env_int("ROYALTY_PRIORITY_MIN_STREAMS", 10_000),
            job_lease_seconds=_env_int("ROYALTY_JOB_LEASE_SECONDS", 3_600),
            payment_gateway_url=os.getenv("PAYMENT_GATEWAY_URL"),
            payment_gateway_key=os.getenv("PAYMENT_GATEWAY_KEY"),
            payment_gateway_timeout=_env_float("PAYMENT_GATEWAY_TIMEOUT", 10.0),
            crypto_gateway_url=os.getenv("CRYPTO_GATEWAY_URL"),
            crypto_gateway_key=os.getenv("CRYPTO_GATEWAY_KEY"),
            processor_webhook_secret=os.getenv(
                "PROCESSOR_WEBHOOK_SECRET", "processor-webhook-secret-change-in-production"
            ),
            internal_api_key=os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production"),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", "royalty-engine-secret-key-change-in-production"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    """Root logger setup, called from the application lifespan."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
