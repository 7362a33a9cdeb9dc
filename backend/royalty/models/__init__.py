"""Royalty Engine - Data Models"""
from .domain import (
    # Enums
    TransactionSource, TransactionStatus, ReservationStatus, ActorType,
    ArtistTier, FundName, RevenueSource, PayoutMethod, PayoutStatus,
    TaxJurisdiction, JobType, JobStatus,
    # Value objects
    StreamEventData, FraudAnalysis, RoyaltyCalculationResult, DistributionSummary,
    PayoutProfile, PayoutRequest, ChannelReceipt,
    to_cents,
)

__all__ = [
    "TransactionSource", "TransactionStatus", "ReservationStatus", "ActorType",
    "ArtistTier", "FundName", "RevenueSource", "PayoutMethod", "PayoutStatus",
    "TaxJurisdiction", "JobType", "JobStatus",
    "StreamEventData", "FraudAnalysis", "RoyaltyCalculationResult", "DistributionSummary",
    "PayoutProfile", "PayoutRequest", "ChannelReceipt",
    "to_cents",
]
