"""
Royalty Services

Pro-rata, tier-weighted, fraud-adjusted royalty calculation, plus the
user-centric and hybrid models.
"""

from .calculator import DEFAULT_PRO_RATA_WEIGHT, RoyaltyCalculator, apportion, per_stream_rate

__all__ = ['DEFAULT_PRO_RATA_WEIGHT', 'RoyaltyCalculator', 'apportion', 'per_stream_rate']
