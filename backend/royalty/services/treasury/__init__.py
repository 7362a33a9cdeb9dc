"""
Treasury Services

Fund split, creator-pool / priority-fund distribution, infrastructure payments.
"""

from .distributor import TreasuryDistributor, split_revenue, period_bounds

__all__ = [
    'TreasuryDistributor',
    'split_revenue',
    'period_bounds',
]
