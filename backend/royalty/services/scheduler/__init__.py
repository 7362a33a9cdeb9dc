"""
Scheduler Services

Period-boundary jobs and the SchedulerRun state machine.
"""

from .jobs import (
    RoyaltyScheduler,
    JOB_SCHEDULE,
    manual_override,
    priority_level_for,
    previous_month,
    payout_window,
)

__all__ = [
    'RoyaltyScheduler',
    'JOB_SCHEDULE',
    'manual_override',
    'priority_level_for',
    'previous_month',
    'payout_window',
]
