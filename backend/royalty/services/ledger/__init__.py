"""
Ledger Services

- LedgerService: sole writer of creator balances
- AuditLogService: append-only compliance trail
"""

from .audit_log import AuditLogService
from .ledger_service import LedgerService

__all__ = [
    'AuditLogService',
    'LedgerService',
]
