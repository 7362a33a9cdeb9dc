"""
Payout Services

- PayoutOrchestrator: reserve, tax, channel fallback, mark paid / restore
- Channels: Connect -> Bank -> Crypto -> ManualInvoice
- PayoutReconciler: processor webhook reconciliation
"""

from .channels import (
    PayoutGateway,
    HttpPayoutGateway,
    RateLookup,
    StaticRateLookup,
    PayoutChannel,
    ConnectChannel,
    BankTransferChannel,
    CryptoWalletChannel,
    ManualInvoiceChannel,
    default_channels,
)
from .orchestrator import PayoutOrchestrator, PayoutResult
from .reconciliation import PayoutReconciler, sign_payload, verify_signature, SIGNATURE_HEADER

__all__ = [
    'PayoutGateway',
    'HttpPayoutGateway',
    'RateLookup',
    'StaticRateLookup',
    'PayoutChannel',
    'ConnectChannel',
    'BankTransferChannel',
    'CryptoWalletChannel',
    'ManualInvoiceChannel',
    'default_channels',
    'PayoutOrchestrator',
    'PayoutResult',
    'PayoutReconciler',
    'sign_payload',
    'verify_signature',
    'SIGNATURE_HEADER',
]
