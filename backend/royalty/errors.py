"""
Royalty Engine - Error Taxonomy

Every failure the ledger, treasury, scheduler and payout layers can raise.
Batch jobs isolate and count these per creator/account; only storage-layer
errors (SQLAlchemyError) abort a run.
"""


class RoyaltyEngineError(Exception):
    """Base class for all royalty engine errors."""
    pass


class ConfigurationError(RoyaltyEngineError):
    """Raised at startup when settings are inconsistent."""
    pass


class ValidationError(RoyaltyEngineError):
    """Raised for malformed amounts or ids, before any mutation."""
    pass


class AccountNotFound(RoyaltyEngineError):
    """Raised when a ledger account does not exist."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Ledger account {account_id} not found")


class DuplicateTransaction(RoyaltyEngineError):
    """
    Raised when an idempotency key was already recorded for the account.

    Callers treat this as a successful no-op.
    """

    def __init__(self, account_id: str, idempotency_key: str, existing_id=None):
        self.account_id = account_id
        self.idempotency_key = idempotency_key
        self.existing_id = existing_id
        super().__init__(
            f"Idempotency key {idempotency_key!r} already recorded for account {account_id}"
        )


class ReversalExceedsBalance(RoyaltyEngineError):
    """Raised when a fraud reversal is larger than the unpaid balance."""
    pass


class ReservationNotHeld(RoyaltyEngineError):
    """Raised when a payout reservation was already consumed or restored."""
    pass


class InsufficientTreasuryFunds(RoyaltyEngineError):
    """Raised when a treasury fund cannot cover an expense."""

    def __init__(self, fund: str, required_cents: int, available_cents: int):
        self.fund = fund
        self.required_cents = required_cents
        self.available_cents = available_cents
        super().__init__(
            f"Fund {fund} needs {required_cents} cents, has {available_cents}"
        )


class PayoutChannelFailure(RoyaltyEngineError):
    """Raised by a payout channel; triggers fallback to the next channel."""

    timed_out = False

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"{channel} payout failed: {reason}")


class ChannelTimeout(PayoutChannelFailure):
    """The channel did not answer in time; the external outcome is unknown."""

    timed_out = True


class ReconciliationMismatch(RoyaltyEngineError):
    """Raised when a processor webhook disagrees with the local record."""

    def __init__(self, external_reference: str, local_status, remote_status: str):
        self.external_reference = external_reference
        self.local_status = local_status
        self.remote_status = remote_status
        super().__init__(
            f"Payout {external_reference}: local={local_status} remote={remote_status}"
        )


class JobAlreadyRunning(RoyaltyEngineError):
    """Raised when a scheduler job for the same period is in flight."""
    pass


class ImmutableRecordError(RoyaltyEngineError):
    """Raised when code tries to edit or delete an append-only record."""
    pass
