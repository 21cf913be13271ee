"""Engine exceptions."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reclaim.models import BatchOutcome


class ReclaimError(Exception):
    """Base class for consolidation engine errors."""


class RateLimitedError(ReclaimError):
    """Quote service answered with a rate-limit status (HTTP 429)."""


class QuoteTransportError(ReclaimError):
    """Quote service unreachable or answered with a server error."""


class QuoteUnavailableError(ReclaimError):
    """Quote service answered but has no usable route for this amount."""


class SwapBuildError(ReclaimError):
    """Swap builder could not produce a transaction."""


class InsufficientBalanceError(ReclaimError):
    """Pre-flight balance guard failed. Amounts are lamports."""

    def __init__(self, current: int, required: int):
        super().__init__(
            f"Insufficient balance: have {current} lamports, need {required} lamports"
        )
        self.current = current
        self.required = required


class TransactionTooLargeError(ReclaimError):
    """A packed transaction could not be brought under the hard size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Transaction still too large after trimming: {size} bytes (limit: {limit})")
        self.size = size
        self.limit = limit


class ConfirmationError(ReclaimError):
    """A submitted transaction failed on-chain or expired unconfirmed."""


class BatchExecutionError(ReclaimError):
    """A batch transaction failed. ``outcome`` records what was already confirmed."""

    def __init__(self, outcome: "BatchOutcome", cause: BaseException):
        super().__init__(str(cause))
        self.outcome = outcome
        self.cause = cause


class InvalidStateError(ReclaimError):
    """A session was asked to do something its current state does not allow."""
