"""
TonPay error types.

Specific exceptions for each failure mode so callers can decide whether
to retry, roll back, or report the problem to a human.
"""


class TonPayError(Exception):
    """Base error for all coordinator operations."""
    pass


class InvalidArgumentError(TonPayError, ValueError):
    """Malformed caller input. Never retried."""
    pass


class NotFoundError(TonPayError, KeyError):
    """Referenced envelope, approval or request does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable.
        return str(self.args[0]) if self.args else ""


class UnauthorizedError(TonPayError, PermissionError):
    """Actor is not permitted to perform the operation."""
    pass


# Budget errors
class BudgetExceededError(TonPayError):
    """Reservation would overcommit an envelope."""

    def __init__(self, envelope_id: str, amount_nano: int, remaining_nano: int):
        self.envelope_id = envelope_id
        self.amount_nano = amount_nano
        self.remaining_nano = remaining_nano
        super().__init__(
            f"Envelope limit exceeded for {envelope_id}: remaining {remaining_nano} nano, "
            f"requested {amount_nano} nano"
        )


class InvariantViolationError(TonPayError):
    """Operation would break a ledger invariant (e.g. negative spend)."""
    pass


# Lifecycle errors
class InvalidStateError(TonPayError):
    """Illegal lifecycle transition."""

    def __init__(self, message: str, status: str | None = None):
        self.status = status
        super().__init__(message)


# Facilitator errors
class FacilitatorUnavailableError(TonPayError):
    """Facilitator retries exhausted or response was fatal."""
    pass


class FacilitatorRejectedError(FacilitatorUnavailableError):
    """Facilitator explicitly declined the payment request."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"x402 facilitator integration failed: {reason}")


# Chain errors
class ChainSubmissionError(TonPayError):
    """Underlying chain call failed."""
    pass


# Journal errors
class JournalIntegrityError(TonPayError, RuntimeError):
    """Operator journal hash chain does not verify."""
    pass


# Configuration and channel errors
class ConfigurationError(TonPayError):
    """A required setting (contract address, wallet, chat) is missing."""
    pass


class ChannelDeliveryError(TonPayError):
    """Messaging channel call failed."""
    pass
