"""Shared exception types for the trading control loop."""

from typing import Optional


class AgentError(RuntimeError):
    """Base class for errors raised by the agent core."""


class TransientFetchError(AgentError):
    """Raised when the oracle, venue or wallet service cannot be read safely.

    Never fatal: the cycle that hit it is abandoned and the next tick retries.
    """

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(f"{source}: {original}" if original else source)
        self.source = source
        self.original = original


class ValidationError(AgentError, ValueError):
    """Raised synchronously when an activation config is invalid."""


class SubmissionRejected(AgentError):
    """Raised when the venue refuses an order."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfirmationTimeout(AgentError):
    """Raised when an order was (possibly) placed but never confirmed in time.

    The outcome is ambiguous: the position must be verified on the venue.
    """

    def __init__(self, handle: Optional[str], waited_seconds: float):
        super().__init__(f"no confirmation for {handle or '<unknown>'} after {waited_seconds:.1f}s")
        self.handle = handle
        self.waited_seconds = waited_seconds


class InsufficientFunds(AgentError):
    """Wallet balance below the tradable minimum. A skip condition, not a failure."""

    def __init__(self, balance: float, minimum: float = 1.0):
        super().__init__(f"balance {balance} below minimum {minimum}")
        self.balance = balance
        self.minimum = minimum


class CycleCancelled(AgentError):
    """Raised inside a cycle when its cancellation token was set."""


class MalformedResponse(TransientFetchError):
    """A service answered, but the body does not fit the expected contract."""
