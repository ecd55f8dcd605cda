"""
DelayClaw Exception Hierarchy

All exceptions inherit from DelayClawError for easy catching.

Retry semantics are part of the type:
    SimulationRejected   fatal, never resend
    ExecutionFailed      fatal, the transaction landed and the program refused it
    BroadcastTimeout     retryable, the ledger never accepted the transaction
    ConfirmationTimeout  ambiguous, re-read ledger state before any resend
    GatewayConflict      retry after re-reading the flight record
"""

from enum import Enum
from typing import Optional


class DelayClawError(Exception):
    """Base exception for all DelayClaw errors"""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationError(DelayClawError):
    """Raised when input data is malformed"""
    pass


class ConfigurationError(DelayClawError):
    """Raised when settings are missing or inconsistent"""
    pass


class AddressError(DelayClawError):
    """Raised for malformed derivation seeds. Programmer error, never retried."""
    pass


class DecodeErrorKind(Enum):
    TOO_SHORT              = "TooShort"
    DISCRIMINATOR_MISMATCH = "DiscriminatorMismatch"
    UNKNOWN_LAYOUT         = "UnknownLayout"


class DecodeError(DelayClawError):
    """Raised when account bytes cannot be interpreted as the expected entity"""

    def __init__(self, kind: DecodeErrorKind, message: str, details: dict = None):
        super().__init__(message, details)
        self.kind = kind


class NotFoundError(DelayClawError):
    """Raised when a config, product, policy or flight record does not exist"""
    pass


class RpcError(DelayClawError):
    """Raised when the ledger RPC node answers with a JSON-RPC error object"""

    def __init__(self, code: int, message: str, data=None):
        super().__init__(message, {"code": code})
        self.code = code
        self.data = data


class RpcTransportError(DelayClawError):
    """Raised when the ledger RPC node cannot be reached or times out"""
    pass


class SubmitError(DelayClawError):
    """Base class for transaction submission failures"""

    retryable = False

    def __init__(
        self,
        message: str,
        signature: Optional[str] = None,
        details: dict = None,
    ):
        super().__init__(message, details)
        self.signature = signature


class SimulationRejected(SubmitError):
    """Preflight simulation rejected the transaction"""
    pass


class ExecutionFailed(SubmitError):
    """Transaction landed but the program returned an error"""
    pass


class BroadcastTimeout(SubmitError):
    """Transaction could not be broadcast within the allowed attempts"""

    retryable = True


class ConfirmationTimeout(SubmitError):
    """Broadcast accepted but confirmation was never observed"""
    pass


class GatewayError(DelayClawError):
    """Raised when the flight metadata store fails"""
    pass


class GatewayConflict(GatewayError):
    """Raised when an optimistic-concurrency upsert loses a race"""
    pass


class JournalError(DelayClawError):
    """Raised when settlement journal operations fail"""
    pass
