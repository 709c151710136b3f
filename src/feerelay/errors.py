"""Error taxonomy.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API renders it with. Messages are safe to show to callers.
"""

from typing import Optional


class FeeRelayError(Exception):
    """Base class for all classified errors."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# ---- Input validation ----


class ValidationError(FeeRelayError):
    """Malformed or missing input."""

    code = "VALIDATION_ERROR"
    http_status = 400


class UnsupportedCurrencyPair(ValidationError):
    """Currency pair is not supported."""

    code = "UNSUPPORTED_CURRENCY_PAIR"


class AmountOutOfRange(ValidationError):
    """Amount is outside the allowed bounds."""

    code = "AMOUNT_OUT_OF_RANGE"


# ---- Lookups ----


class NotFound(FeeRelayError):
    """Resource not found."""

    code = "NOT_FOUND"
    http_status = 404


class QuoteNotFound(NotFound):
    """Quote not found."""

    code = "QUOTE_NOT_FOUND"


class TransferNotFound(NotFound):
    """Transfer not found."""

    code = "TRANSFER_NOT_FOUND"


# ---- Quotes ----


class QuoteInvalid(FeeRelayError):
    """Quote is not valid for use."""

    code = "QUOTE_INVALID"
    http_status = 400


class QuoteExpired(QuoteInvalid):
    """Quote has expired."""

    code = "QUOTE_EXPIRED"


# ---- Authorization ----


class AuthorizationError(FeeRelayError):
    """Authorization is invalid."""

    code = "AUTHORIZATION_INVALID"
    http_status = 400


class SignatureMismatch(AuthorizationError):
    """Signature does not recover to the claimed signer."""

    code = "SIGNATURE_MISMATCH"


class SignatureExpired(AuthorizationError):
    """Authorization deadline has passed."""

    code = "EXPIRED"


class MalformedSignature(AuthorizationError):
    """Signature is not a well-formed 65-byte signature."""

    code = "MALFORMED_SIGNATURE"


class NonceReused(AuthorizationError):
    """Nonce has already been used for this signer and operation."""

    code = "NONCE_REUSED"


class TransactionMismatch(AuthorizationError):
    """Signed transaction does not match the authorized operation."""

    code = "TRANSACTION_MISMATCH"


# ---- Execution ----


class InsufficientBalance(FeeRelayError):
    """Insufficient balance."""

    code = "INSUFFICIENT_BALANCE"
    http_status = 400


class UpstreamUnavailable(FeeRelayError):
    """Ledger node or store is unavailable."""

    code = "UPSTREAM_UNAVAILABLE"
    http_status = 503


class SubmissionRejected(FeeRelayError):
    """Transaction was rejected before inclusion."""

    code = "SUBMISSION_REJECTED"
    http_status = 400


class ExecutionReverted(FeeRelayError):
    """Transaction reverted on-chain."""

    code = "EXECUTION_REVERTED"
    http_status = 400

    def __init__(self, message: Optional[str] = None, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class Indeterminate(FeeRelayError):
    """No receipt within the confirmation window; status must be re-queried."""

    code = "INDETERMINATE"
    http_status = 202

    def __init__(self, message: Optional[str] = None, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


# ---- Lifecycle ----


class InvalidStateTransition(FeeRelayError):
    """Status transition is not allowed."""

    code = "INVALID_STATE_TRANSITION"
    http_status = 409


class LockTimeout(FeeRelayError):
    """Submission queue is busy."""

    code = "SUBMISSION_BUSY"
    http_status = 503
