"""
Error taxonomy for fee quoting and settlement verification

Every error carries a stable ``code`` (the name other components match on),
a ``retryable`` flag and structured ``details`` (expected vs. actual values)
so the calling layer can render a precise message.
"""

from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base class for all errors surfaced by the core"""

    code = "PaymentError"
    retryable = False

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class BalanceUnavailable(PaymentError):
    code = "BalanceUnavailable"
    retryable = True


class PriceUnavailable(PaymentError):
    code = "PriceUnavailable"


class NotFound(PaymentError):
    code = "NotFound"


class AlreadySettled(PaymentError):
    code = "AlreadySettled"


class TransactionNotFound(PaymentError):
    code = "TransactionNotFound"
    retryable = True


class TransactionFailed(PaymentError):
    code = "TransactionFailed"


class AmountMismatch(PaymentError):
    code = "AmountMismatch"


class RecipientMismatch(PaymentError):
    code = "RecipientMismatch"


class TokenMismatch(PaymentError):
    code = "TokenMismatch"


class SenderMismatch(PaymentError):
    code = "SenderMismatch"


class TransactionAlreadyUsed(PaymentError):
    code = "TransactionAlreadyUsed"


class Expired(PaymentError):
    code = "Expired"


class Cancelled(PaymentError):
    code = "Cancelled"


class Timeout(PaymentError):
    code = "Timeout"
    retryable = True


class RpcUnavailable(PaymentError):
    code = "RpcUnavailable"
    retryable = True


class InvalidTransition(PaymentError):
    code = "InvalidTransition"


class InvalidRequest(PaymentError):
    code = "InvalidRequest"


class UnsupportedNetwork(InvalidRequest):
    code = "UnsupportedNetwork"


class UnsupportedToken(InvalidRequest):
    code = "UnsupportedToken"
