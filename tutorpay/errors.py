"""
Domain exceptions for the earnings ledger.

Raised by the service functions and translated into HTTP responses by the
admin API in ``tutorpay.main``.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(LedgerError):
    """Malformed request or a business rule that rejects it. Nothing is written."""

    status_code = 400


class NotFoundError(LedgerError):
    """Unknown teacher, lesson or application. Nothing is written."""

    status_code = 404


class ConflictError(LedgerError):
    """Request clashes with existing state, e.g. a payout already in flight."""

    status_code = 409


class PaymentRailError(LedgerError):
    """Transfer rejected by the payment rail or the call failed."""

    status_code = 502
