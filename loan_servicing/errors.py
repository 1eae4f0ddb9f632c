"""
Servicing Errors

Every rejection the engine raises carries a stable machine-readable code and
the HTTP status the API layer should answer with. All of them derive from
ValueError so callers that only catch ValueError keep working.
"""

from typing import Any, Dict, Optional


class LendingError(ValueError):
    """Base class for loan servicing errors"""
    status = 400
    default_code = "LENDING_ERROR"

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LendingError):
    """Bad input: amount, date, rate option, empty balance"""
    status = 400
    default_code = "VALIDATION_ERROR"


class PermissionDeniedError(LendingError):
    """Requester's role may not perform the operation or discount"""
    status = 403
    default_code = "PERMISSION_DENIED"


class NotFoundError(LendingError):
    """Credit or installment does not exist"""
    status = 404
    default_code = "NOT_FOUND"


class StateConflictError(LendingError):
    """Operation not allowed in the credit's or installment's current state"""
    status = 409
    default_code = "STATE_CONFLICT"


class OverpaymentError(LendingError):
    """Submitted amount exceeds the total payable"""
    status = 422
    default_code = "PAYMENT_EXCEEDS_DEBT"
