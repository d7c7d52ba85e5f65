"""
Token Quota Errors

Every error carries an error_code, the HTTP status routes should map it to,
and whether the caller may retry the same request.
"""

from typing import Optional

from .config import ERROR_CODES


class QuotaError(Exception):
    """Base class for all token quota errors."""
    error_code = "QUOTA_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or ERROR_CODES.get(self.error_code, self.error_code)
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        """Convert to API response format."""
        payload = {
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(QuotaError):
    """Malformed input: bad cost, empty owner, unknown tier, bad purchase amounts."""
    error_code = "VALIDATION_ERROR"
    status_code = 400


class NotAuthenticated(QuotaError):
    """No caller identity was supplied."""
    error_code = "NOT_AUTHENTICATED"
    status_code = 401


class PermissionDenied(QuotaError):
    """Caller is acting on an owner that is not itself."""
    error_code = "PERMISSION_DENIED"
    status_code = 403


class InsufficientBalance(QuotaError):
    """Raised by the guard when daily plus purchased tokens cannot cover the cost."""
    error_code = "INSUFFICIENT_BALANCE"
    status_code = 402


class NotFound(QuotaError):
    error_code = "NOT_FOUND"
    status_code = 404


class InvalidTransition(QuotaError):
    """Purchase state change that the lifecycle does not allow."""
    error_code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, order_id: str, current_status: str, target_status: str):
        self.order_id = order_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Purchase {order_id} cannot move from {current_status} to {target_status}",
            details={"order_id": order_id, "current_status": current_status, "target_status": target_status},
        )


class LockTimeout(QuotaError):
    """The account lease could not be acquired in time, or was lost mid-operation."""
    error_code = "LOCK_TIMEOUT"
    status_code = 503
    retryable = True
