import functools
import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class LedgerException(Exception):
    """Base exception for the credit ledger."""

    log_level = logging.ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

        # Log the exception for monitoring
        logger.log(self.log_level, f"{self.__class__.__name__}: {message}", extra={"details": self.details})


class InsufficientCreditsError(LedgerException):
    """Raised when an account cannot cover a deduction."""

    log_level = logging.INFO

    def __init__(self, required: int, available: int, account_id: str = None):
        message = f"Insufficient credits. Required: {required}, Available: {available}"
        details = {
            "required_credits": required,
            "available_credits": available,
            "account_id": account_id,
        }
        self.required = required
        self.available = available
        super().__init__(message, details)


class AccountNotFoundError(LedgerException):
    """Raised when an operation names an account that does not exist."""

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found", {"account_id": account_id})
        self.account_id = account_id


class StorageConflictError(LedgerException):
    """A concurrent writer changed the rows this unit of work depends on."""

    log_level = logging.WARNING

    def __init__(self, operation: str, reason: str):
        message = f"Storage conflict during '{operation}': {reason}"
        super().__init__(message, {"operation": operation, "reason": reason})


class TransientFailureError(LedgerException):
    """Raised when an atomic write keeps conflicting; the caller may try again."""

    def __init__(self, operation: str, attempts: int):
        message = f"Operation '{operation}' did not complete after {attempts} attempts, try again"
        super().__init__(message, {"operation": operation, "attempts": attempts})


class AuthenticationError(LedgerException):
    """Raised when authentication fails."""

    log_level = logging.WARNING

    def __init__(self, reason: str = "Authentication failed"):
        super().__init__(reason, {"auth_failure_reason": reason})


class TokenExpiredError(AuthenticationError):
    """Raised when JWT token has expired."""

    def __init__(self):
        super().__init__("Authentication token has expired")


class InvalidTokenError(AuthenticationError):
    """Raised when JWT token is invalid."""

    def __init__(self, reason: str = "Invalid token"):
        super().__init__(f"Invalid authentication token: {reason}")


# Exception to HTTP status code mapping
def to_http_exception(exc: LedgerException) -> HTTPException:
    """Convert ledger exception to HTTP exception with appropriate status code."""

    status_code_mapping = {
        InsufficientCreditsError: status.HTTP_402_PAYMENT_REQUIRED,
        AccountNotFoundError: status.HTTP_404_NOT_FOUND,
        AuthenticationError: status.HTTP_401_UNAUTHORIZED,
        TokenExpiredError: status.HTTP_401_UNAUTHORIZED,
        InvalidTokenError: status.HTTP_401_UNAUTHORIZED,
        StorageConflictError: status.HTTP_503_SERVICE_UNAVAILABLE,
        TransientFailureError: status.HTTP_503_SERVICE_UNAVAILABLE,
    }

    status_code = status_code_mapping.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)

    return HTTPException(
        status_code=status_code,
        detail={
            "error": exc.__class__.__name__,
            "message": exc.message,
            **exc.details
        }
    )


def handle_ledger_exceptions(func):
    """Decorator to automatically convert ledger exceptions to HTTP exceptions."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LedgerException as e:
            raise to_http_exception(e)
        except HTTPException:
            raise
        except Exception:
            logger.exception(f"Unexpected error in {func.__name__}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred"
                }
            )
    return wrapper
