"""
Pixel Canvas - Error Taxonomy
Request-level errors rendered as JSON, and typed payment failures.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ============================================================
# REQUEST ERRORS
# ============================================================

class AppError(Exception):
    """Base class for errors that map onto an HTTP status"""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class InvalidStateError(AppError):
    status_code = 409
    code = "INVALID_STATE"


class RateLimitedError(AppError):
    status_code = 429
    code = "RATE_LIMITED"


class StoreError(AppError):
    status_code = 500
    code = "STORE_ERROR"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Database failures surface as STORE_ERROR without leaking driver text"""
    logger.error(f"Store error on {request.method} {request.url.path}: {exc}")
    error = StoreError("The placement store is unavailable, please retry")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# ============================================================
# PAYMENT FAILURES
# ============================================================

class ErrorCategory(str, Enum):
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    USER_REJECTED = "USER_REJECTED"
    BLOCKCHAIN_ERROR = "BLOCKCHAIN_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    WALLET_ERROR = "WALLET_ERROR"
    NOT_FOUND = "NOT_FOUND"


USER_MESSAGES = {
    ErrorCategory.USER_REJECTED: "Transaction was declined. You can try again when ready.",
    ErrorCategory.INSUFFICIENT_FUNDS: "Insufficient funds for this transaction. Please add more funds to your wallet.",
    ErrorCategory.NETWORK_ERROR: "Network connection issue. Please try again.",
    ErrorCategory.TIMEOUT: "The transaction took too long to process. Please try again.",
    ErrorCategory.WALLET_ERROR: "There was an issue with your wallet. Please reconnect your wallet and try again.",
    ErrorCategory.BLOCKCHAIN_ERROR: "There was an issue processing the transaction on the blockchain.",
    ErrorCategory.NOT_FOUND: "The transaction was not found on the blockchain yet.",
}


@dataclass
class PaymentError:
    """A classified payment failure"""
    category: ErrorCategory
    message: str
    retryable: bool
    code: Optional[str] = None
    payload: Any = None

    def user_message(self) -> str:
        if self.code == "DUPLICATE_TRANSACTION":
            return "This transaction was already processed. Please refresh the page and try again."
        return USER_MESSAGES.get(self.category, self.message)

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "message": self.message,
            "retryable": self.retryable,
            "code": self.code,
            "payload": self.payload,
            "user_message": self.user_message(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentError":
        return cls(
            category=ErrorCategory(data["category"]),
            message=data.get("message", ""),
            retryable=bool(data.get("retryable", False)),
            code=data.get("code"),
            payload=data.get("payload"),
        )


# Retry policy per category when a failure is reported without an explicit flag
DEFAULT_RETRYABLE = {
    ErrorCategory.INSUFFICIENT_FUNDS: False,
    ErrorCategory.USER_REJECTED: False,
    ErrorCategory.BLOCKCHAIN_ERROR: False,
    ErrorCategory.NETWORK_ERROR: True,
    ErrorCategory.TIMEOUT: True,
    ErrorCategory.WALLET_ERROR: True,
    ErrorCategory.NOT_FOUND: True,
}


def payment_error(category: ErrorCategory, message: str, retryable: Optional[bool] = None, **kwargs) -> PaymentError:
    if retryable is None:
        retryable = DEFAULT_RETRYABLE.get(category, False)
    return PaymentError(category=category, message=message, retryable=retryable, **kwargs)
