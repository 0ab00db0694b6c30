from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found", code: str = "NOT_FOUND", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_404_NOT_FOUND, details=details)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", code: str = "CONFLICT", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", code: str = "BAD_REQUEST", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Validation (raised before any write)


class InvalidAmount(BadRequestError):
    def __init__(self, message: str = "Amount must be a non-zero integer", details: dict[str, Any] | None = None):
        super().__init__(message, code="INVALID_AMOUNT", details=details)


class InvalidReason(BadRequestError):
    def __init__(self, reason: Any):
        super().__init__(f"Invalid reason: {reason}", code="INVALID_REASON", details={"reason": str(reason)})


# Business rules


class InsufficientPoints(ConflictError):
    def __init__(self, balance: int, requested: int):
        super().__init__(
            "Insufficient points",
            code="INSUFFICIENT_POINTS",
            details={"balance": balance, "requested": requested},
        )


class InsufficientWalletBalance(ConflictError):
    def __init__(self, user_id: str, requested: Any):
        super().__init__(
            "Insufficient wallet balance",
            code="INSUFFICIENT_WALLET_BALANCE",
            details={"user_id": user_id, "requested": str(requested)},
        )


class BelowMinimumConversion(BadRequestError):
    def __init__(self, points: int, minimum: int):
        super().__init__(
            f"At least {minimum} points are required to convert",
            code="BELOW_MINIMUM_CONVERSION",
            details={"points": points, "minimum": minimum},
        )


class RecipientNotFound(NotFoundError):
    def __init__(self, identifier: str):
        super().__init__("Recipient not found", code="RECIPIENT_NOT_FOUND", details={"recipient": identifier})


class SelfTransferNotAllowed(BadRequestError):
    def __init__(self):
        super().__init__("Cannot transfer points to yourself", code="SELF_TRANSFER_NOT_ALLOWED")


class DuplicateReferral(ConflictError):
    def __init__(self, referred_id: str):
        super().__init__(
            "User has already been referred",
            code="DUPLICATE_REFERRAL",
            details={"referred_id": referred_id},
        )


class SelfReferralNotAllowed(BadRequestError):
    def __init__(self):
        super().__init__("Cannot use your own referral code", code="SELF_REFERRAL_NOT_ALLOWED")


class ReferralLimitReached(ConflictError):
    def __init__(self, referrer_id: str, limit: int):
        super().__init__(
            "Referrer has reached the referral limit",
            code="REFERRAL_LIMIT_REACHED",
            details={"referrer_id": referrer_id, "limit": limit},
        )


class ReferralCodeNotFound(NotFoundError):
    def __init__(self, code: str):
        super().__init__("Invalid referral code", code="REFERRAL_CODE_NOT_FOUND", details={"code": code})


class CodeGenerationExhausted(AppError):
    def __init__(self, attempts: int):
        super().__init__(
            "Could not generate unique referral code",
            code="CODE_GENERATION_EXHAUSTED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"attempts": attempts},
        )


# Infrastructure


class ConcurrentUpdateError(ConflictError):
    def __init__(self, user_id: str, attempts: int):
        super().__init__(
            "Balance changed concurrently, try again",
            code="CONCURRENT_UPDATE",
            details={"user_id": user_id, "attempts": attempts},
        )


class StoreUnavailable(AppError):
    def __init__(self, operation: str):
        super().__init__(
            "Storage temporarily unavailable",
            code="STORE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"operation": operation},
        )


class LedgerIntegrityError(AppError):
    """Cached balance and ledger sum disagree; needs manual reconciliation."""

    def __init__(self, user_id: str, details: dict[str, Any] | None = None):
        super().__init__(
            "Ledger integrity violation",
            code="LEDGER_INTEGRITY",
            details={"user_id": user_id, **(details or {})},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from loyalty_ledger.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
