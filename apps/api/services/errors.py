"""HTTP-aware error types raised by the entitlement and billing services."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class ServiceError(HTTPException):
    """Base error: a status code plus a structured detail payload."""

    status_code = 500
    message = "Internal server error."

    def __init__(self, message: Optional[str] = None, **fields: Any):
        detail: Dict[str, Any] = {"error": message or self.message}
        detail.update(fields)
        super().__init__(status_code=self.status_code, detail=detail)

    @property
    def error(self) -> str:
        return str(self.detail.get("error", ""))


class ConfigurationError(ServiceError):
    status_code = 500
    message = "Server configuration error. Please contact support."


class StoreUnavailableError(ConfigurationError):
    message = "Account store is not configured."


class AuthenticationRequiredError(ServiceError):
    status_code = 401
    message = "Authentication required."


class InvalidFeatureError(ServiceError):
    status_code = 400
    message = "Invalid feature."


class InvalidPlanError(ServiceError):
    status_code = 400
    message = "Invalid plan."


class InvalidSignatureError(ServiceError):
    status_code = 400
    message = "Invalid signature."


class InvalidPayloadError(ServiceError):
    status_code = 400
    message = "Invalid payload."


class PaymentNotCapturedError(ServiceError):
    status_code = 400
    message = "Payment not successful."


class AccountNotFoundError(ServiceError):
    status_code = 404
    message = "Account not found."


class InsufficientEntitlementError(ServiceError):
    status_code = 403
    message = "Upgrade to unlock this feature."


class InsufficientCreditsError(InsufficientEntitlementError):
    message = "Insufficient credits."

    def __init__(self, credits_remaining: int, credits_needed: int):
        super().__init__(
            success=False,
            credits_remaining=credits_remaining,
            credits_needed=credits_needed,
            requires_upgrade=True,
        )
        self.credits_remaining = credits_remaining
        self.credits_needed = credits_needed


class UsageLimitExceededError(InsufficientEntitlementError):
    message = "Daily limit reached for this feature."


class UpgradeRequiredError(InsufficientEntitlementError):
    def __init__(self, current_tier: str, required_tier: str, message: Optional[str] = None):
        super().__init__(
            message,
            requires_upgrade=True,
            current_tier=current_tier,
            required_tier=required_tier,
        )


class ScopeMismatchError(ServiceError):
    status_code = 403
    message = "user_id does not match authenticated session."


class PaymentProviderError(ServiceError):
    status_code = 502
    message = "Payment provider request failed."


class InternalServiceError(ServiceError):
    status_code = 500


class ServiceUnavailableError(ServiceError):
    status_code = 503
    message = "Service unavailable."


class RateLimitExceededError(ServiceError):
    status_code = 429
    message = "Rate limit exceeded. Try again later."

    def __init__(self, message: Optional[str] = None, *, retry_after: int, **fields: Any):
        super().__init__(message, retry_after=retry_after, **fields)
        self.headers = {"Retry-After": str(retry_after)}
