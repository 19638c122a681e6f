"""Domain-specific exceptions."""

from __future__ import annotations


class ServiceError(Exception):
    code = "service_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)

    @property
    def message(self) -> str:
        return str(self)


class InvalidInput(ServiceError):
    code = "invalid_input"


# Authentication --------------------------------------------------------------


class NotAuthenticated(ServiceError):
    code = "not_authenticated"


class InvalidCredentials(ServiceError):
    code = "invalid_credentials"


class AccountNotVerified(ServiceError):
    code = "account_not_verified"


class InvalidOtp(ServiceError):
    code = "invalid_otp"


class AccountLocked(ServiceError):
    code = "account_locked"

    def __init__(self, message: str | None = None, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# Quotas and limits -------------------------------------------------------------


class QuotaExceeded(ServiceError):
    code = "quota_exceeded"

    def __init__(self, message: str | None = None, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitExceeded(ServiceError):
    code = "rate_limited"

    def __init__(self, message: str | None = None, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# Lookups and plan rules --------------------------------------------------------


class UserNotFound(ServiceError):
    code = "user_not_found"


class BotNotFound(ServiceError):
    code = "bot_not_found"


class DuplicateEmail(ServiceError):
    code = "duplicate_email"


class InvalidPlan(ServiceError):
    code = "invalid_plan"


class ModelNotAllowed(ServiceError):
    code = "model_not_allowed"


class PlanFeatureUnavailable(ServiceError):
    code = "plan_feature_unavailable"


# Storage -----------------------------------------------------------------------


class StorageError(ServiceError):
    """Transient persistence failure; callers may retry."""

    code = "storage_unavailable"


class LockUnavailable(StorageError):
    code = "lock_unavailable"


class PersistFailed(StorageError):
    code = "persist_failed"


# Providers ---------------------------------------------------------------------


class ProviderFailure(ServiceError):
    code = "provider_failure"
    status_code: int | None = None


class ProviderUnauthorized(ProviderFailure):
    code = "provider_unauthorized"
    status_code = 401


class ProviderRateLimited(ProviderFailure):
    code = "provider_rate_limited"
    status_code = 429


class ProviderTimeout(ProviderFailure):
    code = "provider_timeout"


class ProviderError(ProviderFailure):
    code = "provider_error"

    def __init__(self, message: str | None = None, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "AccountLocked",
    "AccountNotVerified",
    "BotNotFound",
    "DuplicateEmail",
    "InvalidCredentials",
    "InvalidInput",
    "InvalidOtp",
    "InvalidPlan",
    "LockUnavailable",
    "ModelNotAllowed",
    "NotAuthenticated",
    "PersistFailed",
    "PlanFeatureUnavailable",
    "ProviderError",
    "ProviderFailure",
    "ProviderRateLimited",
    "ProviderTimeout",
    "ProviderUnauthorized",
    "QuotaExceeded",
    "RateLimitExceeded",
    "ServiceError",
    "StorageError",
    "UserNotFound",
]
