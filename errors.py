from typing import Any, Optional

GENERIC_ERROR_MESSAGE = "Something went wrong"

QB_NOT_CONFIGURED = "QB_NOT_CONFIGURED"
QB_REFRESH_EXPIRED = "QB_REFRESH_EXPIRED"
QB_UPSTREAM_ERROR = "QB_UPSTREAM_ERROR"
BUDGET_CONFLICT = "BUDGET_CONFLICT"


class AppError(Exception):
    """Expected business failure whose message is safe to show to users."""

    default_code: Optional[str] = None

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = dict(details or {})


class QuickBooksNotConfigured(AppError):
    default_code = QB_NOT_CONFIGURED

    def __init__(self, message: str = "QuickBooks is not configured", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenExpired(AppError):
    """The realm's refresh token was rejected; the location must be reconnected."""

    default_code = QB_REFRESH_EXPIRED


class UpstreamError(AppError):
    default_code = QB_UPSTREAM_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, code, details)
        self.status_code = status_code


class UpstreamUnauthorized(UpstreamError):
    pass


class UpstreamTimeout(UpstreamError):
    pass


class BudgetConflict(AppError):
    default_code = BUDGET_CONFLICT


class InvalidYearMonth(ValueError):
    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid yearMonth {value!r}; use YYYY-MM")
        self.value = value
