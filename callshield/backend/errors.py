"""Backend error taxonomy. Each error carries the HTTP status it maps to."""

from __future__ import annotations

from typing import Any


class CallShieldError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class BadRequestError(CallShieldError):
    status_code = 400


class UnauthorizedError(CallShieldError):
    status_code = 401


class PaymentRequiredError(CallShieldError):
    status_code = 402

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message, reason=reason)
        self.reason = reason


class NotFoundError(CallShieldError):
    status_code = 404


class ConflictError(CallShieldError):
    status_code = 409


class RateLimitError(CallShieldError):
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded") -> None:
        super().__init__(message)
