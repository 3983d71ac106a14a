"""
Error taxonomy for the Edge-OG gateway.

Every refusal is raised as a ``GatewayError`` subclass and rendered by the
exception handler in ``edge_og.main`` as ``{code, message, details, request_id}``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    request_id: str | None = None


class GatewayError(Exception):
    """Base exception for refusals surfaced to HTTP callers."""

    status_code = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(message)

    def to_response(self, request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            code=self.code, message=self.message, details=self.details, request_id=request_id
        )


class AuthenticationError(GatewayError):
    """Bad, missing or expired credential. Never says which."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized", details: dict[str, Any] | None = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(GatewayError):
    status_code = 403

    def __init__(self, message: str = "Forbidden", details: dict[str, Any] | None = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class QuotaExceededError(GatewayError):
    """Monthly quota exhausted. Discloses usage and limit on purpose."""

    status_code = 429

    def __init__(self, *, plan: str, limit: int, usage: int, retry_after: int) -> None:
        super().__init__(
            "QUOTA_EXCEEDED",
            "Monthly quota exceeded for current plan.",
            {"plan": plan, "limit": limit, "usage": usage},
            {"Retry-After": str(retry_after)},
        )


class RateLimitError(GatewayError):
    status_code = 429

    def __init__(self, retry_after: int, message: str = "Too many requests") -> None:
        super().__init__(
            "RATE_LIMITED",
            message,
            {"retry_after": retry_after},
            {"Retry-After": str(retry_after)},
        )


class ValidationError(GatewayError):
    status_code = 400

    def __init__(self, message: str = "Validation failed", details: dict[str, Any] | None = None):
        super().__init__("VALIDATION_ERROR", message, details)


class UnsupportedMediaTypeError(GatewayError):
    status_code = 415

    def __init__(self, message: str = "Content-Type must be application/json"):
        super().__init__("UNSUPPORTED_MEDIA_TYPE", message)


class NotFoundError(GatewayError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__("NOT_FOUND", message)


class InfrastructureError(GatewayError):
    """A dependency failed and no safe default exists."""

    status_code = 500

    def __init__(self, code: str = "INFRASTRUCTURE_ERROR", message: str = "Service error"):
        super().__init__(code, message)
