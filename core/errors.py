"""
core/errors.py -- Error taxonomy shared by the licensing core and the API.

Every failure that crosses a component boundary is a GatewayError carrying a
stable machine-readable code, a human-readable message, and the HTTP status
the route layer should answer with. Extra keyword arguments become part of
the error payload (e.g. feature/limit/current for QUOTA_EXCEEDED).

Authorization failures (FORBIDDEN, LICENSE_REQUIRED, QUOTA_EXCEEDED, ...) are
expected outcomes and are surfaced to the caller verbatim. StorageError is the
only class whose message is deliberately generic: the underlying exception is
logged where it is caught and never placed in the payload.

Layer rule: core/ is the kernel. No imports from api/, auth/ or licensing/.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for every error with a stable code and HTTP status."""

    code: str = "INTERNAL"
    status_code: int = 500
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_detail(self) -> dict[str, Any]:
        """Return the payload placed under the "error" key of the response."""
        return {"code": self.code, "message": self.message, **self.extra}


class UnauthorizedError(GatewayError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required."


class InvalidTokenError(GatewayError):
    code = "INVALID_TOKEN"
    status_code = 401
    default_message = "Token invalid or expired."


class UserNotFoundError(GatewayError):
    """The principal behind a refresh token no longer exists or is not active."""

    code = "USER_NOT_FOUND"
    status_code = 401
    default_message = "Account no longer available."


class ForbiddenError(GatewayError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Insufficient permissions."


class LicenseRequiredError(GatewayError):
    code = "LICENSE_REQUIRED"
    status_code = 403
    default_message = "An active license is required."


class PlanUpgradeRequiredError(GatewayError):
    code = "PLAN_UPGRADE_REQUIRED"
    status_code = 403
    default_message = "The current plan does not include this feature."


class QuotaExceededError(GatewayError):
    code = "QUOTA_EXCEEDED"
    status_code = 403
    default_message = "Feature quota exceeded."


class InvalidPlanError(GatewayError):
    code = "INVALID_PLAN"
    status_code = 400
    default_message = "Unknown plan."


class TenantRequiredError(GatewayError):
    code = "TENANT_REQUIRED"
    status_code = 400
    default_message = "Tenant id required for license check."


class PreconditionFailedError(GatewayError):
    """A caller skipped a required step, e.g. quota check before license resolution.

    This is a programming error, not a client error, hence the 500.
    """

    code = "PRECONDITION_FAILED"
    status_code = 500
    default_message = "License must be resolved before quota validation."


class NotFoundError(GatewayError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found."


class ConflictError(GatewayError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Conflicting state."


class StorageError(GatewayError):
    code = "INTERNAL"
    status_code = 500
    default_message = "Storage operation failed."
