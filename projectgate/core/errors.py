from __future__ import annotations

from typing import Any


class ProjectGateError(Exception):
    """Base error for projectgate."""

    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or type(self).message
        super().__init__(self.message)

    def details(self) -> dict[str, Any] | None:
        # Extra structured fields rendered alongside code/message.
        return None

    def headers(self) -> dict[str, str] | None:
        return None


# Every identity failure is rendered with the same public message.
AUTH_FAILED_MESSAGE = "Authentication failed"

AUTH_FAILURE_KINDS = frozenset(
    {
        "missing_credential",
        "malformed_credential",
        "expired",
        "revoked",
        "invalid_signature",
        "wrong_audience",
        "wrong_issuer",
        "missing_subject",
        "future_auth_time",
        "unknown_principal",
        "deactivated",
    }
)


class AuthenticationFailure(ProjectGateError):
    """Credential missing, malformed, expired, revoked, or otherwise invalid."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"
    message = AUTH_FAILED_MESSAGE

    def __init__(self, kind: str) -> None:
        if kind not in AUTH_FAILURE_KINDS:
            raise ValueError(f"Unknown authentication failure kind: {kind}")
        self.kind = kind
        super().__init__(AUTH_FAILED_MESSAGE)

    def headers(self) -> dict[str, str] | None:
        return {"WWW-Authenticate": "Bearer"}


class PrincipalFailure(AuthenticationFailure):
    """Verified credential that does not map to a usable local principal."""


class PrincipalNotFound(PrincipalFailure):
    """No local account exists for the verified subject."""

    def __init__(self) -> None:
        super().__init__("unknown_principal")


class PrincipalDeactivated(PrincipalFailure):
    """The local account exists but is disabled."""

    def __init__(self) -> None:
        super().__init__("deactivated")


class MembershipFailure(ProjectGateError):
    """Principal cannot act in the requested project."""

    status_code = 403
    code = "NOT_A_MEMBER"
    message = "Not a member of this project"


class NotAMember(MembershipFailure):
    """No membership row links the principal to the project."""


class NoTenantsAvailable(MembershipFailure):
    """Principal has no project memberships at all."""

    code = "NO_PROJECTS"
    message = "No projects available for user"


class TenantNotFound(ProjectGateError):
    """Requested project does not exist and no fallback is available."""

    status_code = 404
    code = "PROJECT_NOT_FOUND"
    message = "Project not found and no fallback available"


class PermissionFailure(ProjectGateError):
    """Membership exists but the module/intent pair is not permitted."""

    status_code = 403
    code = "AUTH_FORBIDDEN"
    message = "Forbidden"


class NoModuleAccess(PermissionFailure):
    """Capability set for the module is empty."""

    code = "NO_MODULE_ACCESS"

    def __init__(self, module: str) -> None:
        self.module = module
        super().__init__(f"No {module} access for this project")


class InsufficientPermission(PermissionFailure):
    """Module is visible but the required capability is missing."""

    code = "INSUFFICIENT_PERMISSION"

    def __init__(self, module: str, action: str) -> None:
        self.module = module
        self.action = action
        super().__init__(f"No {action} permission for {module}")


class InsufficientRolePrivilege(PermissionFailure):
    """Role is barred from the module/intent regardless of grants."""

    code = "INSUFFICIENT_ROLE"
    message = "Insufficient role privileges"


class OwnershipViolation(ProjectGateError):
    """Record belongs to a project outside the caller's scope."""

    status_code = 403
    code = "OWNERSHIP_VIOLATION"
    message = "Access denied - resource belongs to different project"


class ResourceNotFound(ProjectGateError):
    """Record does not exist."""

    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found"


class RateLimitExceeded(ProjectGateError):
    """Principal exhausted its request window."""

    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after_s: int) -> None:
        self.retry_after_s = max(1, int(retry_after_s))
        super().__init__(f"Rate limit exceeded. Try again in {self.retry_after_s} seconds")

    def details(self) -> dict[str, Any] | None:
        return {"retry_after_s": self.retry_after_s}

    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.retry_after_s)}


class RateLimitUnavailable(ProjectGateError):
    """Rate-limit store unreachable while configured to fail closed."""

    status_code = 503
    code = "RATE_LIMIT_UNAVAILABLE"
    message = "Rate limiting unavailable"


class ValidationFailure(ProjectGateError):
    """Request payload or query is invalid."""

    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Validation error"


class InternalFailure(ProjectGateError):
    """Unexpected failure; rendered without internal detail."""


class StorageFailure(InternalFailure):
    """Database layer failure."""


class AuditWriteFailure(InternalFailure):
    """Audit sink rejected a record."""
