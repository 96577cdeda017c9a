from __future__ import annotations


class TenantGuardError(Exception):
    """Base error for tenantguard."""


class AuthzError(TenantGuardError):
    """Authorization failure carrying an external code and an internal reason.

    Only ``code`` ever reaches the caller; ``reason`` and the concrete class name
    are kept for audit metadata.
    """

    code = "forbidden"
    default_reason = "forbidden"

    def __init__(
        self,
        message: str = "",
        *,
        reason: str | None = None,
        retry_after_s: int | None = None,
    ) -> None:
        super().__init__(message or self.default_reason)
        self.message = message or self.default_reason
        self.reason = reason or self.default_reason
        self.retry_after_s = retry_after_s


class AuthenticationError(AuthzError):
    """Missing, malformed, invalid, revoked or expired credential."""

    code = "unauthenticated"
    default_reason = "unauthenticated"


class ProfileNotFoundError(AuthzError):
    """Credential is valid but no usable principal record backs it."""

    default_reason = "profile_not_found"


class TenantMismatchError(AuthzError):
    """Cross-tenant (or cross-owner) access attempt."""

    default_reason = "tenant_mismatch"


class InsufficientRoleError(AuthzError):
    """Correct tenant, but the role or permissions do not cover the operation."""

    default_reason = "insufficient_role"


class RateLimitExceededError(AuthzError):
    """Route-class threshold reached for the bucket."""

    code = "throttled"
    default_reason = "rate_limited"


class PolicyEvaluationError(AuthzError):
    """Unexpected fault while deciding; always fails closed."""

    default_reason = "policy_error"


class TenantContextUnavailableError(PolicyEvaluationError):
    """Identity or profile store did not answer within the configured bound."""

    default_reason = "context_unavailable"


class PolicyRegistrationError(TenantGuardError):
    """A resource type was registered with conflicting policy patterns."""


class TenantReassignmentError(TenantGuardError):
    """Attempt to change the tenant_id of an existing record."""


class TenantPredicateError(TenantGuardError):
    """A storage query or write lacks a usable tenant predicate."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
