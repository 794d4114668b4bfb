"""
auth/errors.py -- Error taxonomy for the identity core.

Every failure the core can report belongs to exactly one ErrorKind. The kind
is what the transport layer maps to a status code; the code string is the
stable, client-facing identifier (safe for i18n lookups on the frontend).

One-time code verification and OAuth linking do NOT raise for their expected
outcomes -- they return the variants in auth/results.py. The exceptions here
cover the remaining operations: authorization failures, missing records,
conflicts, and infrastructure trouble.

Layer rule: stdlib only.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    VALIDATION = "validation"
    INTERNAL = "internal"


class IdentityError(Exception):
    """Base class for every error raised by the identity core."""

    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "internal_error"
    message: str = "Internal error."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Unauthenticated
# ---------------------------------------------------------------------------


class Unauthenticated(IdentityError):
    kind = ErrorKind.UNAUTHENTICATED
    code = "session_invalid"
    message = "Invalid or expired session."


class InvalidCredentials(Unauthenticated):
    code = "invalid_credentials"
    message = "Invalid email or password."


class OAuthProviderError(Unauthenticated):
    code = "oauth_failed"
    message = "The identity provider rejected the sign-in."


# ---------------------------------------------------------------------------
# Forbidden
# ---------------------------------------------------------------------------


class Forbidden(IdentityError):
    kind = ErrorKind.FORBIDDEN
    code = "forbidden"
    message = "Access forbidden."


class MissingPermission(Forbidden):
    code = "missing_permission"
    message = "Missing required permission."


class CannotModifySelf(Forbidden):
    code = "cannot_modify_self"
    message = "Cannot modify your own account through this operation."


class CannotAccessHigherRole(Forbidden):
    code = "cannot_access_higher_role"
    message = "Cannot act on a user with a higher or equal role."


class CannotGrantPermission(Forbidden):
    code = "cannot_grant_permission"
    message = "Cannot grant a permission you do not hold."


class CannotRevokeCurrentSession(Forbidden):
    code = "cannot_revoke_current_session"
    message = "Cannot revoke the current session. Use logout instead."


class CannotUnlinkLastProvider(Forbidden):
    code = "cannot_unlink_last_provider"
    message = "At least one sign-in method must remain on the account."


class AccountDisabled(Forbidden):
    code = "account_disabled"
    message = "This account has been deactivated."


class ProtectedRole(Forbidden):
    code = "protected_role"
    message = "Protected roles cannot be modified."


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFound(IdentityError):
    kind = ErrorKind.NOT_FOUND
    code = "not_found"
    message = "Resource not found."


class UserNotFound(NotFound):
    code = "user_not_found"
    message = "User not found."


class SessionNotFound(NotFound):
    code = "session_not_found"
    message = "Session not found or already revoked."


class RoleNotFound(NotFound):
    code = "role_not_found"
    message = "Role not found."


class NoPendingVerification(NotFound):
    code = "no_pending_verification"
    message = "No pending verification found for this email."


class ProviderNotLinked(NotFound):
    code = "provider_not_linked"
    message = "This provider is not linked to your account."


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------


class Conflict(IdentityError):
    kind = ErrorKind.CONFLICT
    code = "conflict"
    message = "Resource already exists."


class EmailAlreadyRegistered(Conflict):
    code = "email_already_exists"
    message = "Email already registered."


class IdentityConflict(Conflict):
    code = "identity_conflict"
    message = "This external identity could not be reconciled with a local account."


class ProviderAlreadyLinked(Conflict):
    code = "provider_already_linked"
    message = "This provider is already linked to your account."


class ProviderLinkedElsewhere(Conflict):
    code = "provider_linked_to_other_account"
    message = "This provider account is already linked to another user."


class EmailMismatch(Conflict):
    code = "email_mismatch_on_link"
    message = "The provider email does not match your account email."


class OAuthLinkRefused(Conflict):
    code = "oauth_link_refused"
    message = "The provider did not confirm ownership of this email address."


# ---------------------------------------------------------------------------
# Rate limited
# ---------------------------------------------------------------------------


class RateLimited(IdentityError):
    kind = ErrorKind.RATE_LIMITED
    code = "rate_limit_exceeded"
    message = "Too many requests."


class ResendTooSoon(RateLimited):
    code = "resend_too_soon"
    message = "A code was sent recently. Please wait before requesting another."

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(f"A code was sent recently. Try again in {retry_after} seconds.")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationFailed(IdentityError):
    kind = ErrorKind.VALIDATION
    code = "validation_error"
    message = "Validation failed."


class InvalidPermission(ValidationFailed):
    code = "invalid_permission"
    message = "Invalid permission format."

    def __init__(self, invalid: list[str]) -> None:
        self.invalid = invalid
        super().__init__(f"Invalid permission format: {', '.join(invalid)}")


class InvalidRoleAssignment(ValidationFailed):
    code = "invalid_role_assignment"
    message = "This role cannot be assigned through the API."


class InvalidCurrentPassword(ValidationFailed):
    code = "invalid_current_password"
    message = "Current password is incorrect."


class SamePassword(ValidationFailed):
    code = "same_password"
    message = "New password must be different from current password."


class PasswordNotSet(ValidationFailed):
    code = "password_not_set"
    message = "Cannot change password for OAuth-only accounts."


class UnknownProvider(ValidationFailed):
    code = "invalid_oauth_provider"
    message = "OAuth provider is not supported."


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------


class NotificationFailed(IdentityError):
    kind = ErrorKind.INTERNAL
    code = "email_send_failed"
    message = "Failed to send verification code."


class SessionTokenCollision(IdentityError):
    kind = ErrorKind.INTERNAL
    code = "session_token_collision"
    message = "Could not allocate a unique session token."
