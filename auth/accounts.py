"""
auth/accounts.py -- Self-service account flows.

Registration:
  register() does NOT create a user. It issues a registration code whose
  payload carries the bcrypt hash and display name; activate() creates the
  verified account when the code checks out. Unactivated sign-ups therefore
  never occupy the email.

Password reset:
  The new password is chosen up front and travels (hashed) in the code's
  payload, so confirm_password_reset() only needs the code. Unknown emails
  return silently -- the response must not reveal which addresses exist.

Cascading invalidation:
  Password changes, resets and deactivation revoke sessions synchronously via
  cascade_invalidation(). A database failure there is logged and swallowed; the primary
  change has already been committed and must still report success.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    EmailAlreadyRegistered,
    InvalidCredentials,
    InvalidCurrentPassword,
    NoPendingVerification,
    NotificationFailed,
    PasswordNotSet,
    ResendTooSoon,
    SamePassword,
    SessionNotFound,
    UserNotFound,
)
from auth.models import Session, SessionContext, User, VerificationKind
from auth.notifier import Notifier
from auth.permissions import PermissionResolver
from auth.results import (
    Activated,
    Issued,
    PasswordReset,
    ResendRateLimited,
    Verified,
    VerificationNotFound,
    VerifyFailure,
)
from auth.roles import DEFAULT_HIERARCHY, RoleHierarchy
from auth.sessions import SessionStore
from auth.store import UserStore, normalize_email
from auth.tokens import authenticate_user, hash_password, verify_password
from auth.verification import CodeVerifier

logger = logging.getLogger("identity.auth.accounts")


@dataclass
class SessionView:
    """A session as shown to its owner. The token is never included."""

    id: int
    user_agent: str
    ip: str
    device_name: str | None
    created_at: datetime | None
    last_used_at: datetime | None
    expires_at: datetime
    is_current: bool


def cascade_invalidation(action: Callable[[], int], description: str) -> int:
    """Run a session-invalidation call; log and return 0 on database failure."""
    try:
        return action()
    except SQLAlchemyError:
        logger.exception("Session invalidation failed after %s", description)
        return 0


class AccountService:
    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        verifier: CodeVerifier,
        notifier: Notifier,
        hierarchy: RoleHierarchy = DEFAULT_HIERARCHY,
        resolver: PermissionResolver | None = None,
        default_role: str | None = None,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.verifier = verifier
        self.notifier = notifier
        self.hierarchy = hierarchy
        self.resolver = resolver or PermissionResolver(users.get_role_permissions)
        self.default_role = default_role or hierarchy.default_role

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str = "") -> Issued:
        """Start a registration: issue and send an activation code."""
        email = normalize_email(email)
        if self.users.get_by_email(email) is not None:
            raise EmailAlreadyRegistered()
        result = self.verifier.issue(
            email,
            VerificationKind.REGISTRATION,
            {"hashed_password": hash_password(password), "name": name},
        )
        return self._deliver(email, result, VerificationKind.REGISTRATION)

    def resend_activation(self, email: str) -> Issued:
        result = self.verifier.reissue(email, VerificationKind.REGISTRATION)
        if isinstance(result, VerificationNotFound):
            raise NoPendingVerification()
        return self._deliver(normalize_email(email), result, VerificationKind.REGISTRATION)

    def activate(self, email: str, code: str, context: SessionContext | None = None) -> Activated | VerifyFailure:
        """Consume the activation code, create the verified user, and sign them in."""
        email = normalize_email(email)
        result = self.verifier.verify(email, VerificationKind.REGISTRATION, code)
        if not isinstance(result, Verified):
            return result
        try:
            user_id = self.users.create_user(
                User(
                    email=email,
                    name=result.payload.get("name", ""),
                    hashed_password=result.payload["hashed_password"],
                    role=self.default_role,
                    is_verified=True,
                )
            )
        except IntegrityError:
            raise EmailAlreadyRegistered() from None
        self.users.update_last_login(user_id)
        token = self.sessions.create_session(user_id, context)
        logger.info("Activated user_id=%s", user_id)
        return Activated(user=self.users.get_by_id(user_id), token=token)

    def _deliver(self, email: str, result: Issued | ResendRateLimited, kind: VerificationKind) -> Issued:
        if isinstance(result, ResendRateLimited):
            raise ResendTooSoon(result.retry_after)
        try:
            self.notifier.send_code(email, result.code, kind.value)
        except Exception as exc:
            # The pending record is kept so the user can ask for a resend.
            logger.error("Failed to deliver %s code: %s", kind.value, exc)
            raise NotificationFailed() from exc
        return result

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, context: SessionContext | None = None) -> tuple[User, str]:
        user = authenticate_user(self.users, email, password)
        if user is None:
            logger.info("Failed login attempt")
            raise InvalidCredentials()
        self.users.update_last_login(user.id)
        token = self.sessions.create_session(user.id, context)
        return user, token

    def logout(self, token: str) -> bool:
        return self.sessions.invalidate_session(token)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, new_password: str) -> None:
        """Issue a reset code carrying the new password hash. Silent for unknown emails."""
        email = normalize_email(email)
        user = self.users.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return
        result = self.verifier.issue(
            email,
            VerificationKind.PASSWORD_RESET,
            {"hashed_password": hash_password(new_password)},
        )
        self._deliver(email, result, VerificationKind.PASSWORD_RESET)

    def confirm_password_reset(self, email: str, code: str) -> PasswordReset | VerifyFailure:
        result = self.verifier.verify(email, VerificationKind.PASSWORD_RESET, code)
        if not isinstance(result, Verified):
            return result
        user = self.users.get_by_email(email)
        if user is None:
            # Deactivated between request and confirmation.
            return VerificationNotFound()
        self.users.update_user(user.id, hashed_password=result.payload["hashed_password"])
        revoked = cascade_invalidation(
            lambda: self.sessions.invalidate_all_for_user(user.id), "password reset"
        )
        logger.info("Password reset for user_id=%s", user.id)
        return PasswordReset(user_id=user.id, sessions_revoked=revoked)

    def change_password(self, user_id: int, current_password: str, new_password: str, current_token: str) -> int:
        """Change the password and sign out every other device. Returns sessions revoked."""
        user = self._live_user(user_id)
        if user.hashed_password is None:
            raise PasswordNotSet()
        if not verify_password(current_password, user.hashed_password):
            raise InvalidCurrentPassword()
        if current_password == new_password:
            raise SamePassword()
        self.users.update_user(user_id, hashed_password=hash_password(new_password))
        return cascade_invalidation(
            lambda: self.sessions.invalidate_all_except_token(user_id, current_token), "password change"
        )

    # ------------------------------------------------------------------
    # Session self-service
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: int, current_token: str | None = None) -> list[SessionView]:
        return [_to_view(s, current_token) for s in self.sessions.list_active_sessions(user_id)]

    def revoke_session(self, user_id: int, session_id: int, current_token: str | None = None) -> None:
        if not self.sessions.revoke_by_id(session_id, user_id, current_token):
            raise SessionNotFound()

    def revoke_other_sessions(self, user_id: int, current_token: str) -> int:
        return self.sessions.invalidate_all_except_token(user_id, current_token)

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def deactivate_account(self, user_id: int) -> int:
        """Soft-delete the caller's own account and sign out everywhere."""
        if not self.users.soft_delete(user_id):
            raise UserNotFound()
        logger.info("User user_id=%s deactivated their account", user_id)
        return cascade_invalidation(lambda: self.sessions.invalidate_all_for_user(user_id), "account deactivation")

    def effective_permissions(self, user: User) -> frozenset[str]:
        return self.resolver.effective_permissions(user)

    def _live_user(self, user_id: int) -> User:
        user = self.users.get_by_id(user_id)
        if user is None or user.is_deleted:
            raise UserNotFound()
        return user


def _to_view(session: Session, current_token: str | None) -> SessionView:
    return SessionView(
        id=session.id,
        user_agent=session.user_agent,
        ip=session.ip,
        device_name=session.device_name,
        created_at=session.created_at,
        last_used_at=session.last_used_at,
        expires_at=session.expires_at,
        is_current=current_token is not None and session.token == current_token,
    )
