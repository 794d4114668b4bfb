"""Tests for auth/accounts.py -- registration, sign-in, passwords, and session self-service."""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from auth.accounts import AccountService
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
from auth.models import SessionContext, User, VerificationKind
from auth.notifier import LoggingNotifier
from auth.results import Activated, Expired, InvalidCode, PasswordReset, VerificationNotFound
from auth.sessions import SessionStore
from auth.tokens import verify_password

EMAIL = "ada@example.com"


def _last_code(notifier: LoggingNotifier) -> str:
    return notifier.sent[-1][1]


class BrokenNotifier:
    def send_code(self, email: str, code: str, context: str) -> None:
        raise ConnectionError("smtp down")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_register_then_activate(self, accounts: AccountService, notifier: LoggingNotifier, sessions) -> None:
        accounts.register(" Ada@Example.com", "s3cret-pass", "Ada")
        assert notifier.sent[-1][0] == EMAIL
        assert notifier.sent[-1][2] == "registration"
        # No account until the code is confirmed.
        assert accounts.users.get_by_email(EMAIL) is None

        result = accounts.activate(EMAIL, _last_code(notifier), SessionContext(user_agent="ua"))
        assert isinstance(result, Activated)
        assert result.user.email == EMAIL
        assert result.user.name == "Ada"
        assert result.user.is_verified
        assert result.user.role == "user"
        assert verify_password("s3cret-pass", result.user.hashed_password)
        assert sessions.validate_session(result.token).user_id == result.user.id

    def test_register_existing_email(self, accounts: AccountService, make_user: Callable[..., User]) -> None:
        make_user(EMAIL)
        with pytest.raises(EmailAlreadyRegistered):
            accounts.register(EMAIL, "pw", "Ada")

    def test_wrong_code_returns_variant(self, accounts: AccountService, notifier: LoggingNotifier) -> None:
        accounts.register(EMAIL, "pw", "Ada")
        code = _last_code(notifier)
        wrong = "000000" if code != "000000" else "111111"
        assert accounts.activate(EMAIL, wrong) == InvalidCode(4)

    def test_expired_code(self, accounts: AccountService, notifier: LoggingNotifier, clock) -> None:
        accounts.register(EMAIL, "pw", "Ada")
        clock.advance(accounts.verifier.code_ttl + 1)
        assert accounts.activate(EMAIL, _last_code(notifier)) == Expired()

    def test_email_taken_before_activation(
        self, accounts: AccountService, notifier: LoggingNotifier, make_user: Callable[..., User]
    ) -> None:
        accounts.register(EMAIL, "pw", "Ada")
        make_user(EMAIL)
        with pytest.raises(EmailAlreadyRegistered):
            accounts.activate(EMAIL, _last_code(notifier))

    def test_resend_too_soon(self, accounts: AccountService) -> None:
        accounts.register(EMAIL, "pw", "Ada")
        with pytest.raises(ResendTooSoon) as exc_info:
            accounts.resend_activation(EMAIL)
        assert exc_info.value.retry_after == accounts.verifier.resend_window

    def test_resend_after_window(self, accounts: AccountService, notifier: LoggingNotifier, clock) -> None:
        accounts.register(EMAIL, "pw", "Ada")
        clock.advance(accounts.verifier.resend_window)
        accounts.resend_activation(EMAIL)
        assert len(notifier.sent) == 2
        assert isinstance(accounts.activate(EMAIL, _last_code(notifier)), Activated)

    def test_resend_without_registration(self, accounts: AccountService) -> None:
        with pytest.raises(NoPendingVerification):
            accounts.resend_activation(EMAIL)

    def test_notification_failure_keeps_pending_record(self, users, sessions, verifier) -> None:
        service = AccountService(users, sessions, verifier, BrokenNotifier())
        with pytest.raises(NotificationFailed):
            service.register(EMAIL, "pw", "Ada")
        assert verifier.has_pending(EMAIL, VerificationKind.REGISTRATION)


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_and_logout(self, accounts: AccountService, make_user: Callable[..., User], sessions) -> None:
        make_user(EMAIL, password="pw-123")
        user, token = accounts.login("ADA@example.com", "pw-123")
        assert sessions.validate_session(token).user_id == user.id
        assert accounts.users.get_by_id(user.id).last_login is not None
        assert accounts.logout(token) is True
        assert accounts.logout(token) is False
        assert sessions.validate_session(token) is None

    @pytest.mark.parametrize(
        ("email", "password"),
        [(EMAIL, "wrong"), ("nobody@example.com", "pw-123")],
    )
    def test_invalid_credentials(
        self, accounts: AccountService, make_user: Callable[..., User], email: str, password: str
    ) -> None:
        make_user(EMAIL, password="pw-123")
        with pytest.raises(InvalidCredentials):
            accounts.login(email, password)

    def test_oauth_only_account_cannot_password_login(
        self, accounts: AccountService, make_user: Callable[..., User]
    ) -> None:
        make_user(EMAIL, password=None, linked_providers={"github": "1"})
        with pytest.raises(InvalidCredentials):
            accounts.login(EMAIL, "anything")

    def test_deactivated_account_cannot_login(self, accounts: AccountService, make_user: Callable[..., User]) -> None:
        user = make_user(EMAIL, password="pw-123")
        accounts.deactivate_account(user.id)
        with pytest.raises(InvalidCredentials):
            accounts.login(EMAIL, "pw-123")


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_reset_flow(
        self,
        accounts: AccountService,
        notifier: LoggingNotifier,
        make_user: Callable[..., User],
        sessions: SessionStore,
    ) -> None:
        user = make_user(EMAIL, password="old-pw")
        old_tokens = [accounts.login(EMAIL, "old-pw")[1] for _ in range(2)]

        accounts.request_password_reset(EMAIL, "new-pw")
        assert notifier.sent[-1][2] == "password_reset"
        result = accounts.confirm_password_reset(EMAIL, _last_code(notifier))

        assert result == PasswordReset(user_id=user.id, sessions_revoked=2)
        assert all(sessions.validate_session(t) is None for t in old_tokens)
        accounts.login(EMAIL, "new-pw")
        with pytest.raises(InvalidCredentials):
            accounts.login(EMAIL, "old-pw")

    def test_unknown_email_is_silent(self, accounts: AccountService, notifier: LoggingNotifier) -> None:
        assert accounts.request_password_reset("nobody@example.com", "pw") is None
        assert notifier.sent == []

    def test_confirm_without_request(self, accounts: AccountService) -> None:
        assert accounts.confirm_password_reset(EMAIL, "123456") == VerificationNotFound()

    def test_cascade_failure_does_not_fail_reset(
        self, accounts: AccountService, notifier: LoggingNotifier, make_user: Callable[..., User]
    ) -> None:
        make_user(EMAIL, password="old-pw")
        accounts.request_password_reset(EMAIL, "new-pw")
        error = OperationalError("UPDATE sessions", {}, Exception("database is locked"))
        with patch.object(accounts.sessions, "invalidate_all_for_user", side_effect=error):
            result = accounts.confirm_password_reset(EMAIL, _last_code(notifier))
        assert isinstance(result, PasswordReset)
        assert result.sessions_revoked == 0
        accounts.login(EMAIL, "new-pw")


class TestChangePassword:
    def test_change_keeps_current_session_only(
        self, accounts: AccountService, make_user: Callable[..., User], sessions: SessionStore
    ) -> None:
        user = make_user(EMAIL, password="old-pw")
        current = accounts.login(EMAIL, "old-pw")[1]
        other = accounts.login(EMAIL, "old-pw")[1]
        assert accounts.change_password(user.id, "old-pw", "new-pw", current) == 1
        assert sessions.validate_session(current) is not None
        assert sessions.validate_session(other) is None
        accounts.login(EMAIL, "new-pw")

    def test_wrong_current(self, accounts: AccountService, make_user: Callable[..., User]) -> None:
        user = make_user(EMAIL, password="old-pw")
        with pytest.raises(InvalidCurrentPassword):
            accounts.change_password(user.id, "nope", "new-pw", "t")

    def test_same_password(self, accounts: AccountService, make_user: Callable[..., User]) -> None:
        user = make_user(EMAIL, password="old-pw")
        with pytest.raises(SamePassword):
            accounts.change_password(user.id, "old-pw", "old-pw", "t")

    def test_oauth_only(self, accounts: AccountService, make_user: Callable[..., User]) -> None:
        user = make_user(EMAIL, password=None)
        with pytest.raises(PasswordNotSet):
            accounts.change_password(user.id, "x", "y", "t")


# ---------------------------------------------------------------------------
# Sessions and account
# ---------------------------------------------------------------------------


class TestSessionSelfService:
    def test_list_marks_current(self, accounts: AccountService, make_user: Callable[..., User]) -> None:
        user = make_user(EMAIL, password="pw")
        current = accounts.login(EMAIL, "pw", SessionContext(device_name="laptop"))[1]
        accounts.login(EMAIL, "pw", SessionContext(device_name="phone"))
        views = accounts.list_sessions(user.id, current)
        assert len(views) == 2
        assert [v.device_name for v in views if v.is_current] == ["laptop"]
        assert not hasattr(views[0], "token")

    def test_revoke_session(self, accounts: AccountService, make_user: Callable[..., User]) -> None:
        user = make_user(EMAIL, password="pw")
        current = accounts.login(EMAIL, "pw")[1]
        accounts.login(EMAIL, "pw")
        other = next(v for v in accounts.list_sessions(user.id, current) if not v.is_current)
        accounts.revoke_session(user.id, other.id, current)
        with pytest.raises(SessionNotFound):
            accounts.revoke_session(user.id, other.id, current)

    def test_revoke_other_sessions(self, accounts: AccountService, make_user: Callable[..., User]) -> None:
        user = make_user(EMAIL, password="pw")
        current = accounts.login(EMAIL, "pw")[1]
        accounts.login(EMAIL, "pw")
        accounts.login(EMAIL, "pw")
        assert accounts.revoke_other_sessions(user.id, current) == 2
        assert [v.is_current for v in accounts.list_sessions(user.id, current)] == [True]


class TestAccount:
    def test_deactivate_revokes_sessions(
        self, accounts: AccountService, make_user: Callable[..., User], sessions: SessionStore
    ) -> None:
        user = make_user(EMAIL, password="pw")
        token = accounts.login(EMAIL, "pw")[1]
        assert accounts.deactivate_account(user.id) == 1
        assert sessions.validate_session(token) is None
        with pytest.raises(UserNotFound):
            accounts.deactivate_account(user.id)

    def test_effective_permissions(self, accounts: AccountService, make_user: Callable[..., User]) -> None:
        user = make_user(EMAIL, role="support", permissions=["reports:export"])
        perms = accounts.effective_permissions(user)
        assert {"users:read:all", "profile:read:own", "reports:export"} <= perms
