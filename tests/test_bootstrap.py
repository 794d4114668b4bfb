"""Tests for core/bootstrap.py and core/config.py -- settings policy and core wiring."""

from __future__ import annotations

import pytest

from auth.notifier import LoggingNotifier
from auth.results import Activated
from core.bootstrap import build_identity_core
from core.config import Settings


class TestSettings:
    def test_debug_generates_secret_key(self) -> None:
        settings = Settings(debug=True, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_production_requires_secret_key(self) -> None:
        with pytest.raises(ValueError):
            Settings(debug=False, secret_key="")

    def test_short_secret_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            Settings(debug=True, secret_key="too-short")

    def test_defaults(self) -> None:
        settings = Settings(debug=True)
        assert settings.session_ttl_seconds == 7 * 24 * 3600
        assert settings.verification_code_ttl_seconds == 15 * 60
        assert settings.verification_max_attempts == 5
        assert settings.verification_resend_window_seconds == 60


class TestBuildIdentityCore:
    def test_end_to_end_registration(self) -> None:
        core = build_identity_core(Settings(debug=True, database_url="sqlite://"), touch_in_background=False)
        try:
            assert isinstance(core.notifier, LoggingNotifier)
            assert core.users.get_role_permissions("admin") == ["*"]
            core.accounts.register("ada@example.com", "pw-123", "Ada")
            code = core.notifier.sent[-1][1]
            result = core.accounts.activate("ada@example.com", code)
            assert isinstance(result, Activated)
            assert core.sessions.validate_session(result.token).user_id == result.user.id
        finally:
            core.close()

    def test_notifier_required_in_production(self) -> None:
        settings = Settings(debug=False, secret_key="x" * 32, database_url="sqlite://")
        with pytest.raises(ValueError):
            build_identity_core(settings)

    @pytest.mark.parametrize("role", ["admin", "wizard"])
    def test_default_role_must_be_assignable(self, role: str) -> None:
        with pytest.raises(ValueError):
            build_identity_core(Settings(debug=True, database_url="sqlite://", default_role=role))

    def test_configured_default_role(self) -> None:
        core = build_identity_core(
            Settings(debug=True, database_url="sqlite://", default_role="support"), touch_in_background=False
        )
        try:
            assert core.accounts.default_role == "support"
            assert core.linker.default_role == "support"
        finally:
            core.close()
