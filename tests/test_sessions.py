"""Unit tests for auth/sessions.py -- opaque-token session lifecycle.

Covers:
- create / validate / invalidate round trip and idempotent invalidation
- expiry is fixed at creation (validation never extends it)
- bulk invalidation per user, with and without a kept token
- ownership-checked revocation by id
- last_used_at refresh, including failure isolation
- token collision retry
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import CannotRevokeCurrentSession, SessionTokenCollision
from auth.models import SessionContext
from auth.sessions import SessionStore


class TestLifecycle:
    def test_create_then_validate(self, sessions: SessionStore) -> None:
        token = sessions.create_session(7, SessionContext(user_agent="pytest", ip="10.0.0.1", device_name="ci"))
        assert len(token) == 64
        session = sessions.validate_session(token)
        assert session is not None
        assert session.user_id == 7
        assert session.user_agent == "pytest"
        assert session.ip == "10.0.0.1"
        assert session.device_name == "ci"
        assert session.is_valid

    def test_invalidate_twice(self, sessions: SessionStore) -> None:
        token = sessions.create_session(1)
        assert sessions.invalidate_session(token) is True
        assert sessions.invalidate_session(token) is False
        assert sessions.validate_session(token) is None

    def test_unknown_and_empty_tokens(self, sessions: SessionStore) -> None:
        assert sessions.validate_session("f" * 64) is None
        assert sessions.validate_session("") is None
        assert sessions.invalidate_session("nope") is False

    def test_expired_session_is_rejected(self, sessions: SessionStore, clock) -> None:
        token = sessions.create_session(1)
        clock.advance(sessions.ttl_seconds - 1)
        assert sessions.validate_session(token) is not None
        clock.advance(1)
        assert sessions.validate_session(token) is None

    def test_validation_does_not_extend_expiry(self, sessions: SessionStore, clock) -> None:
        token = sessions.create_session(1)
        expires_at = sessions.get_by_token(token).expires_at
        clock.advance(100)
        sessions.validate_session(token)
        assert sessions.get_by_token(token).expires_at == expires_at

    def test_validation_refreshes_last_used(self, sessions: SessionStore, clock) -> None:
        token = sessions.create_session(1)
        before = sessions.get_by_token(token).last_used_at
        clock.advance(30)
        sessions.validate_session(token)
        after = sessions.get_by_token(token).last_used_at
        assert (after - before).total_seconds() == 30

    def test_refresh_failure_does_not_fail_validation(self, sessions: SessionStore) -> None:
        token = sessions.create_session(1)
        with patch.object(sessions.engine, "begin", side_effect=OperationalError("x", {}, Exception("locked"))):
            assert sessions.validate_session(token) is not None

    def test_background_refresh(self, engine, clock) -> None:
        store = SessionStore(engine, ttl_seconds=3600, clock=clock)
        try:
            token = store.create_session(1)
            clock.advance(5)
            assert store.validate_session(token) is not None
        finally:
            store.close()
        assert store.get_by_token(token).last_used_at.timestamp() == pytest.approx(clock.now)

    def test_validation_survives_concurrent_close(self, engine, clock) -> None:
        store = SessionStore(engine, ttl_seconds=3600, clock=clock)
        token = store.create_session(1)
        # Worker already shut down while the attribute is still set: submit() raises.
        store._executor.shutdown(wait=True)
        try:
            assert store.validate_session(token) is not None
        finally:
            store.close()
        assert store.validate_session(token) is not None


class TestBulkInvalidation:
    def test_all_for_user(self, sessions: SessionStore) -> None:
        tokens = [sessions.create_session(1) for _ in range(3)]
        other = sessions.create_session(2)
        assert sessions.invalidate_all_for_user(1) == 3
        assert all(sessions.validate_session(t) is None for t in tokens)
        assert sessions.validate_session(other) is not None
        assert sessions.invalidate_all_for_user(1) == 0

    def test_all_except_token(self, sessions: SessionStore) -> None:
        keep = sessions.create_session(1)
        drop = [sessions.create_session(1) for _ in range(2)]
        assert sessions.invalidate_all_except_token(1, keep) == 2
        assert sessions.validate_session(keep) is not None
        assert all(sessions.validate_session(t) is None for t in drop)


class TestQueries:
    def test_list_active_newest_use_first(self, sessions: SessionStore, clock) -> None:
        first = sessions.create_session(1)
        clock.advance(1)
        second = sessions.create_session(1)
        clock.advance(1)
        sessions.validate_session(first)
        revoked = sessions.create_session(1)
        sessions.invalidate_session(revoked)
        listed = [s.token for s in sessions.list_active_sessions(1)]
        assert listed == [first, second]

    def test_get_by_id(self, sessions: SessionStore) -> None:
        token = sessions.create_session(3)
        session = sessions.get_by_token(token)
        assert sessions.get_by_id(session.id).token == token
        assert sessions.get_by_id(9999) is None

    def test_purge_expired(self, sessions: SessionStore, clock) -> None:
        old = sessions.create_session(1)
        clock.advance(sessions.ttl_seconds + 1)
        fresh = sessions.create_session(1)
        assert sessions.purge_expired() == 1
        assert sessions.get_by_token(old) is None
        assert sessions.get_by_token(fresh) is not None


class TestRevokeById:
    def test_revoke_other_session(self, sessions: SessionStore) -> None:
        current = sessions.create_session(1)
        other = sessions.create_session(1)
        other_id = sessions.get_by_token(other).id
        assert sessions.revoke_by_id(other_id, 1, current) is True
        assert sessions.validate_session(other) is None
        assert sessions.revoke_by_id(other_id, 1, current) is False

    def test_cannot_revoke_current(self, sessions: SessionStore) -> None:
        current = sessions.create_session(1)
        with pytest.raises(CannotRevokeCurrentSession):
            sessions.revoke_by_id(sessions.get_by_token(current).id, 1, current)
        assert sessions.validate_session(current) is not None

    def test_cannot_revoke_someone_elses(self, sessions: SessionStore) -> None:
        theirs = sessions.create_session(2)
        assert sessions.revoke_by_id(sessions.get_by_token(theirs).id, 1) is False
        assert sessions.validate_session(theirs) is not None


class TestTokenCollision:
    def test_retries_then_succeeds(self, sessions: SessionStore) -> None:
        taken = sessions.create_session(1)
        with patch("auth.sessions.generate_session_token", side_effect=[taken, "a" * 64]):
            assert sessions.create_session(2) == "a" * 64

    def test_gives_up_after_three(self, sessions: SessionStore) -> None:
        taken = sessions.create_session(1)
        with patch("auth.sessions.generate_session_token", return_value=taken):
            with pytest.raises(SessionTokenCollision):
                sessions.create_session(2)
