"""
auth/sessions.py -- Opaque-token session lifecycle over SQLAlchemy Core.

A session token is 64 random hex chars and is the whole credential. Lookups go
straight to the unique index on sessions.token; there is nothing to decode.

Lifecycle:
  create_session       -> row with is_valid=1, expires_at = now + ttl
  validate_session     -> Session if valid and unexpired, else None
  invalidate_*         -> is_valid=0 (rows are kept for auditing until purge)
  purge_expired        -> housekeeping delete of expired rows

expires_at is fixed at creation. validate_session refreshes last_used_at and
nothing else -- there is no sliding renewal.

last_used_at refresh:
  Runs on a single background worker so validation never waits on a write.
  Errors are logged and dropped; a stale last_used_at is harmless. Tests pass
  touch_in_background=False to make the write synchronous.

Clock:
  clock() returns epoch seconds. Injected so expiry is testable without
  sleeping.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import CannotRevokeCurrentSession, SessionTokenCollision
from auth.models import Session, SessionContext
from auth.schema import sessions
from auth.tokens import generate_session_token

logger = logging.getLogger("identity.auth.sessions")

_MAX_TOKEN_ATTEMPTS = 3


def _to_datetime(epoch: float | None) -> datetime | None:
    return datetime.fromtimestamp(epoch, tz=timezone.utc) if epoch is not None else None


class SessionStore:
    """Repository and lifecycle rules for Session rows.

    Usage:
        store = SessionStore(engine, ttl_seconds=settings.session_ttl_seconds)
        token = store.create_session(user.id, SessionContext(user_agent=ua, ip=ip))
        session = store.validate_session(token)  # None -> 401
    """

    def __init__(
        self,
        engine: Engine,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
        touch_in_background: bool = True,
    ) -> None:
        self.engine = engine
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._touch_in_background = touch_in_background
        self._executor: ThreadPoolExecutor | None = None
        if touch_in_background:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="session-touch")

    # ------------------------------------------------------------------
    # Creation and validation
    # ------------------------------------------------------------------

    def create_session(self, user_id: int, context: SessionContext | None = None) -> str:
        """Persist a new session for user_id and return its token.

        A token collision is astronomically unlikely at 256 bits, but the
        unique index is authoritative: retry with a fresh token, then give up
        with SessionTokenCollision.
        """
        context = context or SessionContext()
        for _ in range(_MAX_TOKEN_ATTEMPTS):
            token = generate_session_token()
            now = self._clock()
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        sessions.insert().values(
                            user_id=user_id,
                            token=token,
                            user_agent=context.user_agent,
                            ip=context.ip,
                            device_name=context.device_name,
                            is_valid=1,
                            created_at=now,
                            expires_at=now + self.ttl_seconds,
                            last_used_at=now,
                        )
                    )
            except IntegrityError:
                logger.warning("Session token collision for user_id=%s, retrying", user_id)
                continue
            logger.info("Session created for user_id=%s", user_id)
            return token
        raise SessionTokenCollision()

    def validate_session(self, token: str) -> Session | None:
        """Return the Session when token is valid and unexpired, else None.

        Unknown, revoked and expired tokens are indistinguishable to the caller.
        """
        if not token:
            return None
        now = self._clock()
        with self.engine.connect() as conn:
            row = conn.execute(
                sessions.select().where(
                    (sessions.c.token == token) & (sessions.c.is_valid == 1) & (sessions.c.expires_at > now)
                )
            ).fetchone()
        if row is None:
            return None
        self._touch(row.id, now)
        return _row_to_session(row)

    def _touch(self, session_id: int, now: float) -> None:
        executor = self._executor
        if executor is None:
            if not self._touch_in_background:
                self._write_last_used(session_id, now)
            return
        try:
            executor.submit(self._write_last_used, session_id, now)
        except RuntimeError:
            # close() shut the worker down between the lookup and the submit.
            logger.warning("Skipped last_used_at refresh for session id=%s: store closed", session_id)

    def _write_last_used(self, session_id: int, now: float) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(update(sessions).where(sessions.c.id == session_id).values(last_used_at=now))
        except SQLAlchemyError:
            logger.exception("Failed to refresh last_used_at for session id=%s", session_id)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_session(self, token: str) -> bool:
        """Mark one session invalid. Returns False if it was unknown or already invalid."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sessions).where((sessions.c.token == token) & (sessions.c.is_valid == 1)).values(is_valid=0)
            )
        return result.rowcount > 0

    def invalidate_all_for_user(self, user_id: int) -> int:
        """Invalidate every live session of user_id and return how many changed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sessions)
                .where((sessions.c.user_id == user_id) & (sessions.c.is_valid == 1))
                .values(is_valid=0)
            )
        logger.info("Invalidated %d session(s) for user_id=%s", result.rowcount, user_id)
        return result.rowcount

    def invalidate_all_except_token(self, user_id: int, keep_token: str) -> int:
        """Invalidate every live session of user_id other than keep_token."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sessions)
                .where((sessions.c.user_id == user_id) & (sessions.c.is_valid == 1) & (sessions.c.token != keep_token))
                .values(is_valid=0)
            )
        logger.info("Invalidated %d other session(s) for user_id=%s", result.rowcount, user_id)
        return result.rowcount

    def revoke_by_id(self, session_id: int, owner_user_id: int, current_token: str | None = None) -> bool:
        """Invalidate a session by id on behalf of its owner.

        Returns False when the id does not exist, belongs to someone else, or
        is already invalid. Raises CannotRevokeCurrentSession when the id is
        the caller's own current session (logout is the way to end that one).
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                sessions.select().where((sessions.c.id == session_id) & (sessions.c.user_id == owner_user_id))
            ).fetchone()
            if row is None or not row.is_valid:
                return False
            if current_token is not None and row.token == current_token:
                raise CannotRevokeCurrentSession()
            result = conn.execute(
                update(sessions).where((sessions.c.id == session_id) & (sessions.c.is_valid == 1)).values(is_valid=0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_active_sessions(self, user_id: int) -> list[Session]:
        """Valid, unexpired sessions for user_id, most recently used first."""
        now = self._clock()
        with self.engine.connect() as conn:
            rows = conn.execute(
                sessions.select()
                .where((sessions.c.user_id == user_id) & (sessions.c.is_valid == 1) & (sessions.c.expires_at > now))
                .order_by(sessions.c.last_used_at.desc(), sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def get_by_token(self, token: str) -> Session | None:
        """Fetch a session in any state. Use validate_session() for authentication."""
        with self.engine.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.token == token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_id(self, session_id: int) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self, before: float | None = None) -> int:
        """Delete sessions that expired before `before` (default: now). Returns rows deleted."""
        cutoff = self._clock() if before is None else before
        with self.engine.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.expires_at <= cutoff))
        if result.rowcount:
            logger.info("Purged %d expired session(s)", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        """Drain the background worker. Safe to call more than once."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        user_agent=row.user_agent,
        ip=row.ip,
        device_name=row.device_name,
        is_valid=bool(row.is_valid),
        created_at=_to_datetime(row.created_at),
        expires_at=_to_datetime(row.expires_at),
        last_used_at=_to_datetime(row.last_used_at),
    )
