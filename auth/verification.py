"""
auth/verification.py -- One-time code state machine for activation and password reset.

Each (email, kind) pair has at most one pending record, enforced by
UNIQUE(email, kind). States:

    NONE --issue--> PENDING --verify(ok)--------> CONSUMED  (row deleted)
                            --verify after ttl--> EXPIRED   (row deleted)
                            --max wrong guesses-> EXHAUSTED (row deleted)

Reissuing overwrites the record in place: new code, attempts reset to zero,
fresh expiry. A live record issued less than resend_window seconds ago is not
overwritten; the caller gets ResendRateLimited instead.

Atomicity:
  verify() runs inside one engine.begin() transaction. A wrong guess is a
  single UPDATE ... SET attempts = attempts + 1 and the new count is re-read
  in the same transaction, so concurrent wrong guesses can never be lost and
  attempts never decrease. A correct guess deletes the row guarded on its
  code_hash; when two correct guesses race, only the one whose DELETE hit a
  row reports Verified.

The plaintext code leaves this module only inside Issued, for the notifier.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import VerificationKind
from auth.results import (
    Exhausted,
    Expired,
    InvalidCode,
    Issued,
    MalformedCode,
    ResendRateLimited,
    Verified,
    VerificationNotFound,
    VerifyResult,
)
from auth.schema import pending_verifications as pending
from auth.store import normalize_email
from auth.tokens import code_matches, generate_code, hash_code, is_well_formed_code

logger = logging.getLogger("identity.auth.verification")

# An insert can lose a race with a concurrent issue for the same (email, kind);
# the second pass then sees the winner's row and overwrites it.
_MAX_ISSUE_PASSES = 2


def _mask(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}" if domain else "***"


class CodeVerifier:
    """Issues and checks hashed one-time codes.

    Usage:
        verifier = CodeVerifier(engine, code_ttl=900, max_attempts=5, resend_window=60)
        result = verifier.issue(email, VerificationKind.REGISTRATION, {"name": "Ada"})
        if isinstance(result, Issued):
            notifier.send_code(email, result.code, "registration")
    """

    def __init__(
        self,
        engine: Engine,
        code_ttl: int = 900,
        max_attempts: int = 5,
        resend_window: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.code_ttl = code_ttl
        self.max_attempts = max_attempts
        self.resend_window = resend_window
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        email: str,
        kind: VerificationKind,
        payload: dict | None = None,
        max_attempts: int | None = None,
        ttl: int | None = None,
    ) -> Issued | ResendRateLimited:
        """Create or overwrite the pending record for (email, kind) and return the new code."""
        return self._issue(normalize_email(email), VerificationKind(kind), payload or {}, max_attempts, ttl)

    def reissue(self, email: str, kind: VerificationKind) -> Issued | ResendRateLimited | VerificationNotFound:
        """Send a fresh code for an existing live record, keeping its payload."""
        email = normalize_email(email)
        kind = VerificationKind(kind)
        now = self._clock()
        with self.engine.connect() as conn:
            row = self._find(conn, email, kind)
        if row is None or row.expires_at < now:
            return VerificationNotFound()
        return self._issue(email, kind, json.loads(row.payload or "{}"), row.max_attempts, None)

    def _issue(
        self,
        email: str,
        kind: VerificationKind,
        payload: dict,
        max_attempts: int | None,
        ttl: int | None,
    ) -> Issued | ResendRateLimited:
        limit = max_attempts if max_attempts is not None else self.max_attempts
        lifetime = ttl if ttl is not None else self.code_ttl
        passes = 0
        while True:
            passes += 1
            code = generate_code()
            now = self._clock()
            values = {
                "payload": json.dumps(payload),
                "code_hash": hash_code(code),
                "attempts": 0,
                "max_attempts": limit,
                "issued_at": now,
                "expires_at": now + lifetime,
            }
            try:
                with self.engine.begin() as conn:
                    row = self._find(conn, email, kind)
                    if row is not None:
                        wait = row.issued_at + self.resend_window - now
                        if row.expires_at > now and wait > 0:
                            return ResendRateLimited(retry_after=math.ceil(wait))
                        conn.execute(update(pending).where(pending.c.id == row.id).values(**values))
                    else:
                        conn.execute(pending.insert().values(email=email, kind=kind.value, **values))
            except IntegrityError:
                if passes >= _MAX_ISSUE_PASSES:
                    raise
                continue
            logger.info("Issued %s code for %s", kind.value, _mask(email))
            return Issued(code=code, expires_at=datetime.fromtimestamp(values["expires_at"], tz=timezone.utc))

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, email: str, kind: VerificationKind, code: str) -> VerifyResult:
        """Check a submitted code. Every outcome is a result variant; nothing is raised.

        Malformed input is rejected before the lookup and does not consume an
        attempt.
        """
        if not isinstance(code, str) or not is_well_formed_code(code):
            return MalformedCode()
        email = normalize_email(email)
        kind = VerificationKind(kind)
        now = self._clock()

        with self.engine.begin() as conn:
            row = self._find(conn, email, kind)
            if row is None:
                return VerificationNotFound()

            if now > row.expires_at:
                conn.execute(pending.delete().where(pending.c.id == row.id))
                logger.info("Expired %s code for %s", kind.value, _mask(email))
                return Expired()

            if row.attempts >= row.max_attempts:
                conn.execute(pending.delete().where(pending.c.id == row.id))
                return Exhausted()

            if not code_matches(code, row.code_hash):
                bumped = conn.execute(
                    update(pending).where(pending.c.id == row.id).values(attempts=pending.c.attempts + 1)
                )
                if bumped.rowcount == 0:
                    # A concurrent guess exhausted or consumed the record.
                    return VerificationNotFound()
                attempts = conn.execute(select(pending.c.attempts).where(pending.c.id == row.id)).scalar_one()
                if attempts >= row.max_attempts:
                    conn.execute(pending.delete().where(pending.c.id == row.id))
                    logger.warning("Exhausted %s code for %s", kind.value, _mask(email))
                    return Exhausted()
                return InvalidCode(remaining=row.max_attempts - attempts)

            consumed = conn.execute(
                pending.delete().where((pending.c.id == row.id) & (pending.c.code_hash == row.code_hash))
            )
            if consumed.rowcount == 0:
                return VerificationNotFound()

        logger.info("Verified %s code for %s", kind.value, _mask(email))
        return Verified(payload=json.loads(row.payload or "{}"))

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def has_pending(self, email: str, kind: VerificationKind) -> bool:
        """True when a live (unexpired, not exhausted) record exists."""
        now = self._clock()
        with self.engine.connect() as conn:
            row = self._find(conn, normalize_email(email), VerificationKind(kind))
        return row is not None and row.expires_at >= now and row.attempts < row.max_attempts

    def discard(self, email: str, kind: VerificationKind) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                pending.delete().where(
                    (pending.c.email == normalize_email(email)) & (pending.c.kind == VerificationKind(kind).value)
                )
            )
        return result.rowcount > 0

    def purge_expired(self) -> int:
        """Delete every record past its expiry. Returns rows deleted."""
        with self.engine.begin() as conn:
            result = conn.execute(pending.delete().where(pending.c.expires_at < self._clock()))
        return result.rowcount

    @staticmethod
    def _find(conn: Connection, email: str, kind: VerificationKind):
        return conn.execute(
            pending.select().where((pending.c.email == email) & (pending.c.kind == kind.value))
        ).fetchone()
