"""
auth/results.py -- Result variants for flows whose failures are expected outcomes.

One-time code verification and OAuth linking return one of these instead of
raising. Each variant carries the ErrorKind the transport layer would map it
to (None for successes) and a stable code string.

    match verifier.verify(email, kind, code):
        case Verified(payload=payload): ...
        case InvalidCode(remaining=n): ...
        case Expired() | Exhausted() | VerificationNotFound(): ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

from auth.errors import ErrorKind
from auth.models import User

# ---------------------------------------------------------------------------
# Issue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Issued:
    """A code was generated. `code` is plaintext and must go to the notifier only."""

    code: str
    expires_at: datetime
    kind: ClassVar[ErrorKind | None] = None
    status: ClassVar[str] = "issued"

    def __repr__(self) -> str:
        return f"Issued(code='******', expires_at={self.expires_at!r})"


@dataclass(frozen=True)
class ResendRateLimited:
    retry_after: int
    kind: ClassVar[ErrorKind | None] = ErrorKind.RATE_LIMITED
    status: ClassVar[str] = "resend_too_soon"


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Verified:
    payload: dict = field(default_factory=dict)
    kind: ClassVar[ErrorKind | None] = None
    status: ClassVar[str] = "verified"


@dataclass(frozen=True)
class InvalidCode:
    remaining: int
    kind: ClassVar[ErrorKind | None] = ErrorKind.VALIDATION
    status: ClassVar[str] = "invalid_code"


@dataclass(frozen=True)
class Expired:
    kind: ClassVar[ErrorKind | None] = ErrorKind.VALIDATION
    status: ClassVar[str] = "code_expired"


@dataclass(frozen=True)
class Exhausted:
    kind: ClassVar[ErrorKind | None] = ErrorKind.RATE_LIMITED
    status: ClassVar[str] = "max_attempts_exceeded"


@dataclass(frozen=True)
class VerificationNotFound:
    kind: ClassVar[ErrorKind | None] = ErrorKind.NOT_FOUND
    status: ClassVar[str] = "no_pending_verification"


@dataclass(frozen=True)
class MalformedCode:
    kind: ClassVar[ErrorKind | None] = ErrorKind.VALIDATION
    status: ClassVar[str] = "malformed_code"


VerifyFailure = InvalidCode | Expired | Exhausted | VerificationNotFound | MalformedCode
VerifyResult = Verified | VerifyFailure


# ---------------------------------------------------------------------------
# OAuth linking
# ---------------------------------------------------------------------------

LINK_MATCHED = "matched"
LINK_LINKED = "linked"
LINK_CREATED = "created"


@dataclass(frozen=True)
class LinkResult:
    """user is the local account after reconciliation; action says how it was found."""

    user: User
    action: str
    kind: ClassVar[ErrorKind | None] = None
    status: ClassVar[str] = "linked"


@dataclass(frozen=True)
class LinkRefused:
    reason: str
    kind: ClassVar[ErrorKind | None] = ErrorKind.CONFLICT
    status: ClassVar[str] = "oauth_link_refused"


# ---------------------------------------------------------------------------
# Account flows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Activated:
    user: User
    token: str
    kind: ClassVar[ErrorKind | None] = None
    status: ClassVar[str] = "activated"


@dataclass(frozen=True)
class PasswordReset:
    user_id: int
    sessions_revoked: int
    kind: ClassVar[ErrorKind | None] = None
    status: ClassVar[str] = "password_reset"
