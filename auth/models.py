"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence,
services own behaviour.

Session holds a plain user_id rather than an embedded User. Callers that need
the user resolve it through UserStore.get_by_id().

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class VerificationKind(str, Enum):
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    """A local account.

    email is always stored lower-cased and stripped (see normalize_email in
    auth/store.py). hashed_password is None for OAuth-only users.

    permissions are the user's direct grants only. The effective set also
    includes the role's permissions -- see auth/permissions.py.

    linked_providers maps provider name -> the provider's stable user id.
    Each (provider, external id) pair is unique across all users.
    """

    email: str
    role: str = "user"
    id: int | None = None
    name: str = ""
    hashed_password: str | None = None  # None = OAuth-only user
    permissions: list[str] = field(default_factory=list)
    linked_providers: dict[str, str] = field(default_factory=dict)
    is_verified: bool = False
    is_deleted: bool = False
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class SessionContext:
    """Device and network metadata recorded when a session is created."""

    user_agent: str = "Unknown"
    ip: str = "127.0.0.1"
    device_name: str | None = None


@dataclass
class Session:
    """Proof of authentication, carried by the client as an opaque token.

    Only is_valid and last_used_at change after creation. expires_at is fixed
    at creation -- there is no sliding renewal.
    """

    user_id: int
    token: str
    expires_at: datetime
    id: int | None = None
    user_agent: str = "Unknown"
    ip: str = "127.0.0.1"
    device_name: str | None = None
    is_valid: bool = True
    created_at: datetime | None = None
    last_used_at: datetime | None = None


@dataclass
class Role:
    """A named privilege bucket.

    level is 1..N for system roles and 0 for custom roles. Protected roles
    cannot be modified or deleted.
    """

    slug: str
    permissions: list[str] = field(default_factory=list)
    description: str = ""
    is_protected: bool = False
    level: int = 0


@dataclass
class PendingVerification:
    """A live one-time code record. The code itself is never stored.

    code_hash is HMAC-SHA256(SECRET_KEY, code). payload is whatever the flow
    needs to finish once the code is confirmed (e.g. a bcrypt password hash).
    """

    email: str
    kind: VerificationKind
    code_hash: str
    expires_at: datetime
    payload: dict = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 5
    id: int | None = None
    issued_at: datetime | None = None


@dataclass(frozen=True)
class OAuthProfile:
    """Provider-supplied identity snapshot. Transient, consumed once per callback.

    email_verified is None when the provider does not report it. The linker
    treats None as unverified.
    """

    provider: str
    external_id: str
    email: str
    name: str = ""
    email_verified: bool | None = None
