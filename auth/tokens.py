"""
auth/tokens.py -- Password hashing, session tokens, and one-time code utilities.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Bcrypt's cost factor
       makes brute-forcing low-entropy secrets expensive. _DUMMY_HASH enables
       timing equalization in authenticate_user() so response time does not
       reveal whether an email is registered.

  Session tokens: secrets.token_hex(32) -- 256 bits of entropy, no embedded
       structure. The token is the whole credential; there is nothing to decode.

  One-time codes: fixed-width numeric codes from secrets.randbelow. Stored as
       HMAC-SHA256(SECRET_KEY, code). A 6-digit code has only 10^6 values, so
       an unkeyed hash would be reversible from a leaked table in
       milliseconds; the key makes the hash useless without SECRET_KEY. The
       attempt limit bounds online guessing. Comparison uses
       hmac.compare_digest.

  SECRET_KEY: sourced from core.config.get_settings() at module load.

Layer rule: may import from core/ (config). No imports from the service modules.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import TYPE_CHECKING

import bcrypt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

_settings = get_settings()

CODE_LENGTH = 6
SESSION_TOKEN_BYTES = 32

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. Length limits are
    the transport layer's concern.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("identity_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the account exists:
    - Unknown email or OAuth-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Deactivated (soft-deleted) accounts never authenticate. Returns the User
    on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if user.is_deleted:
        return None
    return user


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    """64 hex chars, 256 bits of entropy."""
    return secrets.token_hex(SESSION_TOKEN_BYTES)


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def generate_code(length: int = CODE_LENGTH) -> str:
    """Return a zero-padded numeric code of exactly `length` digits."""
    return str(secrets.randbelow(10**length)).zfill(length)


def is_well_formed_code(code: str, length: int = CODE_LENGTH) -> bool:
    return len(code) == length and code.isascii() and code.isdigit()


def hash_code(code: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, code) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        code.encode(),
        hashlib.sha256,
    ).hexdigest()


def code_matches(code: str, code_hash: str) -> bool:
    """Constant-time comparison of a submitted code against a stored hash."""
    return hmac.compare_digest(hash_code(code), code_hash)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the server-side session TTL.
    """
    response.set_cookie(
        _settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=_settings.session_ttl_seconds,
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(_settings.session_cookie_name, path="/")
