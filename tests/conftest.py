"""
tests/conftest.py -- Shared fixtures for identity core tests.

This module provides:
  - FakeClock: a controllable epoch-seconds clock injected into the stores
  - engine: an isolated in-memory SQLite database per test
  - users / sessions / verifier: stores over that engine
  - accounts / admin_service / linker: services wired like core.bootstrap does
  - make_user: factory for persisted users

Design: "sqlite://" with StaticPool (see create_auth_engine) keeps a single
in-memory database per engine, so every store in a test sees the same rows
and separate tests never share state.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
BCRYPT_ROUNDS is lowered so password hashing does not dominate the run.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator

# CRITICAL: Set before any auth/core import -- auth.tokens reads settings at load.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from sqlalchemy.engine import Engine

from auth.accounts import AccountService
from auth.admin import AdminService
from auth.linker import OAuthIdentityLinker
from auth.models import User
from auth.notifier import LoggingNotifier
from auth.permissions import DEFAULT_ROLE_PERMISSIONS
from auth.schema import create_auth_engine
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import hash_password
from auth.verification import CodeVerifier

SESSION_TTL = 3600
CODE_TTL = 900
MAX_ATTEMPTS = 5
RESEND_WINDOW = 60


class FakeClock:
    """Callable returning a fixed epoch time until advanced."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = create_auth_engine("sqlite://")
    yield eng
    eng.dispose()


@pytest.fixture
def users(engine: Engine) -> UserStore:
    store = UserStore(engine)
    store.seed_system_roles(DEFAULT_ROLE_PERMISSIONS)
    return store


@pytest.fixture
def sessions(engine: Engine, clock: FakeClock) -> Generator[SessionStore, None, None]:
    store = SessionStore(engine, ttl_seconds=SESSION_TTL, clock=clock, touch_in_background=False)
    yield store
    store.close()


@pytest.fixture
def verifier(engine: Engine, clock: FakeClock) -> CodeVerifier:
    return CodeVerifier(
        engine,
        code_ttl=CODE_TTL,
        max_attempts=MAX_ATTEMPTS,
        resend_window=RESEND_WINDOW,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def accounts(
    users: UserStore, sessions: SessionStore, verifier: CodeVerifier, notifier: LoggingNotifier
) -> AccountService:
    return AccountService(users, sessions, verifier, notifier)


@pytest.fixture
def admin_service(users: UserStore, sessions: SessionStore) -> AdminService:
    return AdminService(users, sessions)


@pytest.fixture
def linker(users: UserStore) -> OAuthIdentityLinker:
    return OAuthIdentityLinker(users)


@pytest.fixture
def make_user(users: UserStore) -> Callable[..., User]:
    """Factory: make_user("a@x.com", role="manager", password="pw") -> persisted User."""

    def _make(email: str, role: str = "user", password: str | None = "password123", **fields) -> User:
        uid = users.create_user(
            User(
                email=email,
                role=role,
                hashed_password=hash_password(password) if password is not None else None,
                is_verified=True,
                **fields,
            )
        )
        return users.get_by_id(uid)

    return _make
