"""
core/bootstrap.py -- Logging setup and wiring of the identity core from Settings.

build_identity_core() is the composition root: one Engine shared by every
store, one RoleHierarchy shared by every service. A host application calls it
once at startup and keeps the returned IdentityCore (FastAPI apps put it on
app.state.identity, which auth/dependencies.py expects).

    configure_logging(settings)
    app.state.identity = build_identity_core(settings)
    ...
    app.state.identity.close()

Layer rule: this is the only core/ module that imports from auth/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from auth.accounts import AccountService
from auth.admin import AdminService
from auth.linker import OAuthIdentityLinker
from auth.notifier import LoggingNotifier, Notifier
from auth.oauth import OAuthLogin, OAuthProvider, build_providers
from auth.permissions import DEFAULT_ROLE_PERMISSIONS, PermissionResolver
from auth.roles import DEFAULT_HIERARCHY, RoleHierarchy
from auth.schema import create_auth_engine
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.verification import CodeVerifier
from core.config import Settings, get_settings

logger = logging.getLogger("identity.bootstrap")


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@dataclass
class IdentityCore:
    settings: Settings
    engine: Engine
    hierarchy: RoleHierarchy
    users: UserStore
    sessions: SessionStore
    verifier: CodeVerifier
    notifier: Notifier
    resolver: PermissionResolver
    linker: OAuthIdentityLinker
    providers: dict[str, OAuthProvider]
    oauth: OAuthLogin
    accounts: AccountService
    admin: AdminService

    def close(self) -> None:
        self.sessions.close()
        self.engine.dispose()


def build_identity_core(
    settings: Settings | None = None,
    notifier: Notifier | None = None,
    hierarchy: RoleHierarchy = DEFAULT_HIERARCHY,
    clock: Callable[[], float] = time.time,
    touch_in_background: bool = True,
) -> IdentityCore:
    """Create the engine, seed system roles, and wire every store and service."""
    settings = settings or get_settings()
    if not hierarchy.is_system_role(settings.default_role) or not hierarchy.is_valid_role_assignment(
        settings.default_role
    ):
        raise ValueError(f"DEFAULT_ROLE {settings.default_role!r} is not an assignable system role")
    if notifier is None:
        if not settings.debug:
            raise ValueError("A Notifier is required outside DEBUG mode")
        notifier = LoggingNotifier()

    engine = create_auth_engine(settings.database_url)
    users = UserStore(engine, hierarchy)
    users.seed_system_roles(DEFAULT_ROLE_PERMISSIONS)

    sessions = SessionStore(
        engine,
        ttl_seconds=settings.session_ttl_seconds,
        clock=clock,
        touch_in_background=touch_in_background,
    )
    verifier = CodeVerifier(
        engine,
        code_ttl=settings.verification_code_ttl_seconds,
        max_attempts=settings.verification_max_attempts,
        resend_window=settings.verification_resend_window_seconds,
        clock=clock,
    )
    resolver = PermissionResolver(users.get_role_permissions)
    linker = OAuthIdentityLinker(users, hierarchy, default_role=settings.default_role)
    providers = build_providers(settings)

    logger.info("Identity core ready (%d OAuth provider(s))", len(providers))
    return IdentityCore(
        settings=settings,
        engine=engine,
        hierarchy=hierarchy,
        users=users,
        sessions=sessions,
        verifier=verifier,
        notifier=notifier,
        resolver=resolver,
        linker=linker,
        providers=providers,
        oauth=OAuthLogin(providers, linker, sessions),
        accounts=AccountService(
            users, sessions, verifier, notifier, hierarchy, resolver, default_role=settings.default_role
        ),
        admin=AdminService(users, sessions, hierarchy, resolver),
    )
