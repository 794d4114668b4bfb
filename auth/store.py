"""
auth/store.py -- SQLAlchemy Core persistence for users, linked identities, and roles.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
and _row_to_role are the mappers. Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  create_user() and link_identity() let sqlalchemy.exc.IntegrityError
  propagate. A unique-constraint violation is the authoritative signal that a
  concurrent request created or linked the same identity first; callers (the
  OAuth linker, activation) decide how to recover.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from auth.errors import ProtectedRole
from auth.models import Role, User
from auth.permissions import validate_permissions
from auth.roles import DEFAULT_HIERARCHY, RoleHierarchy
from auth.schema import roles, user_identities, users

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Role entities.

    Usage:
        engine = create_auth_engine("sqlite:///identity.db")
        store = UserStore(engine)
        uid = store.create_user(User(email="a@x.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("A@x.com")
    """

    # Columns update_user() will write. Anything else raises ValueError.
    _UPDATABLE_FIELDS: set = {
        "email",
        "name",
        "hashed_password",
        "role",
        "permissions",
        "is_verified",
        "is_deleted",
        "deleted_at",
    }

    def __init__(self, engine: Engine, hierarchy: RoleHierarchy = DEFAULT_HIERARCHY) -> None:
        self.engine = engine
        self.hierarchy = hierarchy

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a user plus any linked identities atomically and return the new ID.

        Raises sqlalchemy.exc.IntegrityError if the email is already used by a
        live account or one of the identities is already linked elsewhere.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    email=normalize_email(user.email),
                    name=user.name,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    permissions=json.dumps(list(user.permissions)),
                    is_verified=1 if user.is_verified else 0,
                    is_deleted=0,
                    created_at=now,
                )
            )
            user_id = result.inserted_primary_key[0]
            for provider, external_id in user.linked_providers.items():
                conn.execute(
                    user_identities.insert().values(
                        user_id=user_id,
                        provider=provider,
                        external_id=external_id,
                        linked_at=now,
                    )
                )
        return user_id

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key, deleted or not. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
            return self._hydrate(conn, row)

    def get_by_email(self, email: str) -> User | None:
        """Look up the live (non-deleted) account for an email, case-insensitively."""
        with self.engine.connect() as conn:
            row = conn.execute(
                users.select().where((users.c.email == normalize_email(email)) & (users.c.is_deleted == 0))
            ).fetchone()
            return self._hydrate(conn, row)

    def get_by_provider(self, provider: str, external_id: str) -> User | None:
        """Look up the user an external (provider, external_id) identity is linked to.

        Deleted users are returned too -- the identity still belongs to them,
        and the caller decides whether a deleted account may sign in.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(users)
                .join(user_identities, user_identities.c.user_id == users.c.id)
                .where((user_identities.c.provider == provider) & (user_identities.c.external_id == external_id))
            ).fetchone()
            return self._hydrate(conn, row)

    def link_identity(self, user_id: int, provider: str, external_id: str, mark_verified: bool = False) -> None:
        """Attach an external identity to an existing user.

        mark_verified also sets is_verified in the same transaction (the
        provider has vouched for the email). Raises IntegrityError when the
        identity already belongs to someone, or the user already has an
        identity for this provider.
        """
        with self.engine.begin() as conn:
            conn.execute(
                user_identities.insert().values(
                    user_id=user_id,
                    provider=provider,
                    external_id=external_id,
                    linked_at=_now_iso(),
                )
            )
            if mark_verified:
                conn.execute(users.update().where(users.c.id == user_id).values(is_verified=1))

    def unlink_identity(self, user_id: int, provider: str) -> bool:
        """Remove the user's identity for provider. Returns False if none was linked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                user_identities.delete().where(
                    (user_identities.c.user_id == user_id) & (user_identities.c.provider == provider)
                )
            )
        return result.rowcount > 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: see _UPDATABLE_FIELDS. Booleans, permission lists,
        datetimes and emails are converted to their stored form here.

        Returns True if a row was updated, False if user_id was not found.
        Raises IntegrityError if a new email collides with a live account.
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return False
        values = dict(fields)
        if "email" in values:
            values["email"] = normalize_email(values["email"])
        if "permissions" in values:
            values["permissions"] = json.dumps(list(values["permissions"]))
        for flag in ("is_verified", "is_deleted"):
            if flag in values:
                values[flag] = 1 if values[flag] else 0
        if "deleted_at" in values and isinstance(values["deleted_at"], datetime):
            values["deleted_at"] = values["deleted_at"].isoformat()
        with self.engine.begin() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def set_permissions(self, user_id: int, permissions: Iterable[str]) -> bool:
        """Replace the user's direct grants. Order is preserved, duplicates dropped."""
        return self.update_user(user_id, permissions=list(dict.fromkeys(permissions)))

    def soft_delete(self, user_id: int) -> bool:
        """Mark a live user deleted. Returns False if missing or already deleted."""
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update()
                .where((users.c.id == user_id) & (users.c.is_deleted == 0))
                .values(is_deleted=1, deleted_at=_now_iso())
            )
        return result.rowcount > 0

    def restore(self, user_id: int) -> bool:
        """Undo soft_delete(). Raises IntegrityError if the email was re-registered meanwhile."""
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update()
                .where((users.c.id == user_id) & (users.c.is_deleted == 1))
                .values(is_deleted=0, deleted_at=None)
            )
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def seed_system_roles(self, role_permissions: Mapping[str, Iterable[str]]) -> None:
        """Insert any missing system role definitions.

        Idempotent -- existing rows are left alone so edits made through role
        management survive restarts. The lowest role is protected.
        """
        with self.engine.begin() as conn:
            existing = {row.slug for row in conn.execute(select(roles.c.slug))}
            for slug in self.hierarchy.system_roles:
                if slug in existing:
                    continue
                perms = validate_permissions(role_permissions.get(slug, ()))
                conn.execute(
                    roles.insert().values(
                        slug=slug,
                        description=f"System role: {slug}",
                        permissions=json.dumps(perms),
                        is_protected=1 if slug == self.hierarchy.default_role else 0,
                    )
                )

    def save_role(self, role: Role) -> None:
        """Create or replace a role definition. Protected roles are immutable."""
        perms = validate_permissions(role.permissions)
        with self.engine.begin() as conn:
            row = conn.execute(roles.select().where(roles.c.slug == role.slug)).fetchone()
            if row is None:
                conn.execute(
                    roles.insert().values(
                        slug=role.slug,
                        description=role.description,
                        permissions=json.dumps(perms),
                        is_protected=1 if role.is_protected else 0,
                    )
                )
                return
            if row.is_protected:
                raise ProtectedRole()
            conn.execute(
                roles.update()
                .where(roles.c.slug == role.slug)
                .values(description=role.description, permissions=json.dumps(perms))
            )

    def get_role(self, slug: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(roles.select().where(roles.c.slug == slug)).fetchone()
        return _row_to_role(row, self.hierarchy) if row is not None else None

    def get_role_permissions(self, slug: str) -> list[str]:
        """Permission list declared by a role; empty for unknown roles."""
        role = self.get_role(slug)
        return role.permissions if role is not None else []

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(roles.select().order_by(roles.c.slug)).fetchall()
        return [_row_to_role(r, self.hierarchy) for r in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _hydrate(self, conn: Connection, row) -> User | None:
        if row is None:
            return None
        linked = conn.execute(
            select(user_identities.c.provider, user_identities.c.external_id).where(
                user_identities.c.user_id == row.id
            )
        ).fetchall()
        return _row_to_user(row, {r.provider: r.external_id for r in linked})


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, linked_providers: dict[str, str]) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=row.role,
        permissions=json.loads(row.permissions or "[]"),
        linked_providers=linked_providers,
        is_verified=bool(row.is_verified),
        is_deleted=bool(row.is_deleted),
        deleted_at=_parse_iso(row.deleted_at),
        created_at=_parse_iso(row.created_at),
        last_login=_parse_iso(row.last_login),
    )


def _row_to_role(row, hierarchy: RoleHierarchy) -> Role:
    return Role(
        slug=row.slug,
        description=row.description,
        permissions=json.loads(row.permissions or "[]"),
        is_protected=bool(row.is_protected),
        level=hierarchy.level(row.slug),
    )
