"""
auth/permissions.py -- Permission constants, grammar, and effective-permission resolution.

Permission strings follow resource:action[:scope], e.g. "users:read:all" or
"profile:update:own". The single string "*" is the wildcard and grants every
permission.

A user's effective permissions are the de-duplicated union of the
permissions declared by their role and their direct grants. Resolution is
pure apart from one role lookup, which is injected.

Format validation happens when a permission is granted (see
AdminService.grant_permission and UserStore.seed_system_roles). Checks never
validate -- an unknown string simply does not match.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from auth.errors import InvalidPermission

if TYPE_CHECKING:
    from auth.models import User

WILDCARD_PERMISSION = "*"

PERMISSION_REGEX = re.compile(r"^([a-z-]+:[a-z-]+(:[a-z-]+)?|\*)$")

# ---------------------------------------------------------------------------
# System permissions
# ---------------------------------------------------------------------------

PROFILE_READ_OWN = "profile:read:own"
PROFILE_UPDATE_OWN = "profile:update:own"
PROFILE_DELETE_OWN = "profile:delete:own"

USERS_READ_ALL = "users:read:all"
USERS_LIST_ALL = "users:list:all"
USERS_CREATE_ALL = "users:create:all"
USERS_UPDATE_ALL = "users:update:all"
USERS_DELETE_ALL = "users:delete:all"

ROLES_READ_ALL = "roles:read:all"
ROLES_MANAGE_ALL = "roles:manage:all"

PERMISSIONS_GRANT_ALL = "permissions:grant:all"
PERMISSIONS_REVOKE_ALL = "permissions:revoke:all"

SESSIONS_READ_ALL = "sessions:read:all"
SESSIONS_READ_OWN = "sessions:read:own"
SESSIONS_DELETE_ALL = "sessions:delete:all"
SESSIONS_DELETE_OWN = "sessions:delete:own"

DEFAULT_ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "user": (PROFILE_READ_OWN, PROFILE_UPDATE_OWN),
    "support": (
        PROFILE_READ_OWN,
        PROFILE_UPDATE_OWN,
        USERS_READ_ALL,
        SESSIONS_READ_ALL,
    ),
    "manager": (
        PROFILE_READ_OWN,
        PROFILE_UPDATE_OWN,
        USERS_READ_ALL,
        USERS_UPDATE_ALL,
        SESSIONS_READ_ALL,
        ROLES_READ_ALL,
    ),
    "admin": (WILDCARD_PERMISSION,),
}


# ---------------------------------------------------------------------------
# Grammar
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedPermission:
    resource: str
    action: str
    scope: str | None = None


def is_valid_permission(permission: str) -> bool:
    return bool(PERMISSION_REGEX.match(permission))


def validate_permissions(permissions: Iterable[str]) -> list[str]:
    """Return the permissions as a list, or raise InvalidPermission naming every bad entry."""
    permissions = list(permissions)
    invalid = [p for p in permissions if not is_valid_permission(p)]
    if invalid:
        raise InvalidPermission(invalid)
    return permissions


def parse_permission(permission: str) -> ParsedPermission | None:
    """Split a permission into its parts. Returns None for malformed strings.

    parse_permission("users:read:all") -> ParsedPermission("users", "read", "all")
    parse_permission("*")              -> ParsedPermission("*", "*", None)
    """
    if not is_valid_permission(permission):
        return None
    if permission == WILDCARD_PERMISSION:
        return ParsedPermission(resource="*", action="*")
    parts = permission.split(":")
    return ParsedPermission(
        resource=parts[0],
        action=parts[1],
        scope=parts[2] if len(parts) > 2 else None,
    )


def filter_permissions_by_resource(permissions: Iterable[str], resource: str) -> list[str]:
    """Permissions whose resource part equals resource. The wildcard is excluded."""
    result = []
    for perm in permissions:
        if perm == WILDCARD_PERMISSION:
            continue
        parsed = parse_permission(perm)
        if parsed is not None and parsed.resource == resource:
            result.append(perm)
    return result


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def has_permission(permissions: Collection[str], required: str) -> bool:
    if not permissions:
        return False
    if WILDCARD_PERMISSION in permissions:
        return True
    return required in permissions


def has_any_permission(permissions: Collection[str], required: Iterable[str]) -> bool:
    """OR logic. An empty requirement list is never satisfied."""
    required = list(required)
    if not permissions or not required:
        return False
    if WILDCARD_PERMISSION in permissions:
        return True
    return any(p in permissions for p in required)


def has_all_permissions(permissions: Collection[str], required: Iterable[str]) -> bool:
    """AND logic. An empty requirement list is vacuously satisfied."""
    required = list(required)
    if not required:
        return True
    if not permissions:
        return False
    if WILDCARD_PERMISSION in permissions:
        return True
    return all(p in permissions for p in required)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

RolePermissionLookup = Callable[[str], Iterable[str]]


def compute_effective_permissions(user: User, role_permissions: RolePermissionLookup) -> frozenset[str]:
    """Union of the role's declared permissions and the user's direct grants.

    role_permissions must return an empty iterable for unknown roles.
    """
    return frozenset(role_permissions(user.role)) | frozenset(user.permissions)


def default_role_permissions(role: str) -> tuple[str, ...]:
    """Lookup over DEFAULT_ROLE_PERMISSIONS, for callers without a role store."""
    return DEFAULT_ROLE_PERMISSIONS.get(role, ())


class PermissionResolver:
    """Binds a role lookup (normally UserStore.get_role_permissions) to the resolution rules."""

    def __init__(self, role_permissions: RolePermissionLookup = default_role_permissions) -> None:
        self._role_permissions = role_permissions

    def effective_permissions(self, user: User) -> frozenset[str]:
        return compute_effective_permissions(user, self._role_permissions)

    def user_has_permission(self, user: User, required: str) -> bool:
        return has_permission(self.effective_permissions(user), required)

    def user_has_any(self, user: User, required: Iterable[str]) -> bool:
        return has_any_permission(self.effective_permissions(user), required)

    def user_has_all(self, user: User, required: Iterable[str]) -> bool:
        return has_all_permissions(self.effective_permissions(user), required)
