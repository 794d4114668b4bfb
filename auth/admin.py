"""
auth/admin.py -- Hierarchy-checked user administration.

Every operation takes the acting User and checks it against the target with
the role hierarchy before touching anything:

  reads   can_view(actor, target)     -- peers may see each other
  writes  can_modify(actor, target)   -- strictly higher role required,
          can_manage(actor, target)   -- and custom-role targets are top-only
  roles   can_manage(actor, new_role) -- and the top role is never assignable
  grants  only permissions the actor holds; the wildcard only from the top role

Writes that change what a user may do (role, status, direct grants) end every
session the target holds, so the new rights apply from their next sign-in.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.accounts import cascade_invalidation
from auth.errors import (
    CannotAccessHigherRole,
    CannotGrantPermission,
    CannotModifySelf,
    EmailAlreadyRegistered,
    InvalidRoleAssignment,
    RoleNotFound,
    UserNotFound,
)
from auth.models import User
from auth.permissions import WILDCARD_PERMISSION, PermissionResolver, validate_permissions
from auth.roles import DEFAULT_HIERARCHY, RoleHierarchy
from auth.sessions import SessionStore
from auth.store import UserStore

logger = logging.getLogger("identity.auth.admin")


class AdminService:
    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        hierarchy: RoleHierarchy = DEFAULT_HIERARCHY,
        resolver: PermissionResolver | None = None,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.hierarchy = hierarchy
        self.resolver = resolver or PermissionResolver(users.get_role_permissions)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _target(self, user_id: int) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFound()
        return user

    def _writable_target(self, actor: User, user_id: int) -> User:
        if actor.id == user_id:
            raise CannotModifySelf()
        target = self._target(user_id)
        if not (
            self.hierarchy.can_modify(actor.role, target.role) and self.hierarchy.can_manage(actor.role, target.role)
        ):
            raise CannotAccessHigherRole()
        return target

    def _check_grantable(self, actor: User, permission: str) -> None:
        if permission == WILDCARD_PERMISSION and actor.role != self.hierarchy.top_role:
            raise CannotGrantPermission()
        if not self.resolver.user_has_permission(actor, permission):
            raise CannotGrantPermission()

    def _revoke_sessions(self, user_id: int, reason: str) -> int:
        return cascade_invalidation(lambda: self.sessions.invalidate_all_for_user(user_id), reason)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_user(self, actor: User, user_id: int) -> User:
        target = self._target(user_id)
        if actor.id != user_id and not self.hierarchy.can_view(actor.role, target.role):
            raise CannotAccessHigherRole()
        return target

    def update_role(self, actor: User, user_id: int, new_role: str) -> User:
        if actor.id == user_id:
            raise CannotModifySelf()
        if not self.hierarchy.is_valid_role_assignment(new_role):
            raise InvalidRoleAssignment()
        if self.users.get_role(new_role) is None:
            raise RoleNotFound()
        target = self._writable_target(actor, user_id)
        if not self.hierarchy.can_manage(actor.role, new_role):
            raise CannotAccessHigherRole()
        if target.role != new_role:
            self.users.update_user(user_id, role=new_role)
            self._revoke_sessions(user_id, "role change")
            logger.info("user_id=%s changed role of user_id=%s: %s -> %s", actor.id, user_id, target.role, new_role)
        return self._target(user_id)

    def update_status(self, actor: User, user_id: int, active: bool) -> User:
        """Deactivate (soft delete, sign out everywhere) or reactivate an account."""
        target = self._writable_target(actor, user_id)
        if active:
            if target.is_deleted:
                try:
                    self.users.restore(user_id)
                except IntegrityError:
                    # The email was re-registered while the account was deactivated.
                    raise EmailAlreadyRegistered() from None
                logger.info("user_id=%s reactivated user_id=%s", actor.id, user_id)
        elif not target.is_deleted:
            self.users.soft_delete(user_id)
            self._revoke_sessions(user_id, "account deactivation")
            logger.info("user_id=%s deactivated user_id=%s", actor.id, user_id)
        return self._target(user_id)

    def delete_user(self, actor: User, user_id: int) -> None:
        target = self._writable_target(actor, user_id)
        if target.is_deleted:
            raise UserNotFound()
        self.users.soft_delete(user_id)
        self._revoke_sessions(user_id, "account deletion")
        logger.info("user_id=%s deleted user_id=%s", actor.id, user_id)

    def grant_permission(self, actor: User, user_id: int, permission: str) -> User:
        validate_permissions([permission])
        target = self._writable_target(actor, user_id)
        self._check_grantable(actor, permission)
        if permission not in target.permissions:
            self.users.set_permissions(user_id, [*target.permissions, permission])
            self._revoke_sessions(user_id, "permission grant")
            logger.info("user_id=%s granted %s to user_id=%s", actor.id, permission, user_id)
        return self._target(user_id)

    def revoke_permission(self, actor: User, user_id: int, permission: str) -> User:
        target = self._writable_target(actor, user_id)
        if permission in target.permissions:
            self.users.set_permissions(user_id, [p for p in target.permissions if p != permission])
            self._revoke_sessions(user_id, "permission revoke")
            logger.info("user_id=%s revoked %s from user_id=%s", actor.id, permission, user_id)
        return self._target(user_id)
