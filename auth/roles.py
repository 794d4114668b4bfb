"""
auth/roles.py -- Static role hierarchy.

The hierarchy is an immutable value built once at import time and passed to
the services that need it. It is never mutated after startup, so there is no
lifecycle to manage and no locking.

Levels:
    user     1
    support  2
    manager  3
    admin    4

Any slug outside the table (a custom role created through role management)
has level 0. Every function accepts any string and never raises.

Comparison rules:
    has_minimum_role  level(actual) >= level(required)
    can_manage        custom target -> top role only; else actor >= target
    can_view          top role sees all; custom target -> top only; else actor >= target
    can_modify        actor > target (blocks peers, used for writes)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

SYSTEM_ROLE_LEVELS: Mapping[str, int] = MappingProxyType(
    {
        "user": 1,
        "support": 2,
        "manager": 3,
        "admin": 4,
    }
)


@dataclass(frozen=True)
class RoleHierarchy:
    levels: Mapping[str, int] = field(default_factory=lambda: SYSTEM_ROLE_LEVELS)

    def __post_init__(self) -> None:
        # Freeze a private copy so callers cannot mutate the table afterwards.
        object.__setattr__(self, "levels", MappingProxyType(dict(self.levels)))

    @property
    def system_roles(self) -> tuple[str, ...]:
        """System role slugs, lowest privilege first."""
        return tuple(sorted(self.levels, key=self.levels.__getitem__))

    @property
    def top_role(self) -> str:
        return self.system_roles[-1]

    @property
    def default_role(self) -> str:
        return self.system_roles[0]

    @property
    def top_level(self) -> int:
        return self.levels[self.top_role]

    def level(self, role: str) -> int:
        return self.levels.get(role, 0)

    def is_system_role(self, role: str) -> bool:
        return role in self.levels

    def has_minimum_role(self, actual: str, required: str) -> bool:
        return self.level(actual) >= self.level(required)

    def can_manage(self, actor: str, target: str) -> bool:
        target_level = self.level(target)
        if target_level == 0:
            return self.level(actor) == self.top_level
        return self.level(actor) >= target_level

    def can_view(self, actor: str, target: str) -> bool:
        actor_level = self.level(actor)
        if actor_level == self.top_level:
            return True
        target_level = self.level(target)
        if target_level == 0:
            return False
        return actor_level >= target_level

    def can_modify(self, actor: str, target: str) -> bool:
        return self.level(actor) > self.level(target)

    def is_valid_role_assignment(self, new_role: str) -> bool:
        """The top role can only be granted out of band (directly in the database)."""
        return new_role != self.top_role

    def manageable_roles(self, actor: str) -> list[str]:
        actor_level = self.level(actor)
        return [r for r in self.system_roles if self.levels[r] < actor_level]

    def viewable_roles(self, actor: str) -> list[str]:
        actor_level = self.level(actor)
        return [r for r in self.system_roles if self.levels[r] <= actor_level]


DEFAULT_HIERARCHY = RoleHierarchy()
