"""Role and permission resolution within an organization.

The primary role is a single display label kept for older clients.
Authorization checks use the full permission list.
"""

from typing import Iterable, Sequence
from uuid import UUID

from auth.database import AuthDatabase
from auth.types import ResolvedRoles

# Most-privileged first
ROLE_PRIORITY = (
    "district",
    "unitadmin",
    "leader",
    "finance",
    "equipment",
    "administration",
    "parent",
    "demoadmin",
    "demoparent",
    "admin",
    "animation",
)

DEFAULT_ROLE = "parent"

# Registration form values accepted for the staff role
ANIMATION_ALIASES = frozenset({"animation", "animator", "animateur"})


def resolve_primary_role(role_names: Iterable[str], priority: Sequence[str] = ROLE_PRIORITY) -> str:
    """
    Pick one role to present for a set of role names.

    Walks the priority list and returns the first role the user holds. A user
    holding only roles outside the list gets the alphabetically first of them,
    and a user with no roles gets DEFAULT_ROLE.
    """
    held = set(role_names)
    for role in priority:
        if role in held:
            return role
    if held:
        return sorted(held)[0]
    return DEFAULT_ROLE


def normalize_requested_role(user_type: str | None) -> str:
    """Map a registration user_type to the role actually granted."""
    if user_type and user_type.strip().lower() in ANIMATION_ALIASES:
        return "animation"
    return DEFAULT_ROLE


class RoleResolver:
    """Resolve a user's roles, permissions and primary role."""

    def __init__(self, auth_db: AuthDatabase, priority: Sequence[str] = ROLE_PRIORITY):
        self._db = auth_db
        self._priority = priority

    def resolve(self, user_id: UUID, organization_id: int) -> ResolvedRoles:
        role_names, permissions = self._db.find_roles_and_permissions(user_id, organization_id)
        role_names = sorted(set(role_names))
        return ResolvedRoles(
            role_names=role_names,
            permissions=sorted(set(permissions)),
            primary_role=resolve_primary_role(role_names, self._priority),
        )
