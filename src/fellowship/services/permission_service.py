"""Permission checking: pure functions with no state or I/O.

This is the ONE place where permission rules are defined. Every other
component (caches, gate, UI helpers) calls into it.

Design:
    - Global capabilities are plain strings (``manage_users``, ``view_groups``…)
      held in ``Identity.permissions``.
    - Role ``admin`` passes every capability check and every resource check.
    - Group actions are authorized by the caller's membership role in the
      group, looked up in ``_ACTION_ROLES``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from ..exceptions import PermissionDeniedError
from ..schemas import Event, Group, GroupMember, Identity

CHECK_IN_STAFF_ROLE = "check_in_staff"
GROUP_MANAGER_ROLE = "group_manager"


class GroupAction(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    ADD_MEMBER = "addMember"
    REMOVE_MEMBER = "removeMember"
    CREATE_SUBGROUP = "createSubgroup"
    UPDATE_SUBGROUP = "updateSubgroup"
    DELETE_SUBGROUP = "deleteSubgroup"


# Action → group-membership roles allowed to perform it.
# VIEW is handled separately: public groups are open to anyone.
_ACTION_ROLES: dict[GroupAction, set[str]] = {
    GroupAction.VIEW: {"admin", "moderator", "member"},
    GroupAction.EDIT: {"admin", "moderator"},
    GroupAction.DELETE: {"admin"},
    GroupAction.ADD_MEMBER: {"admin", "moderator"},
    GroupAction.REMOVE_MEMBER: {"admin", "moderator"},
    GroupAction.CREATE_SUBGROUP: {"admin", "moderator"},
    GroupAction.UPDATE_SUBGROUP: {"admin", "moderator"},
    GroupAction.DELETE_SUBGROUP: {"admin"},
}

# Wording used in "You do not have permission to …" messages.
_ACTION_PHRASES: dict[GroupAction, str] = {
    GroupAction.VIEW: "view this group",
    GroupAction.EDIT: "edit this group",
    GroupAction.DELETE: "delete this group",
    GroupAction.ADD_MEMBER: "add members to this group",
    GroupAction.REMOVE_MEMBER: "remove members from this group",
    GroupAction.CREATE_SUBGROUP: "create subgroups in this group",
    GroupAction.UPDATE_SUBGROUP: "update subgroups in this group",
    GroupAction.DELETE_SUBGROUP: "delete subgroups in this group",
}

PUBLIC_VISIBILITY = "public"


def check_permission(identity: Optional[Identity], permission: str) -> bool:
    """Check whether *identity* holds the capability *permission*.

    Admins pass every check. Everyone else needs *permission* in their
    explicit permission set. No identity means no access.
    """
    if identity is None:
        return False
    if identity.is_admin:
        return True
    return permission in (identity.permissions or set())


def _membership(identity: Identity, group: Group) -> Optional[GroupMember]:
    return group.membership_for(identity.id)


def has_resource_permission(
    identity: Optional[Identity],
    action: GroupAction | str,
    group: Group,
) -> bool:
    """Check whether *identity* may perform *action* on *group*.

    Args:
        identity: The live identity, or None.
        action: A ``GroupAction`` or its string value (e.g. ``"addMember"``).
        group: The group the action targets. For subgroup and member
               operations this is the parent group.

    Returns:
        True if permitted, False otherwise. Unknown actions are denied.
    """
    if identity is None:
        return False
    if identity.is_admin:
        return True

    try:
        action = GroupAction(action)
    except ValueError:
        return False

    membership = _membership(identity, group)
    if membership is not None and membership.role == "admin":
        return True

    if action is GroupAction.VIEW and group.visibility_type == PUBLIC_VISIBILITY:
        return True

    if membership is None:
        return False
    return membership.role in _ACTION_ROLES[action]


def require_resource_permission(
    identity: Optional[Identity],
    action: GroupAction | str,
    group: Group,
) -> None:
    """Raise ``PermissionDeniedError`` unless *identity* may perform *action*."""
    if not has_resource_permission(identity, action, group):
        try:
            phrase = _ACTION_PHRASES[GroupAction(action)]
        except ValueError:
            phrase = f"{action} this group"
        raise PermissionDeniedError(phrase)


def is_group_member(identity: Optional[Identity], group: Optional[Group]) -> bool:
    if identity is None or group is None:
        return False
    return _membership(identity, group) is not None


def get_user_group_role(identity: Optional[Identity], group: Optional[Group]) -> Optional[str]:
    """Return the identity's role inside *group*, or None when not a member."""
    if identity is None or group is None:
        return None
    membership = _membership(identity, group)
    return membership.role if membership else None


def can_manage_groups(identity: Optional[Identity]) -> bool:
    return identity is not None and identity.role in ("admin", GROUP_MANAGER_ROLE)


def can_check_in(identity: Optional[Identity], event: Event) -> bool:
    """Check-in needs role admin or check_in_staff, or a check-in in-charge slot.

    In-charge entries are normalized to plain ids by the Event schema, so
    the comparison here is between canonical id strings.
    """
    if identity is None:
        return False
    if identity.role in ("admin", CHECK_IN_STAFF_ROLE):
        return True
    return identity.id in event.check_in_in_charge_ids
