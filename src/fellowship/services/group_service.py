"""Groups resource cache.

Holds the client's copies of group data and is the only writer of them.
Every operation follows the same shape:

    loading on -> API call(s) -> reconcile cache | record error -> loading off

Reads keep the previous snapshot when they fail. Writes return the new
entity (or True) on success and None/False when the API call fails.
Permission and validation failures are raised so the caller can show
them. Simple field updates replace the entity by id in every slice;
anything touching members or subgroups re-fetches the parent group.
"""

import logging
from typing import Any, Dict, List, Optional

from ..api_client import FellowshipClient
from ..core.config import settings
from ..exceptions import FellowshipError, PermissionDeniedError
from ..schemas import Group, GroupMember, GroupStats
from . import permission_service
from .base import ResourceCache
from .permission_service import GroupAction
from .session import SessionStore
from .timers import PeriodicTask, ViewScope
from .validation import raise_for_errors, validate_group_data, validate_member_role

logger = logging.getLogger(__name__)


class GroupCache(ResourceCache):
    """Per-session cache of groups for the live identity."""

    name = "groups"

    def __init__(self, api: FellowshipClient, session: SessionStore) -> None:
        self.user_groups: List[Group] = []
        self.all_groups: List[Group] = []
        self.current_group: Optional[Group] = None
        self.current_subgroup: Optional[Group] = None
        self.stats = GroupStats()
        super().__init__(api, session)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _authorize(self, group_id: str, action: GroupAction) -> Group:
        """Fetch the latest copy of *group_id* and check *action* against it."""
        group = await self._api.groups.get_one(group_id)
        permission_service.require_resource_permission(self.identity, action, group)
        return group

    def _replace_everywhere(self, group: Group) -> None:
        self.all_groups = [group if g.id == group.id else g for g in self.all_groups]
        self.user_groups = [group if g.id == group.id else g for g in self.user_groups]
        if self.current_group is not None and self.current_group.id == group.id:
            self.current_group = group

    def _remove_everywhere(self, group_id: str) -> None:
        self.all_groups = [g for g in self.all_groups if g.id != group_id]
        self.user_groups = [g for g in self.user_groups if g.id != group_id]
        if self.current_group is not None and self.current_group.id == group_id:
            self.current_group = None

    async def _reload_group(self, group_id: str, generation: int) -> None:
        """Re-fetch a parent group after a nested mutation."""
        try:
            group = await self._api.groups.get_one(group_id)
        except FellowshipError as e:
            logger.warning("Could not reload group %s: %s", group_id, e.message)
            return
        if self._current(generation):
            self._replace_everywhere(group)

    def clear(self) -> None:
        """Forget everything. Runs on logout."""
        self.user_groups = []
        self.all_groups = []
        self.current_group = None
        self.current_subgroup = None
        self.stats = GroupStats()
        self.error = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_user_groups(self) -> bool:
        if not self._session.is_live:
            return False
        with self._operation("fetch_user_groups") as generation:
            try:
                groups = await self._api.groups.get_user_groups()
            except FellowshipError as e:
                self._fail("Failed to fetch your groups", e)
                return False
            if not self._current(generation):
                return False
            self.user_groups = groups
            self.error = None
            return True

    async def fetch_all_groups(self, filters: Optional[Dict[str, Any]] = None) -> bool:
        with self._operation("fetch_all_groups") as generation:
            try:
                groups = await self._api.groups.get_all(filters)
            except FellowshipError as e:
                self._fail("Failed to fetch groups", e)
                return False
            if not self._current(generation):
                return False
            self.all_groups = groups
            self.error = None
            return True

    async def fetch_admin_groups(self) -> bool:
        """Fill the all-groups slice from the admin management endpoint."""
        with self._operation("fetch_admin_groups") as generation:
            try:
                groups = await self._api.groups.get_admin_groups()
            except FellowshipError as e:
                self._fail("Failed to fetch groups", e)
                return False
            if not self._current(generation):
                return False
            self.all_groups = groups
            self.error = None
            return True

    async def fetch_group_stats(self) -> bool:
        with self._operation("fetch_group_stats") as generation:
            try:
                stats = await self._api.groups.get_stats()
            except FellowshipError as e:
                self._fail("Failed to fetch group statistics", e)
                return False
            if not self._current(generation):
                return False
            self.stats = stats
            self.error = None
            return True

    async def fetch_group(self, group_id: str) -> Optional[Group]:
        """Load one group and focus it.

        Raises:
            PermissionDeniedError: The identity may not view the group. The
                focused group is left as it was.
        """
        with self._operation("fetch_group") as generation:
            try:
                group = await self._api.groups.get_one(group_id)
                if not self._current(generation):
                    return None
                permission_service.require_resource_permission(self.identity, GroupAction.VIEW, group)
            except PermissionDeniedError as e:
                self._deny(e)
                raise
            except FellowshipError as e:
                self._fail("Failed to fetch group details", e)
                return None
            self.current_group = group
            self.error = None
            return group

    async def get_group_members(self, group_id: str) -> List[GroupMember]:
        try:
            return await self._api.groups.get_members(group_id)
        except FellowshipError as e:
            logger.warning("Error fetching members for group %s: %s", group_id, e.message)
            return []

    async def get_subgroups(self, group_id: str) -> List[Group]:
        try:
            return await self._api.groups.get_subgroups(group_id)
        except FellowshipError as e:
            logger.warning("Error fetching subgroups for group %s: %s", group_id, e.message)
            return []

    # ------------------------------------------------------------------
    # Group writes
    # ------------------------------------------------------------------

    async def create_group(self, data: Any) -> Optional[Group]:
        """Create a group and add it to the all-groups and user-groups slices.

        Raises:
            ValidationError: The name is empty. No request is sent.
        """
        raise_for_errors(validate_group_data(data))
        with self._operation("create_group") as generation:
            try:
                group = await self._api.groups.create(data)
            except PermissionDeniedError as e:
                self._deny(e)
                raise
            except FellowshipError as e:
                self._fail("Failed to create group", e)
                return None
            if not self._current(generation):
                return None
            self.all_groups = [*self.all_groups, group]
            self.user_groups = [*self.user_groups, group]
            self.error = None
            logger.info("Group created", extra={"group_id": group.id})
            return group

    async def update_group(self, group_id: str, data: Any) -> Optional[Group]:
        if isinstance(data, dict) and "name" in data:
            raise_for_errors(validate_group_data(data))
        with self._operation("update_group") as generation:
            try:
                await self._authorize(group_id, GroupAction.EDIT)
                updated = await self._api.groups.update(group_id, data)
            except PermissionDeniedError as e:
                self._deny(e)
                raise
            except FellowshipError as e:
                self._fail("Failed to update group", e)
                return None
            if not self._current(generation):
                return None
            self._replace_everywhere(updated)
            self.error = None
            return updated

    async def delete_group(self, group_id: str) -> bool:
        with self._operation("delete_group") as generation:
            try:
                await self._authorize(group_id, GroupAction.DELETE)
                await self._api.groups.delete(group_id)
            except PermissionDeniedError as e:
                self._deny(e)
                raise
            except FellowshipError as e:
                self._fail("Failed to delete group", e)
                return False
            if not self._current(generation):
                return False
            self._remove_everywhere(group_id)
            self.error = None
            logger.info("Group deleted", extra={"group_id": group_id})
            return True

    async def join_group(self, group_id: str) -> bool:
        identity = self.identity
        if identity is None:
            return False
        with self._operation("join_group") as generation:
            try:
                await self._api.groups.add_member(group_id, identity.id, "member")
            except FellowshipError as e:
                self._fail("Failed to join group", e)
                return False
            if not self._current(generation):
                return False
            await self.fetch_user_groups()
            if self.current_group is not None and self.current_group.id == group_id:
                await self._reload_group(group_id, generation)
            self.error = None
            return True

    async def leave_group(self, group_id: str) -> bool:
        identity = self.identity
        if identity is None:
            return False
        with self._operation("leave_group") as generation:
            try:
                await self._api.groups.remove_member(group_id, identity.id)
            except FellowshipError as e:
                self._fail("Failed to leave group", e)
                return False
            if not self._current(generation):
                return False
            await self.fetch_user_groups()
            if self.current_group is not None and self.current_group.id == group_id:
                await self._reload_group(group_id, generation)
            self.error = None
            return True

    # ------------------------------------------------------------------
    # Members and subgroups (checked against the parent group)
    # ------------------------------------------------------------------

    async def add_group_member(self, group_id: str, member_id: str, role: str = "member") -> bool:
        raise_for_errors(validate_member_role(role))
        with self._operation("add_group_member") as generation:
            try:
                await self._authorize(group_id, GroupAction.ADD_MEMBER)
                await self._api.groups.add_member(group_id, member_id, role)
            except PermissionDeniedError as e:
                self._deny(e)
                raise
            except FellowshipError as e:
                self._fail("Failed to add member", e)
                return False
            await self._reload_group(group_id, generation)
            return True

    async def remove_group_member(self, group_id: str, member_id: str) -> bool:
        with self._operation("remove_group_member") as generation:
            try:
                await self._authorize(group_id, GroupAction.REMOVE_MEMBER)
                await self._api.groups.remove_member(group_id, member_id)
            except PermissionDeniedError as e:
                self._deny(e)
                raise
            except FellowshipError as e:
                self._fail("Failed to remove member", e)
                return False
            await self._reload_group(group_id, generation)
            return True

    async def create_subgroup(self, group_id: str, data: Any) -> Optional[Group]:
        raise_for_errors(validate_group_data(data))
        with self._operation("create_subgroup") as generation:
            try:
                await self._authorize(group_id, GroupAction.CREATE_SUBGROUP)
                subgroup = await self._api.groups.create_subgroup(group_id, data)
            except PermissionDeniedError as e:
                self._deny(e)
                raise
            except FellowshipError as e:
                self._fail("Failed to create subgroup", e)
                return None
            await self._reload_group(group_id, generation)
            return subgroup if self._current(generation) else None

    async def update_subgroup(self, group_id: str, subgroup_id: str, data: Any) -> Optional[Group]:
        with self._operation("update_subgroup") as generation:
            try:
                await self._authorize(group_id, GroupAction.UPDATE_SUBGROUP)
                subgroup = await self._api.groups.update_subgroup(group_id, subgroup_id, data)
            except PermissionDeniedError as e:
                self._deny(e)
                raise
            except FellowshipError as e:
                self._fail("Failed to update subgroup", e)
                return None
            if not self._current(generation):
                return None
            if self.current_subgroup is not None and self.current_subgroup.id == subgroup_id:
                self.current_subgroup = subgroup
            await self._reload_group(group_id, generation)
            return subgroup

    async def delete_subgroup(self, group_id: str, subgroup_id: str) -> bool:
        with self._operation("delete_subgroup") as generation:
            try:
                await self._authorize(group_id, GroupAction.DELETE_SUBGROUP)
                await self._api.groups.delete_subgroup(group_id, subgroup_id)
            except PermissionDeniedError as e:
                self._deny(e)
                raise
            except FellowshipError as e:
                self._fail("Failed to delete subgroup", e)
                return False
            if not self._current(generation):
                return False
            if self.current_subgroup is not None and self.current_subgroup.id == subgroup_id:
                self.current_subgroup = None
            await self._reload_group(group_id, generation)
            return True

    def select_subgroup(self, subgroup: Optional[Group]) -> None:
        self.current_subgroup = subgroup

    # ------------------------------------------------------------------
    # Helpers for the live identity
    # ------------------------------------------------------------------

    def is_group_member(self, group: Optional[Group]) -> bool:
        return permission_service.is_group_member(self.identity, group)

    def get_user_group_role(self, group: Optional[Group]) -> Optional[str]:
        return permission_service.get_user_group_role(self.identity, group)

    def can_manage_groups(self) -> bool:
        return permission_service.can_manage_groups(self.identity)

    def watch_groups(
        self,
        scope: ViewScope,
        filters: Optional[Dict[str, Any]] = None,
        interval: Optional[float] = None,
    ) -> PeriodicTask:
        """Keep the all-groups slice fresh while *scope* is open."""

        async def refresh() -> None:
            await self.fetch_all_groups(filters)

        return scope.every(
            interval or settings.group_list_refresh_seconds,
            refresh,
            name="groups",
        )
