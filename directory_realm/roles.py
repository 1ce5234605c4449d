"""
Role Resolution
===============
Collects the roles of an authenticated user:

1. values of user_role_name read from the user entry
2. common_role, if configured
3. role_name of every group entry matching role_search below role_base
4. with role_nested, groups whose members include a group found so far,
   repeated until no new group turns up
"""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Dict, Iterator, List, Optional

from directory_realm.client import SearchControls
from directory_realm.connections import ConnectionHandle
from directory_realm.errors import PartialResultError
from directory_realm.escaping import attribute_value_escape, filter_escape, normalize_hex_escapes
from directory_realm.models import SearchResult, User, attribute_value
from directory_realm.names import distinguished_name, name_components

logger = logging.getLogger(__name__)


class RoleResolver:
    """Role lookups over one connection handle."""

    def __init__(self, handle: ConnectionHandle):
        self.handle = handle
        self.settings = handle.settings

    def get_roles(self, user: Optional[User]) -> Optional[List[str]]:
        """
        Return the user's roles, or None for a user without a DN or name.

        Group role names keep the order in which groups were first found.
        """
        if user is None or user.dn is None or user.username is None:
            return None

        roles = list(user.roles)
        if self.settings.common_role is not None:
            roles.append(self.settings.common_role)
        logger.debug(f"  found {len(roles)} user internal roles: {roles}")

        template = self.handle.role_search_template
        if template is None or self.settings.role_name is None:
            return roles

        # Escape for the DN first, then for the filter
        search_filter = template.format([
            filter_escape(user.dn),
            filter_escape(attribute_value_escape(user.username)),
            filter_escape(attribute_value_escape(user.user_role_id)),
        ])
        base = self.role_search_base(user.dn)
        group_map = self._search_groups(user, base, search_filter)

        if self.settings.role_nested:
            group_map = self._close_over_nested_groups(user, base, group_map)

        roles.extend(group_map.values())
        logger.debug(f"  found {len(roles)} roles for {user.username}: {roles}")
        return roles

    def role_search_base(self, dn: str) -> str:
        """
        Search base for roles. {n} placeholders in role_base take the n-th
        component of the user DN, counting from the rightmost.
        """
        template = self.handle.role_base_template
        if template is None:
            return ""
        if template.argument_count == 0:
            return template.format([])
        parts = [normalize_hex_escapes(component) for component in name_components(dn)]
        return template.format(parts)

    def _close_over_nested_groups(self, user: User, base: str, group_map: Dict[str, str]) -> Dict[str, str]:
        template = self.handle.role_search_template
        new_groups = dict(group_map)

        while new_groups:
            new_this_round: Dict[str, str] = {}
            for group_dn, group_name in new_groups.items():
                escaped_name = filter_escape(attribute_value_escape(group_name))
                search_filter = template.format([filter_escape(group_dn), escaped_name, escaped_name])
                logger.debug(f"[NESTED ROLES] searching for groups containing {group_dn}: {search_filter}")

                for dname, name in self._search_groups(user, base, search_filter).items():
                    if dname not in group_map:
                        group_map[dname] = name
                        new_this_round[dname] = name

            new_groups = new_this_round

        return group_map

    def _search_groups(self, user: User, base: str, search_filter: str) -> Dict[str, str]:
        controls = SearchControls(subtree=self.settings.role_subtree, attributes=[self.settings.role_name])
        groups: Dict[str, str] = {}

        logger.debug(f"  searching role base '{base}' for attribute '{self.settings.role_name}' "
                     f"with filter {search_filter}")
        with closing(self._search(user, base, search_filter, controls)) as results:
            try:
                for result in results:
                    if result.attributes is None:
                        continue
                    dname = distinguished_name(self.handle.connection, base, result,
                                               self.settings.force_dn_hex_escape)
                    name = attribute_value(self.settings.role_name, result.attributes)
                    if name is not None and dname is not None:
                        groups[dname] = name
            except PartialResultError:
                if not self.settings.ad_compat:
                    raise

        return groups

    def _search(self, user: User, base: str, search_filter: str, controls: SearchControls) -> Iterator[SearchResult]:
        connection = self.handle.connection
        if self.settings.role_search_as_user:
            with self.handle.bound_as(user.dn, user.password):
                return connection.search(base, search_filter, controls)
        return connection.search(base, search_filter, controls)
