"""
User Resolution
===============
Locates a user entry either by substituting the username into a DN pattern
or by searching below user_base with the user_search filter.
"""

from __future__ import annotations

import logging
from contextlib import closing
from typing import List, Optional

from directory_realm.client import SearchControls
from directory_realm.connections import ConnectionHandle
from directory_realm.errors import DirectoryAuthenticationError, NameNotFoundError, PartialResultError
from directory_realm.escaping import attribute_value_escape, filter_escape
from directory_realm.models import User, attribute_value, attribute_values
from directory_realm.names import distinguished_name

logger = logging.getLogger(__name__)


class UserResolver:
    """Resolves usernames to User entries over one connection handle."""

    def __init__(self, handle: ConnectionHandle):
        self.handle = handle
        self.settings = handle.settings

    def attribute_ids(self) -> List[str]:
        """Attributes to read for a user entry, empty if none are configured."""
        return [
            attr for attr in (
                self.settings.user_password,
                self.settings.user_role_name,
                self.settings.user_role_attribute,
            ) if attr is not None
        ]

    def get_user(self, username: str, credentials: Optional[str] = None, pattern_index: int = -1) -> Optional[User]:
        """
        Resolve a user.

        Args:
            username: Name presented by the client
            credentials: Presented credential, used for search-as-user binds
                and as the User password when user_password is not set
            pattern_index: DN pattern to try; -1 to search

        Returns:
            The User, or None if not found (or ambiguous)
        """
        attr_ids = self.attribute_ids()
        patterns = self.handle.user_pattern_templates

        if patterns is not None and pattern_index >= 0:
            user = self.resolve_by_pattern(username, credentials, attr_ids, pattern_index)
            if user is not None:
                logger.debug(f"Found user by pattern [{user}]")
        elif self.settings.user_search_as_user:
            with self.handle.bound_as(username, credentials):
                user = self.resolve_by_search(username, attr_ids)
        else:
            user = self.resolve_by_search(username, attr_ids)

        if user is not None and self.settings.user_password is None and credentials is not None:
            # Keep the presented credential so roles can be searched as the user
            user = user.with_password(credentials)

        return user

    def find_user(self, username: str) -> Optional[User]:
        """
        Resolve a user without a presented credential: by search when
        user_search is set, otherwise through each DN pattern in order.
        """
        patterns = self.handle.user_pattern_templates
        if self.handle.user_search_template is not None or patterns is None:
            return self.get_user(username)
        for index in range(len(patterns)):
            user = self.get_user(username, pattern_index=index)
            if user is not None:
                return user
        return None

    def resolve_by_pattern(self, username: str, credentials: Optional[str],
                           attr_ids: List[str], pattern_index: int) -> Optional[User]:
        """
        Build the DN from one pattern and read the entry.

        When the service identity is refused access, the read is retried bound
        as the user's own DN with the presented credential.
        """
        patterns = self.handle.user_pattern_templates
        if username is None or patterns is None or pattern_index >= len(patterns):
            return None

        dn = patterns[pattern_index].format([attribute_value_escape(username)])
        try:
            return self._user_by_dn(username, attr_ids, dn)
        except DirectoryAuthenticationError:
            if credentials is None:
                raise
            logger.debug(f"Service identity cannot read {dn}, retrying bound as the user")
            with self.handle.bound_as(dn, credentials):
                return self._user_by_dn(username, attr_ids, dn)

    def _user_by_dn(self, username: str, attr_ids: List[str], dn: str) -> Optional[User]:
        if not attr_ids:
            return User(username, dn)

        try:
            attrs = self.handle.connection.get_attributes(dn, attr_ids)
        except NameNotFoundError:
            return None
        if attrs is None:
            return None

        return self._build_user(username, dn, attrs)

    def _build_user(self, username: str, dn: str, attrs) -> User:
        password = None
        if self.settings.user_password is not None:
            password = attribute_value(self.settings.user_password, attrs)

        user_role_id = None
        if self.settings.user_role_attribute is not None:
            user_role_id = attribute_value(self.settings.user_role_attribute, attrs)

        roles = []
        if self.settings.user_role_name is not None:
            roles = attribute_values(self.settings.user_role_name, attrs)

        return User(username, dn, password, roles, user_role_id)

    def resolve_by_search(self, username: str, attr_ids: List[str]) -> Optional[User]:
        """
        Search for exactly one entry matching user_search.

        Returns None when nothing matches or more than one entry matches.
        """
        template = self.handle.user_search_template
        if username is None or template is None:
            return None

        search_filter = template.format([filter_escape(username)])
        controls = SearchControls(
            subtree=self.settings.user_subtree,
            size_limit=self.settings.size_limit,
            time_limit=self.settings.time_limit,
            attributes=attr_ids,
        )
        connection = self.handle.connection

        with closing(connection.search(self.settings.user_base, search_filter, controls)) as results:
            first = self._next_result(results)
            if first is None:
                return None

            if self._next_result(results) is not None:
                logger.info(f"Username {username} has multiple entries in the directory")
                return None

        dn = distinguished_name(connection, self.settings.user_base, first,
                                self.settings.force_dn_hex_escape)
        logger.debug(f"  entry found for {username} with dn {dn}")

        if first.attributes is None:
            return None
        return self._build_user(username, dn, first.attributes)

    def _next_result(self, results):
        try:
            return next(results, None)
        except PartialResultError:
            if not self.settings.ad_compat:
                raise
            return None
