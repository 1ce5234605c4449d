"""
Directory Realm
===============
Authenticates users against an LDAP directory and resolves their roles.

Public operations never raise directory errors: a failure is logged and the
caller gets None. A transient directory failure discards the connection
(and drains the pool) and the operation is retried once on a fresh one.

Example:
    realm = DirectoryRealm(load_settings())
    realm.start()
    principal = realm.authenticate("jdoe", "secret")
    if principal and principal.has_role("admins"):
        ...
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

from directory_realm.client import (
    AUTHENTICATION_NAME_GSSAPI,
    SASL_CREDENTIALS,
    SASL_QOP,
    SASL_SERVER_AUTHENTICATION,
    SECURITY_AUTHENTICATION,
    Connector,
    restore_environment_parameter,
)
from directory_realm.config import RealmSettings, load_settings
from directory_realm.connections import ConnectionHandle, ConnectionManager
from directory_realm.credentials import CredentialMatcher, CredentialVerifier, resolve_credential_matcher
from directory_realm.errors import InvalidNameSyntaxError, TransientDirectoryError
from directory_realm.models import Principal
from directory_realm.roles import RoleResolver
from directory_realm.users import UserResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures that earn one retry on a fresh connection
RETRYABLE_ERRORS = (TransientDirectoryError, AttributeError)

DELEGATION_KEYS = (SECURITY_AUTHENTICATION, SASL_SERVER_AUTHENTICATION, SASL_QOP, SASL_CREDENTIALS)


class DirectoryRealm:
    """LDAP-backed authentication and role lookup."""

    def __init__(self, settings: Optional[RealmSettings] = None, connector: Optional[Connector] = None,
                 credential_matcher: Optional[CredentialMatcher] = None):
        settings = settings if settings is not None else load_settings()
        self._explicit_matcher = credential_matcher
        self.matcher = credential_matcher or resolve_credential_matcher(settings.credential_matcher)
        self.connections = ConnectionManager(settings, connector=connector)

    @property
    def settings(self) -> RealmSettings:
        return self.connections.settings

    def start(self) -> None:
        """Open the first connection eagerly. Failure is logged only."""
        self.connections.start()

    def stop(self) -> None:
        self.connections.shutdown()

    def is_available(self) -> bool:
        return self.connections.is_available()

    def reconfigure(self, settings: RealmSettings) -> ConnectionHandle:
        """
        Apply a new settings snapshot.

        Raises:
            ConfigurationError: if the snapshot is unusable (active settings kept)
        """
        matcher = self._explicit_matcher or resolve_credential_matcher(settings.credential_matcher)
        handle = self.connections.reconfigure(settings)
        self.matcher = matcher
        return handle

    def authenticate(self, username: Optional[str], credentials: Optional[str]) -> Optional[Principal]:
        """
        Authenticate a username/credential pair.

        Returns:
            Principal with roles, or None if not authenticated for any reason
        """
        if not username or not credentials:
            logger.debug("Username or credentials empty, not authenticated")
            return None

        principal = self._run(lambda handle: self._authenticate(handle, username, credentials), "authentication")
        if principal is not None:
            logger.info(f"Authenticated {username} with {len(principal.roles)} roles")
        else:
            logger.info(f"Authentication failed for {username}")
        return principal

    def _authenticate(self, handle: ConnectionHandle, username: str, credentials: str) -> Optional[Principal]:
        users = UserResolver(handle)
        verifier = CredentialVerifier(handle, self.matcher)
        roles = RoleResolver(handle)

        patterns = handle.user_pattern_templates
        if patterns is None:
            user = users.get_user(username, credentials)
            if user is None:
                return None
            if not verifier.verify(user, credentials):
                return None
            return Principal(username, roles.get_roles(user))

        # Entries are only known to exist when attributes were read for them
        entry_read = bool(users.attribute_ids())
        for index in range(len(patterns)):
            try:
                user = users.get_user(username, credentials, index)
                if user is None:
                    continue
                if verifier.verify(user, credentials):
                    return Principal(username, roles.get_roles(user))
            except InvalidNameSyntaxError as e:
                logger.warning(f"Invalid name for user {username} with pattern {index}: {e}")
                continue
            if entry_read:
                return None
        return None

    def get_password(self, username: str) -> Optional[str]:
        """Stored password of a user; None unless user_password is configured."""
        if self.settings.user_password is None:
            return None

        def lookup(handle: ConnectionHandle) -> Optional[str]:
            user = UserResolver(handle).find_user(username)
            return user.password if user is not None else None

        return self._run(lookup, "password lookup")

    def get_principal(self, username: str, gss_credential: Any = None) -> Optional[Principal]:
        """
        Principal for an already-authenticated user (e.g. via SPNEGO).

        With a delegated GSS credential (and use_delegated_credential), the
        lookups run bound with that credential over GSSAPI.
        """
        if not username:
            return None
        return self._run(lambda handle: self._principal(handle, username, gss_credential), "principal lookup")

    def _principal(self, handle: ConnectionHandle, username: str, gss_credential: Any) -> Optional[Principal]:
        connection = handle.connection
        delegated = gss_credential is not None and handle.settings.use_delegated_credential
        preserved = connection.environment

        if delegated:
            connection.add_to_environment(SECURITY_AUTHENTICATION, AUTHENTICATION_NAME_GSSAPI)
            connection.add_to_environment(SASL_SERVER_AUTHENTICATION, "true")
            connection.add_to_environment(SASL_QOP, handle.settings.spnego_delegation_qop)
            connection.add_to_environment(SASL_CREDENTIALS, gss_credential)
        try:
            user = UserResolver(handle).find_user(username)
            roles = RoleResolver(handle).get_roles(user) if user is not None else None
        finally:
            if delegated:
                for key in DELEGATION_KEYS:
                    restore_environment_parameter(connection, key, preserved)

        if user is None:
            return None
        return Principal(user.username, roles, gss_credential)

    def _run(self, operation: Callable[[ConnectionHandle], T], description: str) -> Optional[T]:
        try:
            try:
                with self.connections.connection() as handle:
                    return operation(handle)
            except RETRYABLE_ERRORS as e:
                logger.info(f"Directory {description} failed, retrying on a new connection: {e}")
                with self.connections.connection() as handle:
                    return operation(handle)
        except Exception as e:
            logger.error(f"Directory {description} failed: {e}", exc_info=True)
            return None
