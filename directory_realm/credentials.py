"""
Credential Verification
=======================
Checks a presented credential either by binding to the directory as the
user or by comparing it with the password attribute read from the entry.
"""

from __future__ import annotations

import hmac
import logging
from typing import Callable, Dict, Optional

from directory_realm.client import (
    AUTHENTICATION_NAME_GSSAPI,
    SECURITY_AUTHENTICATION,
    restore_environment_parameter,
)
from directory_realm.connections import ConnectionHandle
from directory_realm.errors import ConfigurationError, DirectoryAuthenticationError
from directory_realm.models import User

logger = logging.getLogger(__name__)


class CredentialMatcher:
    """Compares a presented credential with a stored one."""

    def matches(self, presented: str, stored: Optional[str]) -> bool:
        raise NotImplementedError


class PlainCredentialMatcher(CredentialMatcher):
    """Stored value is the clear-text credential."""

    def matches(self, presented: str, stored: Optional[str]) -> bool:
        if presented is None or stored is None:
            return False
        return hmac.compare_digest(presented.encode('utf-8'), stored.encode('utf-8'))


CREDENTIAL_MATCHERS: Dict[str, Callable[[], CredentialMatcher]] = {
    "plain": PlainCredentialMatcher,
}


def register_credential_matcher(name: str, factory: Callable[[], CredentialMatcher]) -> None:
    CREDENTIAL_MATCHERS[name] = factory


def resolve_credential_matcher(name: str) -> CredentialMatcher:
    try:
        factory = CREDENTIAL_MATCHERS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown credential matcher '{name}', expected one of: {', '.join(sorted(CREDENTIAL_MATCHERS))}",
            error_code="UNKNOWN_CREDENTIAL_MATCHER",
        ) from None
    return factory()


class CredentialVerifier:
    """Verifies credentials for users resolved over one connection handle."""

    def __init__(self, handle: ConnectionHandle, matcher: CredentialMatcher):
        self.handle = handle
        self.matcher = matcher

    def verify(self, user: User, credentials: str) -> bool:
        """
        Returns:
            True if the credential is valid for the user
        """
        if self.handle.settings.user_password is None:
            validated = self.verify_by_bind(user, credentials)
        else:
            validated = self.verify_by_attribute(user, credentials)

        if validated:
            logger.debug(f"Credentials validated for {user.username}")
        else:
            logger.debug(f"Credentials rejected for {user.username}")
        return validated

    def verify_by_attribute(self, user: User, credentials: str) -> bool:
        if user.password is None:
            return False
        return self.matcher.matches(credentials, user.password)

    def verify_by_bind(self, user: User, credentials: str) -> bool:
        """
        Bind as the user's DN with the presented credential.

        Only an authentication failure means "invalid"; any other directory
        error propagates so the operation can be retried.
        """
        if not credentials or user.dn is None:
            return False

        connection = self.handle.connection
        logger.debug(f"  validating credentials by binding as the user {user.dn}")

        preserved = connection.environment
        self.handle.user_credentials_add(user.dn, credentials)
        # A GSSAPI service bind must not turn the user bind into a Kerberos one
        if preserved.get(SECURITY_AUTHENTICATION) == AUTHENTICATION_NAME_GSSAPI:
            connection.remove_from_environment(SECURITY_AUTHENTICATION)

        try:
            # Trivial read of the root DSE to force the bind
            connection.get_attributes("", None)
            return True
        except DirectoryAuthenticationError as e:
            logger.debug(f"  bind attempt failed: {e}")
            return False
        finally:
            restore_environment_parameter(connection, SECURITY_AUTHENTICATION, preserved)
            self.handle.user_credentials_remove()
