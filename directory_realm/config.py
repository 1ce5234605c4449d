"""
Configuration for the directory realm.

Reads from environment variables (prefix REALM_) with defaults matching the
usual LDAP realm settings. A RealmSettings instance is an immutable snapshot:
reconfiguration builds a new one rather than editing the active one.
"""

import logging
from typing import List, Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from directory_realm.errors import ConfigurationError
from directory_realm.patterns import parse_user_pattern_list

logger = logging.getLogger(__name__)

REFERRAL_MODES = ("ignore", "follow", "throw")
DEREF_ALIAS_MODES = ("always", "never", "finding", "searching")


class RealmSettings(BaseSettings):
    """Directory connection and search settings loaded from environment."""

    model_config = SettingsConfigDict(env_prefix="REALM_", frozen=True)

    # Connection
    connection_url: Optional[str] = None
    alternate_url: Optional[str] = None
    context_factory: str = "ldap3"
    authentication: Optional[str] = None
    protocol: Optional[str] = None
    referrals: Optional[str] = None
    deref_aliases: Optional[str] = None
    connection_timeout: int = 5000     # milliseconds
    read_timeout: int = 5000           # milliseconds
    connection_name: Optional[str] = None
    connection_password: Optional[str] = None
    connection_pool_size: int = 1

    # User lookup
    user_base: str = ""
    user_search: Optional[str] = None
    user_subtree: bool = False
    user_pattern: Optional[str] = None
    user_search_as_user: bool = False
    user_password: Optional[str] = None
    user_role_name: Optional[str] = None
    user_role_attribute: Optional[str] = None

    # Role lookup
    role_base: str = ""
    role_search: Optional[str] = None
    role_subtree: bool = False
    role_nested: bool = False
    role_search_as_user: bool = False
    role_name: Optional[str] = None
    common_role: Optional[str] = None

    # Search limits (0 = no limit)
    size_limit: int = 0
    time_limit: int = 0                # milliseconds

    # StartTLS
    use_start_tls: bool = False
    cipher_suites: Optional[str] = None
    ssl_protocol: Optional[str] = None
    hostname_verifier: Optional[str] = None
    ssl_socket_factory: Optional[str] = None

    # Delegated credentials (SPNEGO)
    use_delegated_credential: bool = True
    spnego_delegation_qop: str = "auth-conf"

    # Compatibility switches
    ad_compat: bool = False
    force_dn_hex_escape: bool = False

    credential_matcher: str = "plain"

    # Logging
    log_level: str = "INFO"

    @field_validator("referrals")
    @classmethod
    def _check_referrals(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in REFERRAL_MODES:
            raise ValueError(f"referrals must be one of {', '.join(REFERRAL_MODES)}")
        return value

    @field_validator("deref_aliases")
    @classmethod
    def _check_deref_aliases(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in DEREF_ALIAS_MODES:
            raise ValueError(f"deref_aliases must be one of {', '.join(DEREF_ALIAS_MODES)}")
        return value

    @field_validator("connection_pool_size")
    @classmethod
    def _check_pool_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("connection_pool_size must be at least 1")
        return value

    @field_validator("connection_timeout", "read_timeout", "size_limit", "time_limit")
    @classmethod
    def _check_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @property
    def pooling_enabled(self) -> bool:
        return self.connection_pool_size > 1

    @property
    def user_pattern_list(self) -> Optional[List[str]]:
        """Configured DN patterns, or None when users are located by search."""
        return parse_user_pattern_list(self.user_pattern)

    @property
    def cipher_suite_list(self) -> Optional[List[str]]:
        """Allowed StartTLS cipher suites, or None for the defaults."""
        if self.cipher_suites is None:
            return None
        suites = [s.strip() for s in self.cipher_suites.split(",") if s.strip()]
        if not suites:
            logger.warning("cipher_suites is empty, using the default cipher suites")
            return None
        logger.debug(f"StartTLS cipher suites: {suites}")
        return suites


def load_settings(**overrides) -> RealmSettings:
    """
    Build a settings snapshot from the environment plus explicit overrides.

    Raises:
        ConfigurationError: if any value fails validation
    """
    try:
        return RealmSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid realm configuration: {e}", error_code="INVALID_SETTINGS") from e
