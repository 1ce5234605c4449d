"""
LDAP Directory Client
=====================
ldap3-backed directory connection used by the realm.

A DirectoryConnection carries an environment dictionary (URL, security
principal, credentials, mechanism, referral handling, timeouts). The bind
identity is taken from that environment lazily: every operation first checks
whether the environment identity differs from the one currently bound and
rebinds if so. Binding as another user is therefore done by editing the
environment and performing any cheap read.

ldap3 exceptions never leave this module; they are translated into the
realm's error hierarchy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

from ldap3 import (
    ALL_ATTRIBUTES,
    ANONYMOUS,
    AUTO_BIND_NONE,
    BASE,
    DEREF_ALWAYS,
    DEREF_BASE,
    DEREF_NEVER,
    DEREF_SEARCH,
    DIGEST_MD5,
    KERBEROS,
    LEVEL,
    NONE,
    SASL,
    SIMPLE,
    SUBTREE,
    Connection,
    Server,
    Tls,
)
from ldap3.core.exceptions import (
    LDAPBindError,
    LDAPException,
    LDAPInappropriateAuthenticationResult,
    LDAPInsufficientAccessRightsResult,
    LDAPInvalidCredentialsResult,
    LDAPInvalidDnError,
    LDAPInvalidDNSyntaxResult,
    LDAPNoSuchObjectResult,
    LDAPPasswordIsMandatoryError,
    LDAPReferralResult,
)
from ldap3.core.results import RESULT_REFERRAL

from directory_realm.errors import (
    ConfigurationError,
    ConnectOpenError,
    DirectoryAuthenticationError,
    InvalidNameSyntaxError,
    NameNotFoundError,
    PartialResultError,
    RealmError,
    ReferralError,
    TransientDirectoryError,
)
from directory_realm.models import SearchResult
from directory_realm.names import join_names

logger = logging.getLogger(__name__)

# Environment keys
PROVIDER_URL = "provider.url"
SECURITY_PRINCIPAL = "security.principal"
SECURITY_CREDENTIALS = "security.credentials"
SECURITY_AUTHENTICATION = "security.authentication"
SECURITY_PROTOCOL = "security.protocol"
REFERRAL = "referral"
DEREF_ALIASES = "deref.aliases"
CONNECT_TIMEOUT = "connect.timeout"
READ_TIMEOUT = "read.timeout"
SASL_SERVER_AUTHENTICATION = "sasl.server.authentication"
SASL_QOP = "sasl.qop"
SASL_CREDENTIALS = "sasl.credentials"

SECURITY_KEYS = (SECURITY_AUTHENTICATION, SECURITY_CREDENTIALS, SECURITY_PRINCIPAL, SECURITY_PROTOCOL)

# Environment keys that make up the bound identity
IDENTITY_KEYS = (SECURITY_PRINCIPAL, SECURITY_CREDENTIALS, SECURITY_AUTHENTICATION, SASL_CREDENTIALS)

AUTHENTICATION_NAME_GSSAPI = "GSSAPI"

DEREF_ALIAS_MAP = {
    "always": DEREF_ALWAYS,
    "never": DEREF_NEVER,
    "finding": DEREF_BASE,
    "searching": DEREF_SEARCH,
}

DEFAULT_PORTS = {"ldap": 389, "ldaps": 636}


@dataclass
class SearchControls:
    """Scope, limits and returned attributes of a search."""
    subtree: bool = False
    size_limit: int = 0
    time_limit: int = 0        # milliseconds, 0 = no limit
    attributes: Optional[List[str]] = None

    @property
    def time_limit_seconds(self) -> int:
        # ldap3 takes whole seconds; never round a limit down to "no limit"
        return (self.time_limit + 999) // 1000


def translate_ldap_error(error: Exception, referrals: Optional[str] = None) -> RealmError:
    """Map an ldap3 exception to the realm error hierarchy."""
    message = f"{type(error).__name__}: {error}"
    if isinstance(error, (
        LDAPInvalidCredentialsResult,
        LDAPInappropriateAuthenticationResult,
        LDAPInsufficientAccessRightsResult,
        LDAPBindError,
        LDAPPasswordIsMandatoryError,
    )):
        return DirectoryAuthenticationError(message, error_code="AUTHENTICATION")
    if isinstance(error, LDAPNoSuchObjectResult):
        return NameNotFoundError(message, error_code="NO_SUCH_OBJECT")
    if isinstance(error, (LDAPInvalidDnError, LDAPInvalidDNSyntaxResult)):
        return InvalidNameSyntaxError(message, error_code="INVALID_DN")
    if isinstance(error, LDAPReferralResult):
        if referrals == "throw":
            return ReferralError(message, error_code="REFERRAL")
        return PartialResultError(message, error_code="PARTIAL_RESULT")
    return TransientDirectoryError(message, error_code="LDAP_ERROR")


def parse_provider_url(url: str) -> Tuple[str, int, bool, str]:
    """
    Split an ldap:// or ldaps:// URL into host, port, SSL flag and the DN
    carried in its path.
    """
    parsed = urlparse(url.strip())
    scheme = (parsed.scheme or "ldap").lower()
    if scheme not in DEFAULT_PORTS:
        raise ConfigurationError(f"Unsupported directory URL scheme '{scheme}' in {url}", error_code="INVALID_URL")
    if not parsed.hostname:
        raise ConfigurationError(f"Directory URL has no host: {url}", error_code="INVALID_URL")
    port = parsed.port or DEFAULT_PORTS[scheme]
    name_in_namespace = unquote(parsed.path[1:]) if parsed.path else ""
    return parsed.hostname, port, scheme == "ldaps", name_in_namespace


def restore_environment_parameter(connection: 'DirectoryConnection', name: str,
                                  preserved: Optional[Dict[str, Any]]) -> None:
    """Put back an environment entry as it was in a preserved copy."""
    connection.remove_from_environment(name)
    if preserved is not None and name in preserved:
        connection.add_to_environment(name, preserved[name])


def _milliseconds_to_seconds(value: Any) -> Optional[float]:
    if value is None:
        return None
    millis = int(value)
    return millis / 1000.0 if millis > 0 else None


def _bind_arguments(environment: Dict[str, Any]) -> Dict[str, Any]:
    """Translate the environment identity into ldap3 connection attributes."""
    principal = environment.get(SECURITY_PRINCIPAL)
    credentials = environment.get(SECURITY_CREDENTIALS)
    mechanism = environment.get(SECURITY_AUTHENTICATION)
    if mechanism is None:
        mechanism = "simple" if principal else "none"

    if mechanism.lower() == "none":
        return {"user": None, "password": None, "authentication": ANONYMOUS,
                "sasl_mechanism": None, "sasl_credentials": None}
    if mechanism.lower() == "simple":
        return {"user": principal, "password": credentials, "authentication": SIMPLE,
                "sasl_mechanism": None, "sasl_credentials": None}
    if mechanism.upper() == AUTHENTICATION_NAME_GSSAPI:
        delegated = environment.get(SASL_CREDENTIALS)
        return {"user": None, "password": None, "authentication": SASL,
                "sasl_mechanism": KERBEROS,
                "sasl_credentials": (None, None, delegated) if delegated is not None else None}
    if mechanism.upper() == "DIGEST-MD5":
        return {"user": None, "password": None, "authentication": SASL,
                "sasl_mechanism": DIGEST_MD5,
                "sasl_credentials": (None, principal, credentials, None)}
    raise ConfigurationError(f"Unsupported authentication mechanism '{mechanism}'", error_code="INVALID_AUTHENTICATION")


def _decode_attributes(entry: Dict[str, Any]) -> Dict[str, List[str]]:
    raw = entry.get("raw_attributes") or {}
    attributes: Dict[str, List[str]] = {}
    for name, values in raw.items():
        if not isinstance(values, (list, tuple)):
            values = [values]
        attributes[name] = [
            v.decode("utf-8", errors="replace") if isinstance(v, (bytes, bytearray)) else str(v)
            for v in values
        ]
    return attributes


class DirectoryConnection:
    """
    A live connection to the directory server.

    Not thread-safe: the ConnectionManager guarantees a single user at a time.
    """

    def __init__(self, connection: Connection, environment: Dict[str, Any], name_in_namespace: str = ""):
        self._conn = connection
        self._environment = dict(environment)
        self.name_in_namespace = name_in_namespace
        self._bound_identity: Optional[Tuple] = None
        self.tls_started = False

    @property
    def environment(self) -> Dict[str, Any]:
        """A copy of the current environment."""
        return dict(self._environment)

    def add_to_environment(self, name: str, value: Any) -> None:
        self._environment[name] = value

    def remove_from_environment(self, name: str) -> None:
        self._environment.pop(name, None)

    @property
    def referrals(self) -> Optional[str]:
        return self._environment.get(REFERRAL)

    def _identity(self) -> Tuple:
        return tuple(self._environment.get(key) for key in IDENTITY_KEYS)

    def bind(self) -> None:
        """
        Bind with the identity currently in the environment, unless it is
        already the bound identity.

        Raises:
            DirectoryAuthenticationError: if the server rejects the identity
        """
        identity = self._identity()
        if identity == self._bound_identity:
            return

        arguments = _bind_arguments(self._environment)
        logger.debug(f"Binding as {arguments['user'] or arguments['authentication']}")
        self._bound_identity = None
        for attribute, value in arguments.items():
            setattr(self._conn, attribute, value)
        try:
            bound = self._conn.bind(read_server_info=False)
        except LDAPException as e:
            raise translate_ldap_error(e, self.referrals) from e
        if not bound:
            raise DirectoryAuthenticationError(
                f"Bind rejected: {self._conn.last_error or self._conn.result}",
                error_code="AUTHENTICATION",
            )
        self._bound_identity = identity

    def _dereference_aliases(self) -> str:
        return DEREF_ALIAS_MAP.get(self._environment.get(DEREF_ALIASES), DEREF_ALWAYS)

    def search(self, base: str, search_filter: str, controls: SearchControls) -> Iterator[SearchResult]:
        """
        Search below base (relative to the connection's own name).

        The request is sent immediately; results are handed out lazily and
        continuation references raise PartialResultError (ReferralError when
        referrals are configured to throw) while they are drained.
        """
        self.bind()
        full_base = join_names(base, self.name_in_namespace)
        try:
            self._conn.search(
                search_base=full_base,
                search_filter=search_filter,
                search_scope=SUBTREE if controls.subtree else LEVEL,
                attributes=controls.attributes or None,
                size_limit=controls.size_limit,
                time_limit=controls.time_limit_seconds,
                dereference_aliases=self._dereference_aliases(),
            )
        except LDAPException as e:
            raise translate_ldap_error(e, self.referrals) from e

        response = list(self._conn.response or [])
        referral = (self._conn.result or {}).get("result") == RESULT_REFERRAL
        return self._results(response, full_base, referral)

    def _results(self, response: List[Dict[str, Any]], full_base: str, referral: bool) -> Iterator[SearchResult]:
        base_suffix = "," + full_base.lower()
        for item in response:
            if item.get("type") == "searchResRef":
                self._partial_result(f"Continuation reference returned: {item.get('uri')}")
            if item.get("type") != "searchResEntry":
                continue

            dn = item.get("dn", "")
            if not full_base:
                yield SearchResult(dn, True, _decode_attributes(item))
            elif dn.lower() == full_base.lower():
                yield SearchResult("", True, _decode_attributes(item))
            elif dn.lower().endswith(base_suffix):
                yield SearchResult(dn[:-len(base_suffix)], True, _decode_attributes(item))
            else:
                yield SearchResult("ldap:///" + quote(dn, safe="=,+ "), False, _decode_attributes(item))

        if referral:
            self._partial_result("Search ended with a referral")

    def _partial_result(self, message: str):
        if self.referrals == "throw":
            raise ReferralError(message, error_code="REFERRAL")
        raise PartialResultError(message, error_code="PARTIAL_RESULT")

    def get_attributes(self, dn: str, attribute_ids: Optional[List[str]] = None) -> Dict[str, List[str]]:
        """
        Read attributes of a single entry. An empty dn reads the root DSE.

        Raises:
            NameNotFoundError: if the entry does not exist
        """
        self.bind()
        target = join_names(dn, self.name_in_namespace)
        try:
            self._conn.search(
                search_base=target,
                search_filter="(objectClass=*)",
                search_scope=BASE,
                attributes=ALL_ATTRIBUTES if attribute_ids is None else attribute_ids,
                dereference_aliases=self._dereference_aliases(),
            )
        except LDAPException as e:
            raise translate_ldap_error(e, self.referrals) from e

        entries = [r for r in (self._conn.response or []) if r.get("type") == "searchResEntry"]
        if not entries:
            raise NameNotFoundError(f"No entry named {dn}", error_code="NO_SUCH_OBJECT")
        return _decode_attributes(entries[0])

    def start_tls(self) -> str:
        """
        Upgrade the connection with the StartTLS extended operation.

        Returns:
            Negotiated protocol version (best effort)
        """
        try:
            started = self._conn.start_tls(read_server_info=False)
        except LDAPException as e:
            raise translate_ldap_error(e, self.referrals) from e
        if not started:
            raise TransientDirectoryError(f"StartTLS failed: {self._conn.last_error}", error_code="STARTTLS")
        self.tls_started = True
        socket = getattr(self._conn, "socket", None)
        version = getattr(socket, "version", None)
        return version() if callable(version) else "TLS"

    def close(self) -> None:
        """Unbind and close the socket (and the TLS layer, if started)."""
        if self.tls_started:
            logger.debug("Closing TLS session")
        try:
            self._conn.unbind()
        except LDAPException as e:
            raise translate_ldap_error(e, self.referrals) from e
        finally:
            self._bound_identity = None
            self.tls_started = False


def connect(environment: Dict[str, Any], bind: bool = True, tls: Optional[Tls] = None) -> DirectoryConnection:
    """
    Open a connection to the URL in the environment.

    Args:
        environment: Connection environment (see the *_KEY constants)
        bind: Bind with the environment identity right away
        tls: ldap3 Tls settings for LDAPS or StartTLS

    Returns:
        An open DirectoryConnection
    """
    url = environment.get(PROVIDER_URL)
    if not url:
        raise ConnectOpenError("No directory URL configured")

    host, port, use_ssl, name_in_namespace = parse_provider_url(url)
    if environment.get(SECURITY_PROTOCOL) == "ssl":
        use_ssl = True

    server = Server(
        host,
        port=port,
        use_ssl=use_ssl,
        tls=tls,
        get_info=NONE,
        connect_timeout=_milliseconds_to_seconds(environment.get(CONNECT_TIMEOUT)),
    )
    conn = Connection(
        server,
        auto_bind=AUTO_BIND_NONE,
        raise_exceptions=True,
        read_only=True,
        auto_referrals=environment.get(REFERRAL) == "follow",
        auto_escape=False,
        receive_timeout=_milliseconds_to_seconds(environment.get(READ_TIMEOUT)),
    )

    logger.debug(f"Opening directory connection to {host}:{port} (ssl={use_ssl})")
    try:
        conn.open(read_server_info=False)
    except LDAPException as e:
        raise translate_ldap_error(e, environment.get(REFERRAL)) from e

    directory = DirectoryConnection(conn, environment, name_in_namespace)
    if bind:
        try:
            directory.bind()
        except RealmError:
            try:
                conn.unbind()
            except LDAPException as e:
                logger.debug(f"Error closing connection after failed bind: {e}")
            raise
    return directory


Connector = Callable[..., DirectoryConnection]

CONNECTORS: Dict[str, Connector] = {
    "ldap3": connect,
}


def register_connector(name: str, connector: Connector) -> None:
    """Make a directory client available under a context_factory name."""
    CONNECTORS[name] = connector


def resolve_connector(name: str) -> Connector:
    try:
        return CONNECTORS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown context factory '{name}', expected one of: {', '.join(sorted(CONNECTORS))}",
            error_code="UNKNOWN_CONTEXT_FACTORY",
        ) from None
