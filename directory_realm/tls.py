"""
StartTLS Negotiation
====================
Opens a plain connection, upgrades it with StartTLS and only then binds.

Certificate/hostname validation and the SSL protocol/socket options are
looked up by name in two registries, so deployments can plug in their own
policies without subclassing.
"""

from __future__ import annotations

import logging
import ssl
from typing import Any, Callable, Dict, List, Optional

from ldap3 import Tls

from directory_realm.client import SECURITY_KEYS, Connector, DirectoryConnection
from directory_realm.config import RealmSettings
from directory_realm.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Minimum protocol version implied by each ssl_protocol value
SSL_PROTOCOL_OPTIONS: Dict[str, List[int]] = {
    "TLS": [],
    "TLSv1.2": [ssl.OP_NO_TLSv1, ssl.OP_NO_TLSv1_1],
    "TLSv1.3": [ssl.OP_NO_TLSv1, ssl.OP_NO_TLSv1_1, ssl.OP_NO_TLSv1_2],
}


def _default_socket_factory(settings: RealmSettings) -> Dict[str, Any]:
    protocol = settings.ssl_protocol or "TLS"
    if protocol not in SSL_PROTOCOL_OPTIONS:
        raise ConfigurationError(
            f"Unsupported ssl_protocol '{protocol}', expected one of: {', '.join(SSL_PROTOCOL_OPTIONS)}",
            error_code="INVALID_SSL_PROTOCOL",
        )
    return {"ssl_options": list(SSL_PROTOCOL_OPTIONS[protocol])}


# hostname verifier name -> ldap3 Tls validation arguments
HOSTNAME_VERIFIERS: Dict[str, Callable[[RealmSettings], Dict[str, Any]]] = {
    "default": lambda settings: {"validate": ssl.CERT_REQUIRED},
    "allow-all": lambda settings: {"validate": ssl.CERT_NONE},
}

# socket factory name -> ldap3 Tls protocol/socket arguments
SOCKET_FACTORIES: Dict[str, Callable[[RealmSettings], Dict[str, Any]]] = {
    "default": _default_socket_factory,
}


def register_hostname_verifier(name: str, factory: Callable[[RealmSettings], Dict[str, Any]]) -> None:
    HOSTNAME_VERIFIERS[name] = factory


def register_socket_factory(name: str, factory: Callable[[RealmSettings], Dict[str, Any]]) -> None:
    SOCKET_FACTORIES[name] = factory


def _lookup(registry: Dict[str, Callable], name: Optional[str], kind: str) -> Callable:
    key = name or "default"
    try:
        return registry[key]
    except KeyError:
        raise ConfigurationError(
            f"Unknown {kind} '{key}', expected one of: {', '.join(sorted(registry))}",
            error_code=f"UNKNOWN_{kind.upper().replace(' ', '_')}",
        ) from None


class TlsNegotiator:
    """Builds the TLS settings for a realm and performs the StartTLS upgrade."""

    def __init__(self, tls_arguments: Dict[str, Any]):
        self.tls_arguments = tls_arguments

    @classmethod
    def from_settings(cls, settings: RealmSettings) -> 'TlsNegotiator':
        """
        Resolve the configured hostname verifier and socket factory.

        Raises:
            ConfigurationError: for unknown identifiers or protocol names
        """
        arguments: Dict[str, Any] = {}
        arguments.update(_lookup(SOCKET_FACTORIES, settings.ssl_socket_factory, "socket factory")(settings))
        arguments.update(_lookup(HOSTNAME_VERIFIERS, settings.hostname_verifier, "hostname verifier")(settings))

        suites = settings.cipher_suite_list
        if suites:
            arguments["ciphers"] = ":".join(suites)
        return cls(arguments)

    def build_tls(self) -> Tls:
        return Tls(**self.tls_arguments)

    def negotiate(self, environment: Dict[str, Any], connector: Connector) -> DirectoryConnection:
        """
        Open an unauthenticated connection, start TLS, then restore the
        security settings so the next operation binds over the encrypted
        channel.
        """
        plain_environment = dict(environment)
        saved = {key: plain_environment.pop(key) for key in SECURITY_KEYS if key in plain_environment}

        connection = connector(plain_environment, bind=False, tls=self.build_tls())
        try:
            session = connection.start_tls()
        except Exception:
            try:
                connection.close()
            except Exception as e:
                logger.debug(f"Error closing connection after failed StartTLS: {e}")
            raise
        logger.debug(f"StartTLS negotiated: {session}")

        for key, value in saved.items():
            connection.add_to_environment(key, value)
        return connection
