"""
Distinguished name helpers: composing search result names and splitting a
DN into its components.
"""

import logging
from typing import List
from urllib.parse import unquote, urlparse

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

from directory_realm.errors import InvalidNameSyntaxError
from directory_realm.escaping import normalize_hex_escapes
from directory_realm.models import SearchResult

logger = logging.getLogger(__name__)


def join_names(*names: str) -> str:
    """Join DN fragments, most specific first, skipping empty ones."""
    return ','.join(n for n in names if n)


def name_components(dn: str) -> List[str]:
    """
    Split a DN into its RDNs, indexed like an LDAP name: index 0 is the
    rightmost (most significant) RDN. Escaping inside values is preserved.

    Raises:
        InvalidNameSyntaxError: if the DN cannot be parsed
    """
    if not dn or not dn.strip():
        return []
    try:
        avas = parse_dn(dn, escape=False, strip=True)
    except LDAPInvalidDnError as e:
        raise InvalidNameSyntaxError(f"Invalid name: {dn}", error_code="INVALID_DN") from e

    rdns: List[str] = []
    current: List[str] = []
    for attr, value, separator in avas:
        current.append(f"{attr}={value}")
        # Multi-valued RDNs are joined by '+'
        if separator != '+':
            rdns.append('+'.join(current))
            current = []
    if current:
        rdns.append('+'.join(current))

    rdns.reverse()
    return rdns


def distinguished_name(connection, base: str, result: SearchResult, force_dn_hex_escape: bool = False) -> str:
    """
    Return the full distinguished name of a search result.

    Relative names are composed with the search base and the connection's own
    name in the namespace. Absolute names are ldap:// URIs whose path holds
    the DN.

    Raises:
        InvalidNameSyntaxError: if an absolute name is not a usable URI
    """
    if result.is_relative:
        logger.debug(f"  search returned relative name: {result.name}")
        dn = join_names(result.name, base, getattr(connection, 'name_in_namespace', ''))
    else:
        logger.debug(f"  search returned absolute name: {result.name}")
        try:
            uri = urlparse(result.name)
        except ValueError as e:
            raise InvalidNameSyntaxError(f"Invalid name: {result.name}", error_code="INVALID_NAME") from e
        path = unquote(uri.path)
        # An absolute name is always ldap://host/{DN}
        if not uri.scheme or len(path) < 1:
            raise InvalidNameSyntaxError(f"Invalid name: {result.name}", error_code="INVALID_NAME")
        dn = path[1:]
        # Validate the DN the same way a relative one would be used
        name_components(dn)

    if force_dn_hex_escape:
        return normalize_hex_escapes(dn)
    return dn
