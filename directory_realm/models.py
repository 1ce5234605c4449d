"""Value objects shared by the resolvers."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class User:
    """
    A user entry resolved from the directory.

    dn is always directory-escaped: it either came back from the directory
    or was formed from an attribute-value-escaped username.
    """
    username: str
    dn: str
    password: Optional[str] = None
    roles: Tuple[str, ...] = ()
    user_role_id: Optional[str] = None

    def __post_init__(self):
        # Freeze whatever sequence we were handed
        object.__setattr__(self, 'roles', tuple(self.roles or ()))

    def with_password(self, password: Optional[str]) -> 'User':
        return User(self.username, self.dn, password, self.roles, self.user_role_id)

    def __repr__(self) -> str:
        # Keep the password out of logs
        return f"User(username={self.username!r}, dn={self.dn!r}, roles={list(self.roles)!r})"


@dataclass(frozen=True)
class Principal:
    """An authenticated user and the roles granted to them"""
    username: str
    roles: Tuple[str, ...] = ()
    gss_credential: Optional[Any] = None

    def __post_init__(self):
        object.__setattr__(self, 'roles', tuple(self.roles or ()))

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class SearchResult:
    """
    One entry returned by a directory search.

    name is relative to the search base (and the connection's own name) when
    is_relative is True, otherwise an absolute ldap:// URI.
    """
    name: str
    is_relative: bool = True
    attributes: Dict[str, List[str]] = field(default_factory=dict)


def attribute_value(attr_id: Optional[str], attributes: Optional[Dict[str, List[str]]]) -> Optional[str]:
    """Return the first value of an attribute (case-insensitive name lookup)."""
    values = attribute_values(attr_id, attributes)
    return values[0] if values else None


def attribute_values(attr_id: Optional[str], attributes: Optional[Dict[str, List[str]]]) -> List[str]:
    """Return every value of an attribute (case-insensitive name lookup)."""
    if attr_id is None or not attributes:
        return []
    wanted = attr_id.lower()
    for name, values in attributes.items():
        if name.lower() == wanted:
            if values is None:
                return []
            if isinstance(values, (list, tuple)):
                return [_as_text(v) for v in values if v is not None]
            return [_as_text(values)]
    return []


def _as_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8', errors='replace')
    return str(value)
