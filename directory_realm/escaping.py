"""
Directory Name Escaping
=======================
String escaping rules for values placed into LDAP search filters and
distinguished names.

Two rule sets are used and must not be mixed up:
- Filter escaping (RFC 4515): lower-case hex, applied to every untrusted
  token placed into a search filter.
- Attribute value escaping (RFC 4514): upper-case hex, applied to values
  placed into a distinguished name.

Directory servers compare these byte-for-byte, so the exact hex case of each
rule set is part of the contract.
"""

from __future__ import annotations

from typing import Dict, Optional


FILTER_ESCAPES: Dict[str, str] = {
    '\\': r'\5c',
    '*': r'\2a',
    '(': r'\28',
    ')': r'\29',
    '\x00': r'\00',
}

ATTRIBUTE_VALUE_ESCAPES: Dict[str, str] = {
    '"': r'\22',
    '+': r'\2B',
    ',': r'\2C',
    ';': r'\3B',
    '<': r'\3C',
    '>': r'\3E',
    '\\': r'\5C',
    '\x00': r'\00',
}

# Characters that may appear as a single-character escape (\,) in names
# returned by the directory, and their two-hex-digit form.
HEX_ESCAPES: Dict[str, str] = {
    ' ': r'\20',
    '"': r'\22',
    '#': r'\23',
    '+': r'\2B',
    ',': r'\2C',
    ';': r'\3B',
    '<': r'\3C',
    '=': r'\3D',
    '>': r'\3E',
    '\\': r'\5C',
}


def filter_escape(value: Optional[str]) -> Optional[str]:
    """
    Escape a value for use inside an LDAP search filter.

    RFC 4515 requires escaping: * ( ) \\ NUL

    Args:
        value: Raw value (username, DN reused as a filter argument, group name)

    Returns:
        Escaped value, or None if value is None
    """
    if value is None:
        return None
    return ''.join(FILTER_ESCAPES.get(c, c) for c in value)


def attribute_value_escape(value: Optional[str]) -> Optional[str]:
    """
    Escape a value so it can be represented as a DN attribute value (RFC 4514).

    A leading or trailing space becomes \\20 and a leading '#' becomes \\23;
    interior spaces and '#' are left alone.

    Args:
        value: Raw attribute value

    Returns:
        Escaped value, or None if value is None
    """
    if value is None:
        return None

    last = len(value) - 1
    result = []
    for i, c in enumerate(value):
        if c == ' ':
            result.append(r'\20' if i == 0 or i == last else c)
        elif c == '#':
            result.append(r'\23' if i == 0 else c)
        else:
            result.append(ATTRIBUTE_VALUE_ESCAPES.get(c, c))
    return ''.join(result)


def normalize_hex_escapes(value: str) -> str:
    """
    Rewrite single-character escapes (\\,) into two-hex-digit escapes (\\2C).

    Directories may return names using either form. Unknown single-character
    escapes are kept as backslash + character and a trailing lone backslash
    is preserved.
    """
    if '\\' not in value:
        return value

    result = []
    previous_slash = False
    for c in value:
        if previous_slash:
            result.append(HEX_ESCAPES.get(c, '\\' + c))
            previous_slash = False
        elif c == '\\':
            previous_slash = True
        else:
            result.append(c)

    if previous_slash:
        result.append('\\')

    return ''.join(result)
