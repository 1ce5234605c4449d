"""
Pattern Compilation
===================
Parses configured DN pattern lists and compiles "{0}"-style templates into
reusable formatters.

Templates use positional placeholders:
- userPattern / userSearch: {0} = username
- roleSearch: {0} = user DN, {1} = username, {2} = user role attribute value
- roleBase: {n} = n-th component of the user DN (0 = rightmost)
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence

from directory_realm.errors import ConfigurationError


_PLACEHOLDER = re.compile(r'\{(\d+)\}')


class MessageTemplate:
    """A compiled template with positional {n} placeholders."""

    def __init__(self, pattern: str):
        self.pattern = pattern
        self._parts: List[object] = []

        position = 0
        for match in _PLACEHOLDER.finditer(pattern):
            self._add_literal(pattern[position:match.start()])
            self._parts.append(int(match.group(1)))
            position = match.end()
        self._add_literal(pattern[position:])

    def _add_literal(self, text: str) -> None:
        if '{' in text or '}' in text:
            raise ConfigurationError(
                f"Malformed placeholder in template '{self.pattern}'",
                error_code="INVALID_TEMPLATE",
            )
        if text:
            self._parts.append(text)

    @property
    def argument_count(self) -> int:
        """Highest placeholder index used, plus one."""
        indexes = [p for p in self._parts if isinstance(p, int)]
        return max(indexes) + 1 if indexes else 0

    def format(self, args: Sequence[Optional[str]]) -> str:
        """
        Substitute positional arguments.

        A placeholder without a matching argument is emitted unchanged and
        a None argument is substituted as an empty string.
        """
        result = []
        for part in self._parts:
            if isinstance(part, int):
                if part < len(args):
                    value = args[part]
                    result.append('' if value is None else value)
                else:
                    result.append('{%d}' % part)
            else:
                result.append(part)
        return ''.join(result)

    def __repr__(self) -> str:
        return f"MessageTemplate({self.pattern!r})"


def compile_template(pattern: Optional[str]) -> Optional[MessageTemplate]:
    """Compile a template, passing None through."""
    if pattern is None:
        return None
    return MessageTemplate(pattern)


def parse_user_pattern_list(raw: Optional[str]) -> Optional[List[str]]:
    """
    Split a user pattern string into individual DN patterns.

    Accepts either a single bare pattern ("uid={0},ou=people") or a sequence
    of parenthesized alternatives "(p1)(p2)", optionally wrapped in an LDAP
    OR: "(|(p1)(p2))". Escaped parentheses (\\( and \\)) are part of a
    pattern and never delimit one.

    Args:
        raw: Configured userPattern value

    Returns:
        Ordered list of raw patterns, or None if raw is None
    """
    if raw is None:
        return None

    start = raw.find('(')
    if start == -1:
        return [raw]

    patterns: List[str] = []
    while start > -1:
        # Skip an OR wrapper "(|" and escaped open parens.
        while start > -1 and (
            (start + 1 < len(raw) and raw[start + 1] == '|')
            or (start != 0 and raw[start - 1] == '\\')
        ):
            start = raw.find('(', start + 1)
        if start == -1:
            break

        end = raw.find(')', start + 1)
        while end > 0 and raw[end - 1] == '\\':
            end = raw.find(')', end + 1)
        if end == -1:
            raise ConfigurationError(
                f"Unbalanced parentheses in user pattern '{raw}'",
                error_code="INVALID_USER_PATTERN",
            )

        patterns.append(raw[start + 1:end])
        start = raw.find('(', end + 1)

    return patterns
