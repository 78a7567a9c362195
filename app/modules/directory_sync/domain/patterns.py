"""
Group-name patterns.

A pattern is a group display name where `*` matches any run of characters
(including none). Matching is case-insensitive and anchored at both ends; every
other character is literal. An empty pattern selects every group.
"""

import re
from typing import Callable

WILDCARD = "*"


def to_predicate(pattern: str | None) -> Callable[[str], bool]:
    if not pattern:
        return lambda _name: True

    regex = re.compile(
        "^" + ".*".join(re.escape(part) for part in pattern.split(WILDCARD)) + "$",
        re.IGNORECASE | re.DOTALL,
    )
    return lambda name: regex.match(name or "") is not None


def matches_pattern(name: str, pattern: str | None) -> bool:
    return to_predicate(pattern)(name)


def literal_prefix(pattern: str | None) -> str:
    """Text before the first wildcard; empty when the pattern has none."""
    if not pattern or WILDCARD not in pattern:
        return ""
    return pattern.split(WILDCARD, 1)[0]


def is_literal(pattern: str | None) -> bool:
    return bool(pattern) and WILDCARD not in str(pattern)


def extract_role_slug(name: str, pattern: str | None) -> str | None:
    """
    Derive a role slug from a group name.

    - no pattern: the lower-cased name
    - no wildcard: the lower-cased name, only on an exact match
    - one wildcard: the text the wildcard covers, lower-cased
    - several wildcards: no slug can be derived
    """
    if not pattern:
        return name.lower() or None

    wildcards = pattern.count(WILDCARD)
    if wildcards == 0:
        return name.lower() if name.lower() == pattern.lower() else None
    if wildcards > 1:
        return None

    prefix, suffix = pattern.split(WILDCARD)
    remainder = name
    if prefix and remainder.lower().startswith(prefix.lower()):
        remainder = remainder[len(prefix):]
    if suffix and remainder.lower().endswith(suffix.lower()):
        remainder = remainder[: len(remainder) - len(suffix)]
    return remainder.lower() or None
