"""Helpers for matching known entity names inside free text."""

import re
from typing import Optional

# Whitespace and sentence punctuation. '.', '-', '_', '[' and ']' are excluded:
# they occur inside identifiers and defanged URLs.
BOUNDARY_CHARS = frozenset(" \t\r\n\f\v,;:!?()\"'<>/\\@#$%^&*+=|`~{}")

_MITRE_ID_RE = re.compile(r"^t[as]?\d{4}(?:\.\d{3})?$", re.IGNORECASE)
_PARENT_MITRE_ID_RE = re.compile(r"^t[as]?\d{4}$", re.IGNORECASE)
_IPV4_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")
_MAC_RE = re.compile(r"^(?:[0-9a-f]{2}[:-]){5}[0-9a-f]{2}$", re.IGNORECASE)


def is_valid_boundary(char: Optional[str]) -> bool:
    """True for start/end of text, whitespace or sentence punctuation."""
    if not char:
        return True
    return char in BOUNDARY_CHARS or char.isspace()


def has_valid_boundaries(text: str, start: int, end: int) -> bool:
    before = text[start - 1] if start > 0 else None
    after = text[end] if end < len(text) else None
    return is_valid_boundary(before) and is_valid_boundary(after)


def ranges_overlap(start: int, end: int, seen: list[tuple[int, int]]) -> bool:
    return any(not (end <= s or start >= e) for s, e in seen)


def is_mitre_id(name: str) -> bool:
    return bool(_MITRE_ID_RE.match(name))


def is_parent_mitre_id(name: str) -> bool:
    return bool(_PARENT_MITRE_ID_RE.match(name))


def needs_manual_boundary_check(name: str) -> bool:
    """
    Whether matches of ``name`` must be checked with :func:`has_valid_boundaries`.

    ``\\b`` treats '.', '-' and '_' as boundaries, which would let "Software"
    match inside "dl[.]software-update.org". IPs, MACs and MITRE ids carry
    their own boundaries in the regex.
    """
    return not (_IPV4_RE.match(name) or _MAC_RE.match(name) or is_mitre_id(name))


def create_matching_regex(name: str) -> re.Pattern:
    """Build the search regex used for one entity name (case-insensitive)."""
    escaped = re.escape(name)
    if _IPV4_RE.match(name) or _MAC_RE.match(name):
        return re.compile(rf"(?<![\w.]){escaped}(?![\w.])", re.IGNORECASE)
    if re.search(r"[.\-_@]", name):
        return re.compile(escaped, re.IGNORECASE)
    return re.compile(rf"\b{escaped}\b", re.IGNORECASE)
