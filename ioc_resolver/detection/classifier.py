"""Single-token entity type classification."""

from typing import Optional

from ioc_resolver.detection.patterns import (
    CVE_PATTERN,
    MITRE_ID_RE,
    PatternRegistry,
    get_default_registry,
)
from ioc_resolver.detection.scanner import ATTACK_PATTERN_ENTITY_TYPE, CVE_ENTITY_TYPE


def detect_observable_type(token: str, registry: Optional[PatternRegistry] = None) -> str:
    """
    Classify an already-isolated token.

    The token must match a pattern in full; the first match by priority whose
    validator accepts it decides the type. No overlap sweep is involved.

    Args:
        token: A single value, e.g. "example.com" or "malware.exe"
        registry: Pattern registry to use (defaults to the built-in one)

    Returns:
        The type name (e.g. "Domain-Name", "StixFile"), or "" if nothing matches
    """
    value = token.strip()
    if not value:
        return ""

    if CVE_PATTERN.fullmatch(value):
        return CVE_ENTITY_TYPE
    if MITRE_ID_RE.match(value):
        return ATTACK_PATTERN_ENTITY_TYPE

    registry = registry if registry is not None else get_default_registry()
    for pattern in registry:
        if pattern.regex.fullmatch(value) and registry.validate(pattern, value):
            return pattern.type.value
    return ""
