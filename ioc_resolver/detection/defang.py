"""Defang detection, refanging and defanged-variant generation."""

import re

DEFANG_MARKER_RE = re.compile(
    r"\[\.\]|\(\.\)|\{\.\}|\[@\]|\(@\)|\{@\}|hxxp|h\[xx\]p|\[://\]|\(://\)|\(:/\)|\[:\]|\[/\]|^meow://",
    re.IGNORECASE,
)

# Applied in order; scheme rules run after dot/at rules so "hxxp[://]" is covered.
_REFANG_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\[\.\]|\(\.\)|\{\.\}"), "."),
    (re.compile(r"\[@\]|\(@\)|\{@\}"), "@"),
    (re.compile(r"\[://\]|\(://\)|\(:/\)/?"), "://"),
    (re.compile(r"\[:\]|\(:\)"), ":"),
    (re.compile(r"\[/\]|\(/\)"), "/"),
]

_HXXP_RE = re.compile(r"\bh(?:xx|\[xx\])p(s?)(?=://)", re.IGNORECASE)
_MEOW_RE = re.compile(r"^meow://", re.IGNORECASE)

_DOT_STYLES = ("[.]", "(.)", "{.}")
_AT_STYLES = ("[@]", "(@)")
_SCHEME_STYLES = ("hxxp", "hXXp")


def is_defanged(text: str) -> bool:
    """Return True if ``text`` contains any defang marker."""
    return bool(DEFANG_MARKER_RE.search(text))


def _refang_once(text: str) -> str:
    for pattern, replacement in _REFANG_RULES:
        text = pattern.sub(replacement, text)
    text = _HXXP_RE.sub(lambda m: f"http{m.group(1).lower()}", text)
    return _MEOW_RE.sub("http://", text)


def refang_indicator(text: str) -> str:
    """
    Undo common defanging conventions.

    ``example[.]com`` becomes ``example.com``, ``hxxps://`` becomes ``https://``,
    ``user[@]host`` becomes ``user@host``. Refanging is idempotent.

    Args:
        text: Possibly defanged indicator

    Returns:
        The canonical indicator string
    """
    previous = None
    while previous != text:
        previous = text
        text = _refang_once(text)
    return text


def _dot_variants(value: str) -> list[str]:
    if "." not in value:
        return []
    variants: list[str] = []
    head, _, tail = value.rpartition(".")
    for style in _DOT_STYLES:
        variants.append(value.replace(".", style))
        variants.append(f"{head}{style}{tail}")
    return variants


def generate_defanged_variants(value: str) -> list[str]:
    """
    List the defanged spellings of a canonical value.

    Used to find a value in text (or a cache) that may have been written defanged.
    The input itself is never part of the output and the output has no duplicates.

    Args:
        value: Canonical (refanged) value

    Returns:
        Defanged variants in a stable order
    """
    if not value:
        return []

    variants = _dot_variants(value)

    scheme_match = re.match(r"(https?)(://.*)$", value, re.IGNORECASE | re.DOTALL)
    if scheme_match:
        secure = scheme_match.group(1).lower().endswith("s")
        rest = scheme_match.group(2)
        for style in _SCHEME_STYLES:
            scheme = f"{style}s" if secure else style
            variants.append(f"{scheme}{rest}")
            variants.extend(f"{scheme}{v}" for v in _dot_variants(rest))
    elif "@" in value:
        local, _, domain = value.partition("@")
        for style in _AT_STYLES:
            variants.append(f"{local}{style}{domain}")
            variants.extend(f"{local}{style}{v}" for v in _dot_variants(domain))
        variants.extend(f"{local}@{v}" for v in _dot_variants(domain))

    unique: list[str] = []
    for variant in variants:
        if variant != value and variant not in unique:
            unique.append(variant)
    return unique
