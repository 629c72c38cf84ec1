"""Observable detection patterns, their validators and the pattern registry."""

import re
from functools import lru_cache
from typing import Iterable, Iterator, Optional

import validators

from ioc_resolver.detection.defang import refang_indicator
from ioc_resolver.models import HashKind, ObservableType, PatternDefinition

# Separators accepted between labels/octets: plain or defanged.
_DOT = r"(?:\.|\[\.\]|\(\.\)|\{\.\})"
_AT = r"(?:@|\[@\]|\(@\)|\{@\})"

# Generic and country-code TLDs. "zip" and "mov" are left out so archive and
# video file names are not read as domains.
TLDS = frozenset(
    """
    com net org edu gov mil int info biz name pro mobi tel asia cat jobs travel museum aero coop post
    io ai app dev cloud tech xyz online site website store shop blog news media agency studio design
    digital marketing consulting solutions services systems network technology software security
    cyber data exchange finance bank money capital fund trade market club live life world today top
    icu vip win bid loan work click link space fun host press email support center zone one page
    onion bit
    ac ad ae af ag al am ao aq ar as at au aw ax az ba bb bd be bf bg bh bi bj bm bn bo br bs bt bw
    by bz ca cc cd cf cg ch ci ck cl cm cn co cr cu cv cw cx cy cz de dj dk dm do dz ec ee eg er es
    et eu fi fj fk fm fo fr ga gd ge gf gg gh gi gl gm gn gp gq gr gs gt gu gw gy hk hm hn hr ht hu
    id ie il im in iq ir is it je jm jo jp ke kg kh ki km kn kp kr kw ky kz la lb lc li lk lr ls lt
    lu lv ly ma mc md me mg mh mk ml mm mn mo mp mq mr ms mt mu mv mw mx my mz na nc ne nf ng ni nl
    no np nr nu nz om pa pe pf pg ph pk pl pm pn pr ps pt pw py qa re ro rs ru rw sa sb sc sd se sg
    sh si sk sl sm sn so sr ss st su sv sx sy sz tc td tf tg th tj tk tl tm tn to tr tt tv tw tz ua
    ug uk us uy uz va vc ve vg vi vn vu wf ws ye yt za zm zw
    """.split()
)

# Final labels that name source or config files rather than hosts.
CODE_FILE_EXTENSIONS = frozenset(
    "js css html htm php asp aspx jsp json xml txt py sh ps1 md yml yaml log ini cfg".split()
)

FILE_EXTENSIONS = (
    "tar.gz", "exe", "dll", "sys", "scr", "msi", "cpl", "ocx", "lnk", "hta", "bat", "cmd", "ps1",
    "vbs", "vbe", "js", "jse", "wsf", "jar", "sh", "py", "elf", "bin", "so", "dylib", "apk", "ipa",
    "dmg", "pkg", "deb", "rpm", "iso", "img", "vmdk", "vhd", "vhdx", "doc", "docx", "docm", "xls",
    "xlsx", "xlsm", "ppt", "pptx", "pptm", "rtf", "pdf", "one", "iqy", "zip", "rar", "7z", "tar",
    "gz", "tgz", "cab", "dat", "tmp",
)

_TLD_ALTERNATION = "|".join(sorted(TLDS, key=len, reverse=True))
_EXT_ALTERNATION = "|".join(
    re.escape(ext) for ext in sorted(FILE_EXTENSIONS, key=len, reverse=True)
)

URL_RE = re.compile(
    r"(?:https?|hxxps?|h\[xx\]ps?|meow)(?:://|\[://\]|\(://\)|\(:/\)/?)"
    r"(?:www" + _DOT + r")?"
    r"[-a-zA-Z0-9@:%._+~#=\[\](){}]{1,256}"
    r"(?:\.|\[\.\]|\(\.\))[a-zA-Z0-9()\[\]{}]{1,6}\b"
    r"(?:[-a-zA-Z0-9()@:%_+.~#?&/=\[\]]*)"
    r"(?<![.,;:!?)\]])",
    re.IGNORECASE,
)

EMAIL_RE = re.compile(
    r"(?<![.\w\]])[\w.+-]+" + _AT
    + r"(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?" + _DOT + r")+"
    r"[a-zA-Z]{2,}(?![\w\]-]|\.\w)"
)

DOMAIN_RE = re.compile(
    r"(?<![.\w@/\]-])"
    r"(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?" + _DOT + r")+"
    r"(?:xn--[a-z0-9-]{2,59}|" + _TLD_ALTERNATION + r")"
    r"(?![\w\]-]|\.\w|\[\.\]|\(\.\)|\{\.\})",
    re.IGNORECASE,
)

_OCTET = r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)"
IPV4_RE = re.compile(
    r"(?<![\w.\]])" + _OCTET + r"(?:" + _DOT + _OCTET + r"){3}(?![\w\]]|\.\d|\[\.\])"
)

_H = r"[0-9a-f]{1,4}"
IPV6_RE = re.compile(
    r"(?<![:.\w])(?:"
    rf"(?:{_H}:){{7}}{_H}"
    rf"|(?:{_H}:){{1,6}}:{_H}"
    rf"|(?:{_H}:){{1,5}}(?::{_H}){{1,2}}"
    rf"|(?:{_H}:){{1,4}}(?::{_H}){{1,3}}"
    rf"|(?:{_H}:){{1,3}}(?::{_H}){{1,4}}"
    rf"|(?:{_H}:){{1,2}}(?::{_H}){{1,5}}"
    rf"|{_H}:(?::{_H}){{1,6}}"
    rf"|(?:{_H}:){{1,7}}:"
    rf"|:(?::{_H}){{1,7}}"
    r")(?![:.\w])",
    re.IGNORECASE,
)


def _hex_pattern(length: int) -> re.Pattern:
    return re.compile(rf"(?<![0-9A-Za-z])[a-fA-F0-9]{{{length}}}(?![0-9A-Za-z])")


MD5_RE = _hex_pattern(32)
SHA1_RE = _hex_pattern(40)
SHA256_RE = _hex_pattern(64)
SHA512_RE = _hex_pattern(128)

# Block size then two base64 parts; the length floor keeps clock times like 8:50:23 out.
SSDEEP_RE = re.compile(r"(?<![:\d])\d{1,6}:[a-zA-Z0-9/+]{6,}:[a-zA-Z0-9/+]{6,}(?![:\da-zA-Z])")

FILE_NAME_RE = re.compile(
    r"(?<![\w.\-/\\@])\w[\w\-()]*(?:\.[\w\-()]+)*\.(?:" + _EXT_ALTERNATION + r")(?![\w\-]|\.\w)",
    re.IGNORECASE,
)

MAC_RE = re.compile(
    r"(?<![:\w-])(?:[0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}(?![:\w-])"
    r"|(?<![.\w])(?:[0-9A-Fa-f]{4}\.){2}[0-9A-Fa-f]{4}(?![.\w])"
)

BITCOIN_RE = re.compile(
    r"(?<![a-zA-Z0-9])(?:[13][a-km-zA-HJ-NP-Z1-9]{25,34}|bc1[a-z0-9]{39,59})(?![a-zA-Z0-9])"
)

ETHEREUM_RE = re.compile(r"(?<![a-zA-Z0-9])0x[a-fA-F0-9]{40}(?![a-zA-Z0-9])")

ASN_RE = re.compile(r"(?<![a-zA-Z])ASN?\d{1,10}(?![a-zA-Z0-9])", re.IGNORECASE)

IBAN_RE = re.compile(r"\b[A-Z]{2}\d{2}[A-Z0-9]{4,30}\b")

PAYMENT_CARD_RE = re.compile(
    r"(?<![\d-])(?:"
    r"4\d{12}(?:\d{3})?"
    r"|5[1-5]\d{14}"
    r"|3[47]\d{13}"
    r"|6(?:011|5\d{2})\d{12}"
    r"|[2-6]\d{3}(?:[- ]\d{4}){3}"
    r")(?![\d-])"
)

PHONE_RE = re.compile(r"(?<![\w+])\+[1-9]\d{0,2}(?:[-. ]?\(?\d{1,4}\)?){2,5}(?!\d)")

REGISTRY_KEY_RE = re.compile(
    r"\b(?:HKEY_(?:LOCAL_MACHINE|CURRENT_USER|CLASSES_ROOT|USERS|CURRENT_CONFIG)"
    r"|HK(?:LM|CU|CR|U|CC))(?:\\[A-Za-z0-9_\-.{}]+)+(?<!\.)",
    re.IGNORECASE,
)

# Browser user agent: the Mozilla/x.y product token and its comment, then any
# further product tokens or comments.
USER_AGENT_RE = re.compile(
    r"\bMozilla/\d+\.\d+ ?\([^()\r\n]+\)"
    r"(?: ?(?:(?:AppleWebKit|Gecko|Chrome|CriOS|Firefox|Safari|Version|Mobile|Edge?|OPR)"
    r"(?:/\w+(?:\.\w+)*)?(?!\w)|\([^()\r\n]+\)))*"
)

# Colon-separated certificate fingerprints (SHA-1: 20 bytes, SHA-256: 32 bytes).
X509_SHA1_RE = re.compile(r"(?<![:\w])(?:[0-9A-Fa-f]{2}:){19}[0-9A-Fa-f]{2}(?![:\w])")
X509_SHA256_RE = re.compile(r"(?<![:\w])(?:[0-9A-Fa-f]{2}:){31}[0-9A-Fa-f]{2}(?![:\w])")

# Fixed-format identifiers detected outside the overlap sweep.
CVE_DASHES = "-\u2010\u2011\u2012\u2013\u2014\u2015\u2212\u00ad\ufe63\uff0d"
_CVE_INVISIBLE = r"[ \u200b\u200c\u200d\u2060\ufeff]*"
_CVE_DASH = "[" + re.escape(CVE_DASHES) + "]"
CVE_PATTERN = re.compile(
    r"(?<!\w)CVE" + _CVE_INVISIBLE + _CVE_DASH + _CVE_INVISIBLE + r"\d{4}"
    + _CVE_INVISIBLE + _CVE_DASH + _CVE_INVISIBLE + r"\d{4,7}(?!\d)",
    re.IGNORECASE,
)

MITRE_PATTERN = re.compile(r"(?<![\w.])T\d{4}(?:\.\d{3})?(?!\w|\.\d)")
MITRE_ID_RE = re.compile(r"^T\d{4}(?:\.\d{3})?$", re.IGNORECASE)

# Named entity types fetched from platforms for name matching.
SDO_SEARCH_TYPES = (
    "Intrusion-Set",
    "Malware",
    "Threat-Actor",
    "Campaign",
    "Tool",
    "Attack-Pattern",
)

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_VERSION_STEM_RE = re.compile(r"^v?\d+(?:\.\d+)+$|^v\d+$", re.IGNORECASE)


def normalize_cve(text: str) -> str:
    """Canonical CVE id: upper case, ASCII hyphens, no padding characters."""
    table = {ord(dash): "-" for dash in CVE_DASHES}
    cleaned = re.sub(r"[\s\u200b\u200c\u200d\u2060\ufeff]", "", text.translate(table))
    return cleaned.upper()


def create_name_pattern(name: str) -> re.Pattern:
    """Build a whole-word, case-insensitive pattern for an entity name."""
    return re.compile(rf"\b{re.escape(name)}\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Validators. Each receives the refanged match text.
# ---------------------------------------------------------------------------

def validate_url(value: str) -> bool:
    return bool(validators.url(value))


def validate_ipv4(value: str) -> bool:
    """Reject the unspecified and broadcast addresses."""
    if value in ("0.0.0.0", "255.255.255.255"):
        return False
    return bool(validators.ipv4(value))


def validate_ipv6(value: str) -> bool:
    return bool(validators.ipv6(value))


def validate_domain(value: str) -> bool:
    """Require two labels and a final label that is not a code file extension."""
    labels = value.rstrip(".").split(".")
    if len(labels) < 2 or not all(labels):
        return False
    return labels[-1].lower() not in CODE_FILE_EXTENSIONS


def validate_md5(value: str) -> bool:
    return not _UUID_RE.match(value)


def file_extension(value: str) -> Optional[str]:
    """Return the allow-listed extension ``value`` ends with, if any."""
    lowered = value.lower()
    for ext in sorted(FILE_EXTENSIONS, key=len, reverse=True):
        if lowered.endswith(f".{ext}"):
            return ext
    return None


def validate_file_name(value: str) -> bool:
    """Accept ``name.ext`` where ext is allow-listed and name is not a bare version number."""
    ext = file_extension(value)
    if ext is None:
        return False
    stem = value[: -(len(ext) + 1)]
    if not stem or stem.startswith("."):
        return False
    return not _VERSION_STEM_RE.match(stem)


def luhn_checksum_valid(number: str) -> bool:
    """Luhn mod-10 check over the digits of ``number``."""
    digits = [int(ch) for ch in number if ch.isdigit()]
    if not digits:
        return False
    total = 0
    for index, digit in enumerate(reversed(digits)):
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def validate_payment_card(value: str) -> bool:
    digits = re.sub(r"\D", "", value)
    return 13 <= len(digits) <= 19 and luhn_checksum_valid(digits)


def validate_iban(value: str) -> bool:
    return 15 <= len(value) <= 34


def validate_phone(value: str) -> bool:
    digit_count = sum(ch.isdigit() for ch in value)
    return 7 <= digit_count <= 15


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class PatternRegistry:
    """Immutable, priority-ordered collection of pattern definitions."""

    def __init__(self, patterns: Iterable[PatternDefinition]):
        self._patterns = tuple(sorted(patterns, key=lambda p: p.priority, reverse=True))

    def __iter__(self) -> Iterator[PatternDefinition]:
        return iter(self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    @property
    def patterns(self) -> tuple[PatternDefinition, ...]:
        return self._patterns

    def get(self, name: str) -> Optional[PatternDefinition]:
        for pattern in self._patterns:
            if pattern.name == name:
                return pattern
        return None

    def without(self, types: Iterable[ObservableType]) -> "PatternRegistry":
        """Derive a registry with every pattern of the given types removed."""
        excluded = set(types)
        return PatternRegistry(p for p in self._patterns if p.type not in excluded)

    def validate(self, pattern: PatternDefinition, matched_text: str) -> bool:
        """Run the pattern's validator against the refanged match."""
        if pattern.validate is None:
            return True
        return pattern.validate(refang_indicator(matched_text))


DEFAULT_PATTERNS: tuple[PatternDefinition, ...] = (
    PatternDefinition("url", ObservableType.URL, URL_RE, 100, validate_url),
    PatternDefinition("email", ObservableType.EMAIL, EMAIL_RE, 95),
    PatternDefinition("domain", ObservableType.DOMAIN, DOMAIN_RE, 90, validate_domain),
    PatternDefinition("user_agent", ObservableType.USER_AGENT, USER_AGENT_RE, 86),
    PatternDefinition("ipv6", ObservableType.IPV6, IPV6_RE, 85, validate_ipv6),
    PatternDefinition("ipv4", ObservableType.IPV4, IPV4_RE, 84, validate_ipv4),
    PatternDefinition("sha512", ObservableType.FILE, SHA512_RE, 80, hash_kind=HashKind.SHA512),
    PatternDefinition("sha256", ObservableType.FILE, SHA256_RE, 79, hash_kind=HashKind.SHA256),
    PatternDefinition("sha1", ObservableType.FILE, SHA1_RE, 78, hash_kind=HashKind.SHA1),
    PatternDefinition("md5", ObservableType.FILE, MD5_RE, 77, validate_md5, HashKind.MD5),
    PatternDefinition("ssdeep", ObservableType.FILE, SSDEEP_RE, 76, hash_kind=HashKind.SSDEEP),
    PatternDefinition("file_name", ObservableType.FILE, FILE_NAME_RE, 70, validate_file_name),
    PatternDefinition("x509_sha256", ObservableType.X509_CERTIFICATE, X509_SHA256_RE, 67, hash_kind=HashKind.SHA256),
    PatternDefinition("x509_sha1", ObservableType.X509_CERTIFICATE, X509_SHA1_RE, 66, hash_kind=HashKind.SHA1),
    PatternDefinition("mac", ObservableType.MAC, MAC_RE, 65),
    PatternDefinition("bitcoin", ObservableType.CRYPTO_WALLET, BITCOIN_RE, 60),
    PatternDefinition("ethereum", ObservableType.CRYPTO_WALLET, ETHEREUM_RE, 59),
    PatternDefinition("asn", ObservableType.ASN, ASN_RE, 50),
    PatternDefinition("iban", ObservableType.BANK_ACCOUNT, IBAN_RE, 45, validate_iban),
    PatternDefinition("payment_card", ObservableType.PAYMENT_CARD, PAYMENT_CARD_RE, 44, validate_payment_card),
    PatternDefinition("phone", ObservableType.PHONE, PHONE_RE, 40, validate_phone),
    PatternDefinition("registry_key", ObservableType.REGISTRY_KEY, REGISTRY_KEY_RE, 35),
)


@lru_cache(maxsize=1)
def get_default_registry() -> PatternRegistry:
    """Return the shared registry of built-in patterns."""
    return PatternRegistry(DEFAULT_PATTERNS)
