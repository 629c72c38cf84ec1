"""Data models for detection and platform resolution."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


class ObservableType(Enum):
    """Observable types, named after their STIX cyber-observable counterparts."""

    URL = "Url"
    EMAIL = "Email-Addr"
    DOMAIN = "Domain-Name"
    IPV4 = "IPv4-Addr"
    IPV6 = "IPv6-Addr"
    FILE = "StixFile"
    MAC = "Mac-Addr"
    CRYPTO_WALLET = "Cryptocurrency-Wallet"
    ASN = "Autonomous-System"
    BANK_ACCOUNT = "Bank-Account"
    PAYMENT_CARD = "Payment-Card"
    PHONE = "Phone-Number"
    REGISTRY_KEY = "Windows-Registry-Key"
    USER_AGENT = "User-Agent"
    X509_CERTIFICATE = "X509-Certificate"


class HashKind(Enum):
    """Hash algorithm of a file hash or certificate fingerprint observable."""

    MD5 = "MD5"
    SHA1 = "SHA-1"
    SHA256 = "SHA-256"
    SHA512 = "SHA-512"
    SSDEEP = "SSDEEP"


@dataclass(frozen=True)
class PatternDefinition:
    """A detection rule: compiled regex plus optional validator, ranked by priority."""

    name: str
    type: ObservableType
    regex: re.Pattern
    priority: int
    validate: Optional[Callable[[str], bool]] = None
    hash_kind: Optional[HashKind] = None


@dataclass(frozen=True)
class RawCandidate:
    """A validated regex hit, before overlap resolution."""

    type: ObservableType
    matched_text: str
    start_index: int
    end_index: int
    priority: int
    pattern_name: str
    hash_kind: Optional[HashKind] = None

    @property
    def length(self) -> int:
        return self.end_index - self.start_index


@dataclass
class PlatformMatch:
    """One platform's record for a detected value."""

    platform_id: str
    entity_id: str
    entity_type: str
    entity_data: dict = field(default_factory=dict)


def _add_match(target: Any, match: PlatformMatch) -> None:
    for existing in target.platform_matches:
        if existing.platform_id == match.platform_id and existing.entity_id == match.entity_id:
            return
    target.platform_matches.append(match)
    target.found = True


@dataclass
class DetectedObservable:
    """An observable found in text, with offsets into the original string."""

    type: ObservableType
    value: str
    refanged_value: str
    is_defanged: bool
    start_index: int
    end_index: int
    context: str = ""
    hash_kind: Optional[HashKind] = None
    found: bool = False
    platform_matches: list[PlatformMatch] = field(default_factory=list)

    @property
    def lookup_key(self) -> tuple[str, str]:
        """Key used to group identical observables before platform lookups."""
        return (self.type.value, self.refanged_value.lower())

    def add_match(self, match: PlatformMatch) -> None:
        """Attach a platform match; sets ``found``."""
        _add_match(self, match)


@dataclass
class DetectedEntity:
    """A named entity (CVE, MITRE technique, cached SDO) found in text."""

    type: str
    name: str
    matched_value: str
    start_index: int
    end_index: int
    aliases: list[str] = field(default_factory=list)
    context: str = ""
    found: bool = False
    platform_matches: list[PlatformMatch] = field(default_factory=list)

    @property
    def lookup_key(self) -> tuple[str, str]:
        return (self.type, self.name.lower())

    def add_match(self, match: PlatformMatch) -> None:
        """Attach a platform match; sets ``found``."""
        _add_match(self, match)


@dataclass
class CachedEntity:
    """Minimal record of a platform entity kept in the entity cache."""

    id: str
    name: str
    type: str
    platform_id: str
    aliases: list[str] = field(default_factory=list)
    x_mitre_id: Optional[str] = None

    def lookup_keys(self) -> list[str]:
        """Lower-cased names under which this entity can be found."""
        keys = [self.name, *self.aliases]
        if self.x_mitre_id:
            keys.append(self.x_mitre_id)
        seen: list[str] = []
        for key in keys:
            lowered = key.strip().lower()
            if lowered and lowered not in seen:
                seen.append(lowered)
        return seen


@dataclass
class PlatformCacheEntry:
    """Snapshot of one entity type on one platform."""

    platform_id: str
    entity_type: str
    entities: dict[str, CachedEntity] = field(default_factory=dict)
    last_refreshed_at: Optional[float] = None
    is_refreshing: bool = False


@dataclass
class PlatformError:
    """Failure of a single platform within a fan-out."""

    platform_id: str
    message: str
    timed_out: bool = False


@dataclass
class FanOutResult:
    """Deduplicated results and per-platform errors of a fan-out call."""

    results: list[dict] = field(default_factory=list)
    errors: list[PlatformError] = field(default_factory=list)


@dataclass
class PlatformResponse:
    """Uniform success/data/error envelope returned to callers."""

    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "PlatformResponse":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "PlatformResponse":
        return cls(success=False, error=error)


@dataclass
class PlatformInfo:
    """Identity of a platform instance as reported by its connection test."""

    platform_type: str
    url: str
    version: Optional[str] = None
    name: Optional[str] = None
    user: Optional[str] = None


@dataclass
class ScanResult:
    """Everything a single scan of a text produced."""

    observables: list[DetectedObservable] = field(default_factory=list)
    cves: list[DetectedEntity] = field(default_factory=list)
    attack_patterns: list[DetectedEntity] = field(default_factory=list)
    entities: list[DetectedEntity] = field(default_factory=list)
    scan_time_ms: float = 0.0

    @property
    def total(self) -> int:
        return len(self.observables) + len(self.cves) + len(self.attack_patterns) + len(self.entities)

    def all_detections(self) -> list:
        """All detections ordered by their position in the text."""
        detections: list = [*self.observables, *self.cves, *self.attack_patterns, *self.entities]
        return sorted(detections, key=lambda d: d.start_index)


@dataclass
class CacheStats:
    """Summary of the entity cache contents."""

    total: int
    by_type: dict[str, int]
    by_platform: dict[str, int]
    age_seconds: Optional[float]
    is_expired: bool
    refreshing: bool
