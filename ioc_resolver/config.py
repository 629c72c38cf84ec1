"""Configuration loader for the resolver."""

import os
from dataclasses import dataclass, field
from typing import Optional

from ioc_resolver.models import ObservableType

SUPPORTED_PLATFORM_TYPES = ("opencti", "openaev")


def _float_or_none(value: Optional[str]) -> Optional[float]:
    """Convert string to float or return None."""
    return float(value) if value else None


def _bool_from_str(value: str, default: bool = False) -> bool:
    """Convert string to boolean."""
    return value.lower() in ("true", "1", "yes") if value else default


def _parse_csv_list(value: Optional[str], default: list[str]) -> list[str]:
    """Parse a comma-separated string into a list, stripping whitespace."""
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class PlatformConfig:
    """One configured platform connection."""

    id: str
    platform_type: str
    url: str
    api_token: str
    name: str = ""
    enabled: bool = True
    rate_limit: Optional[float] = None


@dataclass
class ResolverConfig:
    """Resolver configuration from environment variables."""

    platforms: list[PlatformConfig] = field(default_factory=list)

    # Timeouts, in seconds
    connection_timeout: float = 8.0
    search_timeout: float = 10.0
    entity_fetch_timeout: float = 15.0

    # Entity cache
    cache_duration: float = 3600.0
    cache_wait_timeout: float = 300.0
    min_entity_name_length: int = 4

    # Scanner
    context_window: int = 50
    disabled_observable_types: list[str] = field(default_factory=list)

    debug: bool = False

    @property
    def platform_map(self) -> dict[str, PlatformConfig]:
        """Platform id -> config, in registration order."""
        return {p.id: p for p in self.platforms}

    @property
    def disabled_types(self) -> list[ObservableType]:
        return [ObservableType(value) for value in self.disabled_observable_types]


def _env_prefix(platform_id: str) -> str:
    return platform_id.upper().replace("-", "_")


def _validate_platform_type(value: str, name: str) -> str:
    """Validate a platform type string."""
    platform_type = value.strip().lower()
    if platform_type not in SUPPORTED_PLATFORM_TYPES:
        raise ValueError(
            f"Invalid {name}: '{value}'. Must be one of {SUPPORTED_PLATFORM_TYPES}"
        )
    return platform_type


def _load_platform(platform_id: str) -> PlatformConfig:
    """Read one platform's <ID>_TYPE/_URL/_TOKEN settings."""
    prefix = _env_prefix(platform_id)
    for suffix in ("TYPE", "URL", "TOKEN"):
        var = f"{prefix}_{suffix}"
        if not os.environ.get(var):
            raise KeyError(f"{var} is required because '{platform_id}' is in PLATFORMS")

    return PlatformConfig(
        id=platform_id,
        platform_type=_validate_platform_type(os.environ[f"{prefix}_TYPE"], f"{prefix}_TYPE"),
        url=os.environ[f"{prefix}_URL"].rstrip("/"),
        api_token=os.environ[f"{prefix}_TOKEN"],
        name=os.environ.get(f"{prefix}_NAME", platform_id),
        enabled=_bool_from_str(os.environ.get(f"{prefix}_ENABLED", ""), default=True),
        rate_limit=_float_or_none(os.environ.get(f"{prefix}_RATE_LIMIT")),
    )


def load_config() -> ResolverConfig:
    """Load configuration from environment variables."""
    platform_ids = _parse_csv_list(os.environ.get("PLATFORMS"), [])

    if len(set(platform_ids)) != len(platform_ids):
        raise ValueError(f"Duplicate platform id in PLATFORMS: {platform_ids}")

    platforms = [_load_platform(pid) for pid in platform_ids]

    disabled_types = _parse_csv_list(os.environ.get("DISABLED_OBSERVABLE_TYPES"), [])
    valid_types = {t.value for t in ObservableType}
    for value in disabled_types:
        if value not in valid_types:
            raise ValueError(
                f"Invalid DISABLED_OBSERVABLE_TYPES entry: '{value}'. Must be one of {sorted(valid_types)}"
            )

    return ResolverConfig(
        platforms=platforms,
        connection_timeout=float(os.environ.get("CONNECTION_TIMEOUT", "8")),
        search_timeout=float(os.environ.get("SEARCH_TIMEOUT", "10")),
        entity_fetch_timeout=float(os.environ.get("ENTITY_FETCH_TIMEOUT", "15")),
        cache_duration=float(os.environ.get("CACHE_DURATION", "3600")),
        cache_wait_timeout=float(os.environ.get("CACHE_WAIT_TIMEOUT", "300")),
        min_entity_name_length=int(os.environ.get("MIN_ENTITY_NAME_LENGTH", "4")),
        context_window=int(os.environ.get("CONTEXT_WINDOW", "50")),
        disabled_observable_types=disabled_types,
        debug=_bool_from_str(os.environ.get("RESOLVER_DEBUG", "")),
    )
