"""Tests for configuration loading."""

import pytest

from ioc_resolver.config import (
    PlatformConfig,
    ResolverConfig,
    _parse_csv_list,
    _validate_platform_type,
    load_config,
)
from ioc_resolver.models import ObservableType


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove resolver variables that may leak from the environment."""
    for var in (
        "PLATFORMS", "DISABLED_OBSERVABLE_TYPES", "CONNECTION_TIMEOUT", "SEARCH_TIMEOUT",
        "ENTITY_FETCH_TIMEOUT", "CACHE_DURATION", "CACHE_WAIT_TIMEOUT",
        "MIN_ENTITY_NAME_LENGTH", "CONTEXT_WINDOW", "RESOLVER_DEBUG",
    ):
        monkeypatch.delenv(var, raising=False)


def _set_platform(monkeypatch, prefix, platform_type="opencti", url="https://cti.example.com", token="token"):
    """Set the required variables of one platform."""
    monkeypatch.setenv(f"{prefix}_TYPE", platform_type)
    monkeypatch.setenv(f"{prefix}_URL", url)
    monkeypatch.setenv(f"{prefix}_TOKEN", token)


class TestValidatePlatformType:
    """Tests for platform type validation."""

    def test_valid_types(self):
        """Test that valid types are accepted and lowercased."""
        assert _validate_platform_type("opencti", "test") == "opencti"
        assert _validate_platform_type("OpenAEV", "test") == "openaev"

    def test_invalid_type_raises(self):
        """Test that invalid types raise ValueError."""
        with pytest.raises(ValueError, match="Invalid"):
            _validate_platform_type("misp", "test")

        with pytest.raises(ValueError, match="Invalid"):
            _validate_platform_type("", "test")


class TestParseCsvList:
    """Tests for _parse_csv_list."""

    def test_strips_and_skips_blanks(self):
        """Test whitespace handling."""
        assert _parse_csv_list(" a, b ,,c ", []) == ["a", "b", "c"]

    def test_default_when_unset(self):
        """Test that the default is returned for empty values."""
        assert _parse_csv_list(None, ["x"]) == ["x"]
        assert _parse_csv_list("", ["x"]) == ["x"]


class TestLoadConfig:
    """Tests for load_config function."""

    def test_defaults_without_platforms(self):
        """Test that config loads with no platforms and default settings."""
        config = load_config()

        assert config.platforms == []
        assert config.connection_timeout == 8.0
        assert config.search_timeout == 10.0
        assert config.entity_fetch_timeout == 15.0
        assert config.cache_duration == 3600.0
        assert config.min_entity_name_length == 4
        assert config.debug is False

    def test_platforms_in_registration_order(self, monkeypatch):
        """Test that platforms are loaded in the order they are listed."""
        monkeypatch.setenv("PLATFORMS", "prod-cti, lab")
        _set_platform(monkeypatch, "PROD_CTI", url="https://cti.example.com/")
        _set_platform(monkeypatch, "LAB", platform_type="openaev", url="https://aev.example.com")
        monkeypatch.setenv("LAB_NAME", "Lab AEV")
        monkeypatch.setenv("LAB_ENABLED", "false")
        monkeypatch.setenv("LAB_RATE_LIMIT", "30")

        config = load_config()

        assert [p.id for p in config.platforms] == ["prod-cti", "lab"]
        cti, lab = config.platforms
        assert cti.url == "https://cti.example.com"
        assert cti.name == "prod-cti"
        assert cti.enabled is True
        assert cti.rate_limit is None
        assert lab.platform_type == "openaev"
        assert lab.name == "Lab AEV"
        assert lab.enabled is False
        assert lab.rate_limit == 30.0
        assert list(config.platform_map) == ["prod-cti", "lab"]

    def test_missing_platform_variable(self, monkeypatch):
        """Test that a listed platform without a token raises KeyError."""
        monkeypatch.setenv("PLATFORMS", "cti")
        monkeypatch.setenv("CTI_TYPE", "opencti")
        monkeypatch.setenv("CTI_URL", "https://cti.example.com")
        monkeypatch.delenv("CTI_TOKEN", raising=False)

        with pytest.raises(KeyError, match="CTI_TOKEN"):
            load_config()

    def test_invalid_platform_type(self, monkeypatch):
        """Test that an unsupported platform type raises ValueError."""
        monkeypatch.setenv("PLATFORMS", "cti")
        _set_platform(monkeypatch, "CTI", platform_type="misp")

        with pytest.raises(ValueError, match="Invalid CTI_TYPE"):
            load_config()

    def test_duplicate_platform_id(self, monkeypatch):
        """Test that duplicate ids are rejected."""
        monkeypatch.setenv("PLATFORMS", "cti,cti")
        _set_platform(monkeypatch, "CTI")

        with pytest.raises(ValueError, match="Duplicate platform id"):
            load_config()

    def test_custom_settings(self, monkeypatch):
        """Test that timeouts and scanner settings are read."""
        monkeypatch.setenv("SEARCH_TIMEOUT", "2.5")
        monkeypatch.setenv("CACHE_DURATION", "60")
        monkeypatch.setenv("MIN_ENTITY_NAME_LENGTH", "3")
        monkeypatch.setenv("CONTEXT_WINDOW", "20")
        monkeypatch.setenv("RESOLVER_DEBUG", "true")

        config = load_config()

        assert config.search_timeout == 2.5
        assert config.cache_duration == 60.0
        assert config.min_entity_name_length == 3
        assert config.context_window == 20
        assert config.debug is True

    def test_disabled_observable_types(self, monkeypatch):
        """Test that disabled types are parsed into enum members."""
        monkeypatch.setenv("DISABLED_OBSERVABLE_TYPES", "Phone-Number, Bank-Account")

        config = load_config()

        assert config.disabled_types == [ObservableType.PHONE, ObservableType.BANK_ACCOUNT]

    def test_invalid_disabled_type(self, monkeypatch):
        """Test that an unknown observable type raises ValueError."""
        monkeypatch.setenv("DISABLED_OBSERVABLE_TYPES", "Phone")

        with pytest.raises(ValueError, match="Invalid DISABLED_OBSERVABLE_TYPES"):
            load_config()


class TestResolverConfig:
    """Tests for ResolverConfig helpers."""

    def test_platform_map(self):
        """Test the id -> config mapping."""
        platform = PlatformConfig("cti", "opencti", "https://cti.example.com", "token")
        config = ResolverConfig(platforms=[platform])
        assert config.platform_map == {"cti": platform}
