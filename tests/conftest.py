"""Pytest configuration and shared fixtures."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from ioc_resolver.models import PlatformInfo


@pytest.fixture
def e2e_text():
    """Defanged report snippet with an email, a URL and an MD5 hash."""
    return (
        "Contact user[@]evil[.]example[.]com via hxxps://evil[.]example[.]com/payload, "
        "hash d41d8cd98f00b204e9800998ecf8427e"
    )


@pytest.fixture
def make_client():
    """
    Factory for mock platform clients.

    ``entities`` maps entity type -> list returned by ``list_entities``;
    ``search`` is the list returned by ``search_entities``.
    """

    def _make(platform_type="opencti", cached_types=("Malware",), entities=None, search=None):
        entities = entities or {}
        client = MagicMock()
        client.platform_type = platform_type
        client.cached_entity_types = tuple(cached_types)
        client.search_entities = AsyncMock(return_value=list(search or []))
        client.list_entities = AsyncMock(side_effect=lambda etype: list(entities.get(etype, [])))
        client.get_entity_by_id = AsyncMock(return_value=None)
        client.test_connection = AsyncMock(
            return_value=PlatformInfo(platform_type=platform_type, url="https://platform.example.com")
        )
        client.close = AsyncMock()
        return client

    return _make


@pytest.fixture
def malware_entities():
    """Malware entities as returned by a platform listing."""
    return [
        {"id": "malware--1", "entity_type": "Malware", "name": "Emotet", "aliases": ["Heodo", "Geodo"]},
        {"id": "malware--2", "entity_type": "Malware", "name": "Cobalt Strike", "aliases": []},
        {"id": "malware--3", "entity_type": "Malware", "name": "Software", "aliases": []},
    ]
