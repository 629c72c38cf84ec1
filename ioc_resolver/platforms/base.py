"""Base class for platform clients."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from ioc_resolver.models import PlatformInfo


class PlatformRequestError(Exception):
    """Raised by platform clients when a request fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PlatformClient(ABC):
    """
    Contract every connected threat-intelligence platform implements.

    Entities are plain dicts carrying at least ``id``, ``entity_type`` and a
    ``name`` or ``value``. Any method may raise; the message must be readable.
    """

    platform_type: str = ""

    # Entity types pulled into the entity cache on refresh.
    cached_entity_types: tuple[str, ...] = ()

    def __init__(self, url: str, api_token: str, platform_id: str = ""):
        self.url = url.rstrip("/")
        self.api_token = api_token
        self.platform_id = platform_id

    @abstractmethod
    async def search_entities(self, query: str) -> list[dict[str, Any]]:
        """
        Full-text search for entities matching ``query``.

        Args:
            query: Value or name to look for

        Returns:
            Normalized entity dicts
        """
        ...

    @abstractmethod
    async def get_entity_by_id(
        self, entity_id: str, entity_type: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Fetch one entity, or None if the platform does not know it."""
        ...

    @abstractmethod
    async def test_connection(self) -> PlatformInfo:
        """Check credentials and report the platform identity."""
        ...

    @abstractmethod
    async def list_entities(self, entity_type: str) -> list[dict[str, Any]]:
        """List every entity of one type (used to fill the entity cache)."""
        ...

    async def close(self) -> None:
        """Release network resources. Clients without any may keep the default."""
        return None
