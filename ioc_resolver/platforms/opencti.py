"""OpenCTI platform client."""

import asyncio
import logging
from functools import partial
from typing import Any, Callable, Optional

from pycti import OpenCTIApiClient

from ioc_resolver.detection.patterns import SDO_SEARCH_TYPES
from ioc_resolver.models import PlatformInfo
from ioc_resolver.platforms.base import PlatformClient, PlatformRequestError
from ioc_resolver.rate_limiter import TokenBucketRateLimiter, make_limiter

logger = logging.getLogger("ioc_resolver.opencti")

SEARCH_PAGE_SIZE = 50

VERSION_QUERY = "query { about { version } }"
ME_QUERY = "query { me { name user_email } }"


def normalize_entity(raw: dict[str, Any]) -> dict[str, Any]:
    """Flatten an OpenCTI object into the entity dict shape used by the resolver."""
    hashes = raw.get("hashes") or []
    if isinstance(hashes, list):
        hashes = {h.get("algorithm"): h.get("hash") for h in hashes if h.get("hash")}

    aliases = raw.get("aliases") or raw.get("x_opencti_aliases") or []

    return {
        "id": raw.get("id"),
        "standard_id": raw.get("standard_id"),
        "entity_type": raw.get("entity_type"),
        "name": raw.get("name"),
        "value": raw.get("observable_value") or raw.get("value"),
        "aliases": list(aliases),
        "hashes": hashes,
        "x_mitre_id": raw.get("x_mitre_id"),
        "score": raw.get("x_opencti_score"),
    }


class OpenCTIClient(PlatformClient):
    """OpenCTI client. pycti is synchronous, so every call runs in the default executor."""

    platform_type = "opencti"
    cached_entity_types = (*SDO_SEARCH_TYPES, "Vulnerability")

    def __init__(
        self,
        url: str,
        api_token: str,
        platform_id: str = "",
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
    ):
        """Initialize the OpenCTI client; the pycti client is created on first use."""
        super().__init__(url, api_token, platform_id)
        self.rate_limiter = rate_limiter or make_limiter(self.platform_type)
        self._api: Optional[OpenCTIApiClient] = None

    def _ensure_api(self) -> OpenCTIApiClient:
        """Create the pycti client (performs its own health check)."""
        if self._api is None:
            try:
                self._api = OpenCTIApiClient(url=self.url, token=self.api_token, log_level="error")
            except ValueError as e:
                raise PlatformRequestError(f"OpenCTI unreachable: {e}") from e
        return self._api

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        await self.rate_limiter.acquire()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _search_sync(self, query: str) -> list[dict[str, Any]]:
        api = self._ensure_api()
        observables = api.stix_cyber_observable.list(search=query, first=SEARCH_PAGE_SIZE) or []
        domain_objects = api.stix_domain_object.list(
            search=query, types=list(self.cached_entity_types), first=SEARCH_PAGE_SIZE
        ) or []
        return [normalize_entity(o) for o in [*observables, *domain_objects]]

    async def search_entities(self, query: str) -> list[dict[str, Any]]:
        """Search observables and named domain objects."""
        results = await self._run(self._search_sync, query)
        logger.debug(f"OpenCTI {self.platform_id}: {len(results)} result(s) for {query!r}")
        return results

    def _read_sync(self, entity_id: str, entity_type: Optional[str]) -> Optional[dict[str, Any]]:
        api = self._ensure_api()
        if entity_type is None or entity_type not in self.cached_entity_types:
            raw = api.stix_cyber_observable.read(id=entity_id)
            if raw:
                return normalize_entity(raw)
        raw = api.stix_domain_object.read(id=entity_id)
        return normalize_entity(raw) if raw else None

    async def get_entity_by_id(
        self, entity_id: str, entity_type: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Read one entity by id."""
        return await self._run(self._read_sync, entity_id, entity_type)

    def _list_sync(self, entity_type: str) -> list[dict[str, Any]]:
        api = self._ensure_api()
        if entity_type == "Vulnerability":
            raw = api.vulnerability.list(getAll=True) or []
        else:
            raw = api.stix_domain_object.list(types=[entity_type], getAll=True) or []
        return [normalize_entity(o) for o in raw]

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]]:
        """List all entities of one type."""
        return await self._run(self._list_sync, entity_type)

    def _about_sync(self) -> PlatformInfo:
        api = self._ensure_api()
        if not api.health_check():
            raise PlatformRequestError("OpenCTI health check failed")
        about = api.query(VERSION_QUERY).get("data", {}).get("about", {})
        me = api.query(ME_QUERY).get("data", {}).get("me", {})
        return PlatformInfo(
            platform_type=self.platform_type,
            url=self.url,
            version=about.get("version"),
            user=me.get("name") or me.get("user_email"),
        )

    async def test_connection(self) -> PlatformInfo:
        """Check the token and report the OpenCTI version."""
        info = await self._run(self._about_sync)
        logger.info(f"Connected to OpenCTI {info.version} at {self.url}")
        return info
