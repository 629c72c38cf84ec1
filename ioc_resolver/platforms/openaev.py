"""OpenAEV platform client (REST API)."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from ioc_resolver.models import PlatformInfo
from ioc_resolver.platforms.base import PlatformClient, PlatformRequestError
from ioc_resolver.rate_limiter import TokenBucketRateLimiter, make_limiter

logger = logging.getLogger("ioc_resolver.openaev")

SEARCH_PAGE_SIZE = 20
LIST_PAGE_SIZE = 500
USER_AGENT = "ioc-resolver/0.1"


@dataclass(frozen=True)
class EntityEndpoint:
    """Where and how one OpenAEV entity type is searched, read and normalized."""

    base_path: str
    id_key: str
    name_key: str
    search_keys: tuple[str, ...] = ()
    value_key: Optional[str] = None
    alias_key: Optional[str] = None
    external_id_key: Optional[str] = None
    readable: bool = True


ENTITY_ENDPOINTS: dict[str, EntityEndpoint] = {
    "Asset": EntityEndpoint(
        "/api/endpoints", "asset_id", "asset_name",
        search_keys=("asset_name", "endpoint_hostname", "endpoint_ips"),
        value_key="endpoint_hostname", alias_key="endpoint_ips",
    ),
    "AssetGroup": EntityEndpoint(
        "/api/asset_groups", "asset_group_id", "asset_group_name",
        search_keys=("asset_group_name",),
    ),
    "Team": EntityEndpoint("/api/teams", "team_id", "team_name", search_keys=("team_name",)),
    "Player": EntityEndpoint(
        "/api/players", "user_id", "user_email",
        search_keys=("user_email", "user_firstname", "user_lastname"),
        readable=False,
    ),
    "AttackPattern": EntityEndpoint(
        "/api/attack_patterns", "attack_pattern_id", "attack_pattern_name",
        external_id_key="attack_pattern_external_id",
    ),
    "Finding": EntityEndpoint(
        "/api/findings", "finding_id", "finding_value", value_key="finding_value",
    ),
}


def build_search_body(query: str, keys: tuple[str, ...], page: int = 0, size: int = SEARCH_PAGE_SIZE) -> dict:
    """Paginated search body with an OR filter of ``contains`` on each key."""
    return {
        "page": page,
        "size": size,
        "filterGroup": {
            "mode": "or",
            "filters": [{"key": key, "operator": "contains", "values": [query]} for key in keys],
        },
    }


def normalize_entity(entity_type: str, raw: dict[str, Any]) -> dict[str, Any]:
    endpoint = ENTITY_ENDPOINTS[entity_type]
    aliases = raw.get(endpoint.alias_key) if endpoint.alias_key else None
    return {
        "id": raw.get(endpoint.id_key),
        "entity_type": entity_type,
        "name": raw.get(endpoint.name_key),
        "value": raw.get(endpoint.value_key) if endpoint.value_key else None,
        "aliases": list(aliases or []),
        "x_mitre_id": raw.get(endpoint.external_id_key) if endpoint.external_id_key else None,
    }


class OpenAEVClient(PlatformClient):
    """OpenAEV REST client using a lazily created aiohttp session."""

    platform_type = "openaev"
    cached_entity_types = ("Asset", "AssetGroup", "Team", "Player", "AttackPattern")

    def __init__(
        self,
        url: str,
        api_token: str,
        platform_id: str = "",
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
    ):
        """Initialize the OpenAEV client."""
        super().__init__(url, api_token, platform_id)
        self.rate_limiter = rate_limiter or make_limiter(self.platform_type)
        self.session: aiohttp.ClientSession | None = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure aiohttp session exists."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                }
            )
        return self.session

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        await self.rate_limiter.acquire()
        session = await self._ensure_session()
        async with session.request(method, f"{self.url}{path}", json=body) as response:
            if response.status >= 400:
                text = await response.text()
                raise PlatformRequestError(
                    f"OpenAEV API Error: {response.status} - {text}", status=response.status
                )
            return await response.json()

    async def _search_type(self, entity_type: str, query: str) -> list[dict[str, Any]]:
        endpoint = ENTITY_ENDPOINTS[entity_type]
        keys = endpoint.search_keys or (endpoint.name_key,)
        data = await self._request("POST", f"{endpoint.base_path}/search", build_search_body(query, keys))
        return [normalize_entity(entity_type, raw) for raw in (data or {}).get("content", [])]

    async def search_entities(self, query: str) -> list[dict[str, Any]]:
        """Search every searchable entity type concurrently."""
        batches = await asyncio.gather(
            *[self._search_type(entity_type, query) for entity_type in ENTITY_ENDPOINTS]
        )
        results = [entity for batch in batches for entity in batch]
        logger.debug(f"OpenAEV {self.platform_id}: {len(results)} result(s) for {query!r}")
        return results

    async def get_entity_by_id(
        self, entity_id: str, entity_type: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Read one entity; without a type, each readable type is tried in turn."""
        if entity_type is not None and entity_type not in ENTITY_ENDPOINTS:
            return None
        candidates = [entity_type] if entity_type else list(ENTITY_ENDPOINTS)

        for candidate in candidates:
            endpoint = ENTITY_ENDPOINTS[candidate]
            if not endpoint.readable:
                continue
            try:
                raw = await self._request("GET", f"{endpoint.base_path}/{entity_id}")
            except PlatformRequestError as e:
                if e.status == 404:
                    continue
                raise
            if raw:
                return normalize_entity(candidate, raw)
        return None

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]]:
        """Fetch every page of one entity type."""
        endpoint = ENTITY_ENDPOINTS[entity_type]
        results: list[dict[str, Any]] = []
        page, total_pages = 0, 1

        while page < total_pages:
            data = await self._request(
                "POST", f"{endpoint.base_path}/search", {"page": page, "size": LIST_PAGE_SIZE}
            ) or {}
            results.extend(normalize_entity(entity_type, raw) for raw in data.get("content", []))
            total_pages = int(data.get("totalPages", 0))
            page += 1

        logger.debug(f"OpenAEV {self.platform_id}: fetched {len(results)} {entity_type} in {page} page(s)")
        return results

    async def test_connection(self) -> PlatformInfo:
        """Check the token against /api/me and report platform settings."""
        me = await self._request("GET", "/api/me") or {}
        settings = await self._request("GET", "/api/settings") or {}
        return PlatformInfo(
            platform_type=self.platform_type,
            url=self.url,
            version=settings.get("platform_version"),
            name=settings.get("platform_name"),
            user=me.get("user_email"),
        )

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self.session:
            await self.session.close()
            self.session = None
