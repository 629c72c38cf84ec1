"""Attach platform matches to scan detections: entity cache first, live search second."""

import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional, Union

from ioc_resolver.cache import EntityCache
from ioc_resolver.models import (
    CachedEntity,
    DetectedEntity,
    DetectedObservable,
    PlatformMatch,
    ScanResult,
)
from ioc_resolver.platforms.base import PlatformClient
from ioc_resolver.platforms.fanout import SEARCH_TIMEOUT, search_across_platforms

logger = logging.getLogger("ioc_resolver.aggregator")

Detection = Union[DetectedObservable, DetectedEntity]


def entity_matches(entity: Mapping[str, Any], value: str) -> bool:
    """
    True if a search result is exactly ``value`` (case-insensitive).

    Platform search is fuzzy; only results whose name, value, alias, MITRE id
    or one of whose hashes equals the value count as a match.
    """
    needle = value.strip().lower()
    candidates: list[Any] = [entity.get("name"), entity.get("value"), entity.get("x_mitre_id")]
    candidates.extend(entity.get("aliases") or [])
    hashes = entity.get("hashes") or {}
    if isinstance(hashes, Mapping):
        candidates.extend(hashes.values())
    return any(isinstance(c, str) and c.strip().lower() == needle for c in candidates)


def _match_from_cache(entity: CachedEntity) -> PlatformMatch:
    return PlatformMatch(
        platform_id=entity.platform_id,
        entity_id=entity.id,
        entity_type=entity.type,
        entity_data={"name": entity.name, "aliases": entity.aliases, "cached": True},
    )


def _match_from_result(result: Mapping[str, Any]) -> PlatformMatch:
    return PlatformMatch(
        platform_id=result.get("platform_id", ""),
        entity_id=str(result.get("id")),
        entity_type=result.get("entity_type") or "",
        entity_data=dict(result),
    )


async def _find_matches(
    value: str,
    clients: Mapping[str, PlatformClient],
    cache: Optional[EntityCache],
    platform_id: Optional[str],
    timeout: float,
) -> list[PlatformMatch]:
    if cache is not None:
        cached = cache.lookup(value)
        if platform_id:
            cached = [e for e in cached if e.platform_id == platform_id]
        if cached:
            return [_match_from_cache(e) for e in cached]

    if not clients:
        return []

    async def _search(client: PlatformClient) -> list[dict[str, Any]]:
        return await client.search_entities(value)

    results = await search_across_platforms(clients, platform_id, _search, timeout, label=f"search {value!r}")
    return [_match_from_result(r) for r in results if entity_matches(r, value)]


async def _resolve(
    detections: Iterable[Detection],
    clients: Mapping[str, PlatformClient],
    cache: Optional[EntityCache],
    platform_id: Optional[str],
    timeout: float,
) -> int:
    groups: dict[tuple[str, str], list[Detection]] = {}
    for detection in detections:
        groups.setdefault(detection.lookup_key, []).append(detection)

    lookups = {
        key: (group[0].refanged_value if isinstance(group[0], DetectedObservable) else group[0].name)
        for key, group in groups.items()
    }
    outcomes = await asyncio.gather(
        *[_find_matches(value, clients, cache, platform_id, timeout) for value in lookups.values()]
    )

    resolved = 0
    for key, matches in zip(lookups, outcomes):
        if matches:
            resolved += 1
        for detection in groups[key]:
            for match in matches:
                detection.add_match(match)
            if isinstance(detection, DetectedEntity) and not detection.type and matches:
                detection.type = matches[0].entity_type
    return resolved


async def resolve_observables(
    observables: list[DetectedObservable],
    clients: Mapping[str, PlatformClient],
    cache: Optional[EntityCache] = None,
    platform_id: Optional[str] = None,
    timeout: float = SEARCH_TIMEOUT,
) -> list[DetectedObservable]:
    """
    Look up every distinct observable value and attach the platform matches.

    Identical values (same type and refanged value) are looked up once.

    Args:
        observables: Detections to enrich in place
        clients: Platform id -> client
        cache: Entity cache consulted before any live search
        platform_id: Restrict to one platform (default: all)
        timeout: Per-platform search budget in seconds

    Returns:
        The same observables, enriched
    """
    resolved = await _resolve(observables, clients, cache, platform_id, timeout)
    logger.info(f"Resolved {resolved} distinct observable value(s) out of {len(observables)} detection(s)")
    return observables


async def resolve_entities(
    entities: list[DetectedEntity],
    clients: Mapping[str, PlatformClient],
    cache: Optional[EntityCache] = None,
    platform_id: Optional[str] = None,
    timeout: float = SEARCH_TIMEOUT,
) -> list[DetectedEntity]:
    """Look up entity names (CVE ids, technique ids, names) not already resolved."""
    pending = [e for e in entities if not e.found]
    resolved = await _resolve(pending, clients, cache, platform_id, timeout)
    logger.info(f"Resolved {resolved} distinct entity name(s) out of {len(pending)} pending")
    return entities


async def resolve_scan(
    result: ScanResult,
    clients: Mapping[str, PlatformClient],
    cache: Optional[EntityCache] = None,
    platform_id: Optional[str] = None,
    timeout: float = SEARCH_TIMEOUT,
) -> ScanResult:
    """Resolve every detection of a scan against the cache and the platforms."""
    await asyncio.gather(
        resolve_observables(result.observables, clients, cache, platform_id, timeout),
        resolve_entities(
            [*result.cves, *result.attack_patterns, *result.entities],
            clients, cache, platform_id, timeout,
        ),
    )
    return result
