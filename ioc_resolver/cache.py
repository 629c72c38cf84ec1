"""In-memory entity cache: per-platform, per-entity-type snapshots."""

import asyncio
import logging
import time
from typing import Any, Callable, Mapping, Optional

from ioc_resolver.config import ResolverConfig
from ioc_resolver.detection.defang import generate_defanged_variants, refang_indicator
from ioc_resolver.detection.matching import is_mitre_id
from ioc_resolver.models import CachedEntity, CacheStats, PlatformCacheEntry, PlatformError
from ioc_resolver.platforms.base import PlatformClient
from ioc_resolver.platforms.fanout import (
    FETCH_FAILED_MESSAGE,
    PlatformTimeoutError,
    TIMEOUT_MESSAGE,
    error_message,
    race_with_timeout,
)

logger = logging.getLogger("ioc_resolver.cache")

# Generic words that are entity names on some platforms but noise in page text.
EXCLUDED_TERMS = frozenset(
    {"page", "test", "demo", "example", "sample", "default", "unknown", "none", "null",
     "undefined", "true", "false"}
)


def to_cached_entity(raw: Mapping[str, Any], platform_id: str, entity_type: str) -> Optional[CachedEntity]:
    """Reduce a platform entity dict to a cache record; None if it has no id or name."""
    entity_id = raw.get("id")
    name = raw.get("name") or raw.get("value")
    if not entity_id or not name:
        return None
    return CachedEntity(
        id=str(entity_id),
        name=str(name),
        type=raw.get("entity_type") or entity_type,
        platform_id=platform_id,
        aliases=[str(a) for a in raw.get("aliases") or [] if a],
        x_mitre_id=raw.get("x_mitre_id"),
    )


class EntityCache:
    """
    Snapshot of known entities, one entry per (platform, entity type).

    A refresh replaces an entry only after it fully succeeded; a failed or
    timed-out refresh keeps the previous snapshot. Refreshing a pair that is
    already refreshing is a no-op.
    """

    def __init__(
        self,
        clients: Mapping[str, PlatformClient],
        config: Optional[ResolverConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize an empty cache over the given clients."""
        self.clients = clients
        self.config = config or ResolverConfig()
        self.clock = clock
        self._entries: dict[tuple[str, str], PlatformCacheEntry] = {}

    @property
    def entries(self) -> dict[tuple[str, str], PlatformCacheEntry]:
        return self._entries

    def _pairs(self, platform_id: Optional[str], entity_type: Optional[str]) -> list[tuple[str, str]]:
        pairs = []
        for pid, client in self.clients.items():
            if platform_id is not None and pid != platform_id:
                continue
            for etype in client.cached_entity_types:
                if entity_type is None or etype == entity_type:
                    pairs.append((pid, etype))
        return pairs

    def _index(self, platform_id: str, entity_type: str, raw_entities: list[dict[str, Any]]) -> dict[str, CachedEntity]:
        index: dict[str, CachedEntity] = {}
        for raw in raw_entities or []:
            entity = to_cached_entity(raw, platform_id, entity_type)
            if entity is None:
                continue
            index[entity.id] = entity
            for key in entity.lookup_keys():
                index.setdefault(key, entity)
        return index

    async def _refresh_pair(self, platform_id: str, entity_type: str) -> Optional[PlatformError]:
        entry = self._entries.setdefault(
            (platform_id, entity_type), PlatformCacheEntry(platform_id, entity_type)
        )
        if entry.is_refreshing:
            logger.debug(f"Refresh of {platform_id}/{entity_type} already in progress")
            return None

        entry.is_refreshing = True
        client = self.clients[platform_id]
        try:
            raw_entities = await race_with_timeout(
                client.list_entities(entity_type),
                self.config.entity_fetch_timeout,
                platform_id,
                f"cache:{entity_type}",
            )
        except PlatformTimeoutError:
            logger.warning(f"Cache refresh of {platform_id}/{entity_type} timed out, keeping previous data")
            return PlatformError(platform_id, TIMEOUT_MESSAGE, timed_out=True)
        except Exception as e:
            message = error_message(e, FETCH_FAILED_MESSAGE)
            logger.warning(f"Cache refresh of {platform_id}/{entity_type} failed: {message}")
            return PlatformError(platform_id, message)
        finally:
            entry.is_refreshing = False

        entry.entities = self._index(platform_id, entity_type, raw_entities)
        entry.last_refreshed_at = self.clock()
        logger.debug(
            f"Cached {len({e.id for e in entry.entities.values()})} {entity_type} from {platform_id}"
        )
        return None

    async def refresh(
        self, platform_id: Optional[str] = None, entity_type: Optional[str] = None
    ) -> list[PlatformError]:
        """
        Refresh every matching (platform, entity type) pair concurrently.

        Args:
            platform_id: Only this platform (default: all)
            entity_type: Only this entity type (default: each client's cached types)

        Returns:
            One PlatformError per pair that failed
        """
        if platform_id is not None and platform_id not in self.clients:
            logger.warning(f"Cannot refresh unknown platform {platform_id!r}")
            return []

        pairs = self._pairs(platform_id, entity_type)
        outcomes = await asyncio.gather(*[self._refresh_pair(pid, etype) for pid, etype in pairs])
        errors = [outcome for outcome in outcomes if outcome is not None]

        logger.info(
            f"Entity cache refresh: {len(pairs) - len(errors)}/{len(pairs)} entity type(s) updated"
        )
        return errors

    def is_stale(self, platform_id: Optional[str] = None, entity_type: Optional[str] = None) -> bool:
        """True if any matching pair was never refreshed or is older than the cache duration."""
        now = self.clock()
        for key in self._pairs(platform_id, entity_type):
            entry = self._entries.get(key)
            if entry is None or entry.last_refreshed_at is None:
                return True
            if now - entry.last_refreshed_at > self.config.cache_duration:
                return True
        return False

    async def refresh_stale(self, force: bool = False) -> list[PlatformError]:
        """Refresh each platform whose snapshot is stale (or all of them when forced)."""
        errors: list[PlatformError] = []
        stale = [pid for pid in self.clients if force or self.is_stale(pid)]
        batches = await asyncio.gather(*[self.refresh(pid) for pid in stale])
        for batch in batches:
            errors.extend(batch)
        return errors

    def invalidate(self, platform_id: Optional[str] = None, entity_type: Optional[str] = None) -> int:
        """
        Drop matching snapshots.

        A pair with a refresh in flight is emptied instead of removed, so that
        refresh stays the only one for the pair and its result fills the entry.

        Returns:
            Number of entries invalidated
        """
        keys = [
            key for key in self._entries
            if (platform_id is None or key[0] == platform_id)
            and (entity_type is None or key[1] == entity_type)
        ]
        for key in keys:
            entry = self._entries[key]
            if entry.is_refreshing:
                entry.entities = {}
                entry.last_refreshed_at = None
            else:
                del self._entries[key]
        logger.debug(f"Invalidated {len(keys)} cache entr{'y' if len(keys) == 1 else 'ies'}")
        return len(keys)

    def lookup(self, value: str, entity_type: Optional[str] = None) -> list[CachedEntity]:
        """
        Find cached entities for a value or name.

        The query is refanged and lower-cased, then probed together with its
        defanged variants. Cached keys are never expanded.
        """
        query = refang_indicator(value).strip().lower()
        if not query:
            return []
        probes = [query, *generate_defanged_variants(query)]

        found: list[CachedEntity] = []
        seen: set[tuple[str, str]] = set()
        for entry in self._entries.values():
            if entity_type is not None and entry.entity_type != entity_type:
                continue
            for probe in probes:
                entity = entry.entities.get(probe)
                if entity is not None and (entity.platform_id, entity.id) not in seen:
                    seen.add((entity.platform_id, entity.id))
                    found.append(entity)
        return found

    def get_entity(self, platform_id: str, entity_id: str) -> Optional[CachedEntity]:
        for (pid, _), entry in self._entries.items():
            if pid == platform_id and entity_id in entry.entities:
                entity = entry.entities[entity_id]
                if entity.id == entity_id:
                    return entity
        return None

    def names_for_matching(self) -> dict[str, list[CachedEntity]]:
        """
        Names and aliases usable for text matching, lower-cased.

        Short names and generic terms are left out; MITRE ids are kept whatever
        their length.
        """
        names: dict[str, list[CachedEntity]] = {}
        for entry in self._entries.values():
            for entity in {e.id: e for e in entry.entities.values()}.values():
                for key in entity.lookup_keys():
                    if not is_mitre_id(key):
                        if len(key) < self.config.min_entity_name_length or key in EXCLUDED_TERMS:
                            continue
                    bucket = names.setdefault(key, [])
                    if all((e.platform_id, e.id) != (entity.platform_id, entity.id) for e in bucket):
                        bucket.append(entity)
        return names

    @property
    def is_refreshing(self) -> bool:
        return any(entry.is_refreshing for entry in self._entries.values())

    async def wait_until_idle(self, timeout: Optional[float] = None, poll_interval: float = 1.0) -> bool:
        """
        Poll until no refresh is running.

        Returns:
            False if ``timeout`` (default: the configured cache wait timeout) ran out first
        """
        limit = self.config.cache_wait_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + limit
        while self.is_refreshing:
            if loop.time() >= deadline:
                logger.warning(f"Gave up waiting for cache refresh after {limit}s")
                return False
            await asyncio.sleep(poll_interval)
        return True

    def get_stats(self) -> CacheStats:
        """Entity counts, snapshot age and expiry."""
        by_type: dict[str, int] = {}
        by_platform: dict[str, int] = {}
        unique: set[tuple[str, str]] = set()
        refreshed_at: list[float] = []

        for (pid, etype), entry in self._entries.items():
            ids = {e.id for e in entry.entities.values()}
            by_type[etype] = by_type.get(etype, 0) + len(ids)
            by_platform[pid] = by_platform.get(pid, 0) + len(ids)
            unique.update((pid, entity_id) for entity_id in ids)
            if entry.last_refreshed_at is not None:
                refreshed_at.append(entry.last_refreshed_at)

        age = self.clock() - min(refreshed_at) if refreshed_at else None
        return CacheStats(
            total=len(unique),
            by_type=by_type,
            by_platform=by_platform,
            age_seconds=age,
            is_expired=age is None or age > self.config.cache_duration,
            refreshing=self.is_refreshing,
        )
