"""Bounded-time fan-out of platform calls with per-platform error capture."""

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Mapping, Optional

from ioc_resolver.models import FanOutResult, PlatformError, PlatformResponse
from ioc_resolver.platforms.base import PlatformClient

logger = logging.getLogger("ioc_resolver.fanout")

SEARCH_TIMEOUT = 10.0
ENTITY_FETCH_TIMEOUT = 15.0

TIMEOUT_MESSAGE = "Timeout"
FETCH_FAILED_MESSAGE = "Fetch failed"
NOT_CONFIGURED_MESSAGE = "Not configured"
PLATFORM_NOT_FOUND_MESSAGE = "Platform not found"

FetchFn = Callable[[PlatformClient], Awaitable[list[dict[str, Any]]]]


class PlatformTimeoutError(Exception):
    """A platform call did not finish within its time budget."""


def error_message(exc: BaseException, default: str) -> str:
    """Human-readable message for ``exc``, or ``default`` when it carries none."""
    message = str(exc).strip()
    return message or default


def _discard_late_outcome(platform_id: str, label: str, task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"{label or 'fetch'}: late failure from {platform_id} ignored: {exc}")
    else:
        logger.debug(f"{label or 'fetch'}: late result from {platform_id} discarded")


async def race_with_timeout(
    awaitable: Awaitable[Any], timeout: float, platform_id: str = "", label: str = ""
) -> Any:
    """
    Wait for ``awaitable`` at most ``timeout`` seconds.

    On timeout the underlying call is abandoned, not cancelled: it keeps running
    and its eventual outcome is discarded.

    Raises:
        PlatformTimeoutError: If the call did not finish in time
    """
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        task.add_done_callback(partial(_discard_late_outcome, platform_id, label))
        raise PlatformTimeoutError(TIMEOUT_MESSAGE) from None


def _stamp(results: Optional[list[dict[str, Any]]], platform_id: str) -> list[dict[str, Any]]:
    return [dict(item, platform_id=platform_id) for item in (results or [])]


async def fetch_from_single_platform(
    client: PlatformClient,
    platform_id: str,
    fetch_fn: FetchFn,
    timeout: Optional[float] = None,
) -> PlatformResponse:
    """
    Run ``fetch_fn`` against one client.

    Returns:
        PlatformResponse whose data is the result list stamped with ``platform_id``
    """
    try:
        call = fetch_fn(client)
        results = await (race_with_timeout(call, timeout, platform_id) if timeout else call)
        stamped = _stamp(results, platform_id)
    except Exception as e:
        logger.warning(f"Fetch from {platform_id} failed: {e}")
        return PlatformResponse.fail(error_message(e, FETCH_FAILED_MESSAGE))
    return PlatformResponse.ok(stamped)


async def fetch_from_all_platforms(
    clients: Mapping[str, PlatformClient],
    fetch_fn: FetchFn,
    timeout: float = ENTITY_FETCH_TIMEOUT,
    label: str = "",
) -> FanOutResult:
    """
    Run ``fetch_fn`` against every client concurrently.

    Each call is raced against its own timer. Failures and timeouts become one
    PlatformError per platform and never affect sibling results. Results are
    stamped with their platform id and deduplicated by ``id``; the first
    occurrence in platform registration order wins.

    Args:
        clients: Platform id -> client, in registration order
        fetch_fn: Async callable taking a client and returning entity dicts
        timeout: Per-platform time budget in seconds
        label: Operation name used in log messages

    Returns:
        FanOutResult with merged results and per-platform errors
    """
    platform_ids = list(clients)

    async def _one(platform_id: str) -> list[dict[str, Any]]:
        results = await race_with_timeout(fetch_fn(clients[platform_id]), timeout, platform_id, label)
        return _stamp(results, platform_id)

    outcomes = await asyncio.gather(*[_one(pid) for pid in platform_ids], return_exceptions=True)

    fan_out = FanOutResult()
    seen_ids: set[Any] = set()

    for platform_id, outcome in zip(platform_ids, outcomes):
        if isinstance(outcome, BaseException):
            timed_out = isinstance(outcome, PlatformTimeoutError)
            message = TIMEOUT_MESSAGE if timed_out else error_message(outcome, FETCH_FAILED_MESSAGE)
            fan_out.errors.append(PlatformError(platform_id, message, timed_out))
            logger.warning(f"{label or 'fetch'}: {platform_id} failed: {message}")
            continue

        for item in outcome:
            item_id = item.get("id")
            if item_id is not None:
                if item_id in seen_ids:
                    continue
                seen_ids.add(item_id)
            fan_out.results.append(item)

    logger.debug(
        f"{label or 'fetch'}: {len(fan_out.results)} result(s) from {len(platform_ids)} "
        f"platform(s), {len(fan_out.errors)} error(s)"
    )
    return fan_out


async def search_across_platforms(
    clients: Mapping[str, PlatformClient],
    platform_id: Optional[str],
    search_fn: FetchFn,
    timeout: float = SEARCH_TIMEOUT,
    label: str = "",
) -> list[dict[str, Any]]:
    """
    Best-effort search on one platform or all of them.

    An unknown ``platform_id`` yields an empty list without any call. Errors
    are logged and degrade to partial (possibly empty) results.
    """
    if platform_id:
        client = clients.get(platform_id)
        if client is None:
            return []
        try:
            results = await race_with_timeout(search_fn(client), timeout, platform_id, label)
            return _stamp(results, platform_id)
        except Exception as e:
            logger.warning(f"{label or 'search'}: {platform_id} failed: {error_message(e, FETCH_FAILED_MESSAGE)}")
            return []

    fan_out = await fetch_from_all_platforms(clients, search_fn, timeout, label)
    return fan_out.results


def check_clients_configured(clients: Mapping[str, PlatformClient]) -> Optional[PlatformResponse]:
    """Failure response when no platform is configured, else None."""
    if not clients:
        return PlatformResponse.fail(NOT_CONFIGURED_MESSAGE)
    return None


def get_target_client(
    clients: Mapping[str, PlatformClient], platform_id: Optional[str] = None
) -> Optional[tuple[str, PlatformClient]]:
    """
    Pick the client for a single-platform operation.

    Without ``platform_id`` the default is the first platform registered
    (mapping insertion order).
    """
    if platform_id:
        client = clients.get(platform_id)
        return (platform_id, client) if client is not None else None
    for default_id, client in clients.items():
        return (default_id, client)
    return None


def get_target_client_or_error(
    clients: Mapping[str, PlatformClient], platform_id: Optional[str] = None
) -> PlatformResponse:
    """Like get_target_client, but as a response; data is ``(platform_id, client)``."""
    not_configured = check_clients_configured(clients)
    if not_configured is not None:
        return not_configured
    target = get_target_client(clients, platform_id)
    if target is None:
        return PlatformResponse.fail(PLATFORM_NOT_FOUND_MESSAGE)
    return PlatformResponse.ok(target)
