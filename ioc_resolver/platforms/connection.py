"""Platform client factory and connection testing."""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from ioc_resolver.config import PlatformConfig
from ioc_resolver.models import PlatformResponse
from ioc_resolver.platforms.base import PlatformClient
from ioc_resolver.platforms.fanout import PlatformTimeoutError, error_message, race_with_timeout
from ioc_resolver.platforms.openaev import OpenAEVClient
from ioc_resolver.platforms.opencti import OpenCTIClient
from ioc_resolver.rate_limiter import make_limiter

logger = logging.getLogger("ioc_resolver.connection")

CONNECTION_TIMEOUT = 8.0

CONNECTION_TIMEOUT_MESSAGE = "Connection timeout"
CONNECTION_FAILED_MESSAGE = "Connection failed"
NOT_CONFIGURED_MESSAGE = "Platform not configured"
MISSING_TARGET_MESSAGE = "Missing platformId or temporary credentials"

# Registry of available platform clients
PLATFORM_REGISTRY: dict[str, type[PlatformClient]] = {
    "opencti": OpenCTIClient,
    "openaev": OpenAEVClient,
}


@dataclass
class ConnectionTestRequest:
    """
    A connection test.

    With ``url`` and ``api_token`` the credentials are tested as given and never
    stored (temporary mode); otherwise ``platform_id`` names a saved platform.
    """

    platform_type: str
    platform_id: Optional[str] = None
    url: Optional[str] = None
    api_token: Optional[str] = None

    @property
    def is_temporary(self) -> bool:
        return bool(self.url and self.api_token)


@dataclass
class ConnectionDependencies:
    """Live clients and saved settings a connection test may draw on."""

    clients: Mapping[str, PlatformClient] = field(default_factory=dict)
    platform_configs: Mapping[str, PlatformConfig] = field(default_factory=dict)
    timeout: float = CONNECTION_TIMEOUT


def build_client(config: PlatformConfig) -> PlatformClient:
    """Instantiate the client class registered for ``config.platform_type``."""
    client_class = PLATFORM_REGISTRY.get(config.platform_type)
    if client_class is None:
        raise ValueError(f"Unsupported platform type: {config.platform_type}")
    limiter = make_limiter(config.platform_type, config.rate_limit)
    return client_class(config.url, config.api_token, platform_id=config.id, rate_limiter=limiter)


def build_clients(configs: list[PlatformConfig]) -> dict[str, PlatformClient]:
    """Clients for every enabled platform, keyed by id in registration order."""
    clients: dict[str, PlatformClient] = {}
    for config in configs:
        if not config.enabled:
            logger.debug(f"Platform {config.id} is disabled, skipping")
            continue
        if config.platform_type not in PLATFORM_REGISTRY:
            logger.warning(f"Unknown platform type: {config.platform_type!r}, skipping {config.id}")
            continue
        clients[config.id] = build_client(config)
    return clients


async def test_platform_connection(
    request: ConnectionTestRequest, deps: ConnectionDependencies
) -> PlatformResponse:
    """
    Test a platform connection in temporary or saved mode.

    Configuration problems are reported before any network call. A timeout
    yields "Connection timeout"; any other failure carries the error message.

    Args:
        request: What to test
        deps: Cached clients and saved platform settings

    Returns:
        PlatformResponse whose data is the PlatformInfo on success
    """
    client_class = PLATFORM_REGISTRY.get(request.platform_type)
    if client_class is None:
        return PlatformResponse.fail(f"Unsupported platform type: {request.platform_type}")

    transient = False
    if request.is_temporary:
        client = client_class(request.url, request.api_token, platform_id="temp")
        transient = True
    elif request.platform_id:
        client = deps.clients.get(request.platform_id)
        if client is None:
            config = deps.platform_configs.get(request.platform_id)
            if config is None or not config.url or not config.api_token:
                return PlatformResponse.fail(NOT_CONFIGURED_MESSAGE)
            client = build_client(config)
            transient = True
    else:
        return PlatformResponse.fail(MISSING_TARGET_MESSAGE)

    target = request.platform_id or request.url
    try:
        info = await race_with_timeout(
            client.test_connection(), deps.timeout, target or "", "test-connection"
        )
    except PlatformTimeoutError:
        logger.warning(f"Connection test to {target} timed out after {deps.timeout}s")
        return PlatformResponse.fail(CONNECTION_TIMEOUT_MESSAGE)
    except Exception as e:
        logger.warning(f"Connection test to {target} failed: {e}")
        return PlatformResponse.fail(error_message(e, CONNECTION_FAILED_MESSAGE))
    finally:
        if transient:
            await client.close()

    return PlatformResponse.ok(info)
