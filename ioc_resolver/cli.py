"""CLI entrypoint for the resolver."""

import argparse
import asyncio
import dataclasses
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any

from ioc_resolver.cache import EntityCache
from ioc_resolver.config import load_config
from ioc_resolver.detection.classifier import detect_observable_type
from ioc_resolver.detection.patterns import get_default_registry
from ioc_resolver.detection.scanner import Scanner
from ioc_resolver.logging_setup import setup_logging
from ioc_resolver.models import ScanResult
from ioc_resolver.platforms import connection
from ioc_resolver.platforms.aggregator import resolve_scan
from ioc_resolver.platforms.fanout import get_target_client_or_error

logger = setup_logging()


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return str(value)


def to_json(value: Any) -> str:
    """Serialize dataclasses (and plain values) to indented JSON."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    return json.dumps(value, indent=2, default=_json_default)


def scan_result_to_dict(result: ScanResult) -> dict[str, Any]:
    """Flatten a scan result, detections ordered by position."""
    return {
        "detections": [dataclasses.asdict(d) for d in result.all_detections()],
        "total": result.total,
        "found": sum(1 for d in result.all_detections() if d.found),
        "scan_time_ms": round(result.scan_time_ms, 2),
    }


async def scan_command(args: argparse.Namespace) -> int:
    """
    Execute the scan command.

    Scans a text file and prints detections as JSON. With --resolve, the
    entity cache is filled from every configured platform first and each
    detection is looked up.

    Returns:
        Exit code (0 = success, 2 = file not found).
    """
    path = Path(args.target)
    if not path.exists():
        logger.error(f"Input file not found: {args.target}")
        return 2

    config = load_config()
    text = path.read_text(encoding="utf-8", errors="replace")

    registry = get_default_registry().without(config.disabled_types)
    scanner = Scanner(registry, config.context_window, config.min_entity_name_length)

    clients = connection.build_clients(config.platforms) if args.resolve else {}
    try:
        cache = None
        name_map = None
        if clients and not args.no_cache:
            cache = EntityCache(clients, config)
            errors = await cache.refresh()
            for error in errors:
                logger.warning(f"Cache refresh: {error.platform_id}: {error.message}")
            name_map = cache.names_for_matching()

        result = scanner.scan(text, name_map=name_map)
        logger.info(f"Detected {result.total} item(s) in {args.target}")

        if clients:
            await resolve_scan(result, clients, cache, args.platform, config.search_timeout)
    finally:
        for client in clients.values():
            await client.close()

    print(to_json(scan_result_to_dict(result)))
    return 0


async def connection_command(args: argparse.Namespace) -> int:
    """
    Execute the test-connection command against one configured platform.

    Returns:
        Exit code (0 = connected, 1 = failure).
    """
    config = load_config()
    clients = connection.build_clients(config.platforms)

    try:
        target = get_target_client_or_error(clients, args.target)
        if not target.success:
            logger.error(f"Cannot test connection: {target.error}")
            return 1

        platform_id, client = target.data
        request = connection.ConnectionTestRequest(
            platform_type=client.platform_type, platform_id=platform_id
        )
        deps = connection.ConnectionDependencies(
            clients=clients,
            platform_configs=config.platform_map,
            timeout=config.connection_timeout,
        )
        response = await connection.test_platform_connection(request, deps)
    finally:
        for client in clients.values():
            await client.close()

    print(to_json(response))
    if not response.success:
        logger.error(f"{platform_id}: {response.error}")
        return 1
    return 0


def classify_command(args: argparse.Namespace) -> int:
    """Print the type of a single value (exit 1 if it is not recognized)."""
    detected = detect_observable_type(args.target)
    print(detected or "unknown")
    return 0 if detected else 1


def main() -> None:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(description="IOC detection and multi-platform resolution")
    parser.add_argument(
        "command",
        choices=["scan", "classify", "test-connection"],
        help="Command to run",
    )
    parser.add_argument(
        "target",
        nargs="?",
        default=None,
        help="Input file (scan), value (classify) or platform id (test-connection)",
    )
    parser.add_argument(
        "--resolve",
        action="store_true",
        help="Look detections up on the configured platforms (scan only)",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Skip the entity cache and search platforms directly (scan only)",
    )
    parser.add_argument(
        "--platform",
        default=None,
        help="Restrict resolution to one platform id (scan only)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    if args.debug:
        setup_logging(debug=True)

    if args.command in ("scan", "classify") and not args.target:
        parser.error(f"target is required for the '{args.command}' command")

    if args.command == "scan":
        exit_code = asyncio.run(scan_command(args))
    elif args.command == "classify":
        exit_code = classify_command(args)
    elif args.command == "test-connection":
        exit_code = asyncio.run(connection_command(args))
    else:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
