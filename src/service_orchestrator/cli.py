"""Command-line interface for the service orchestrator."""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

import httpx

from service_orchestrator import __version__, config
from service_orchestrator.core.errors import CycleError, ValidationError
from service_orchestrator.core.graph import build
from service_orchestrator.core.units import load_file
from service_orchestrator.main import EXIT_FAILED, EXIT_INVALID, EXIT_OK, run
from service_orchestrator.monitoring.status import render_rows


def _validate(path: str, as_json: bool) -> int:
    try:
        graph = build(load_file(path))
    except (ValidationError, CycleError) as e:
        print(f"Invalid topology: {e}", file=sys.stderr)
        return EXIT_INVALID

    if as_json:
        print(json.dumps({
            "units": len(graph),
            "start_order": list(graph.start_order),
            "dependencies": {name: list(graph.dependencies(name)) for name in graph.start_order},
        }, indent=2))
        return EXIT_OK

    print(f"Topology OK: {len(graph)} units")
    for position, name in enumerate(graph.start_order, 1):
        deps = graph.dependencies(name)
        suffix = f" (after {', '.join(deps)})" if deps else ""
        print(f"  {position}. {name}{suffix}")
    return EXIT_OK


def _status(url: str, as_json: bool) -> int:
    try:
        response = httpx.get(f"{url.rstrip('/')}/status", timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Could not fetch status from {url}: {e}", file=sys.stderr)
        return EXIT_FAILED

    body = response.json()
    if as_json:
        print(json.dumps(body, indent=2))
    else:
        print(render_rows(body.get("units", [])))
    return EXIT_OK if body.get("all_ready") else EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the service orchestrator CLI.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    parser = argparse.ArgumentParser(
        prog="service-orchestrator",
        description="Service Orchestrator - dependency-ordered startup and teardown"
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands"
    )

    validate_parser = subparsers.add_parser(
        "validate",
        help="Load a topology and print its start order"
    )
    validate_parser.add_argument("topology", help="Path to the topology YAML/JSON file")
    validate_parser.add_argument("--json", action="store_true", help="Print machine-readable output")

    up_parser = subparsers.add_parser(
        "up",
        help="Bring a topology up and keep it running until interrupted"
    )
    up_parser.add_argument("topology", help="Path to the topology YAML/JSON file")
    up_parser.add_argument(
        "--runtime",
        choices=["docker", "process"],
        default="docker",
        help="How units are launched (default: docker)"
    )
    up_parser.add_argument(
        "--project",
        default=None,
        help="Project name used for container names and labels (default: file name)"
    )
    up_parser.add_argument(
        "--no-api",
        action="store_true",
        help="Do not serve the status API"
    )
    up_parser.add_argument(
        "--host",
        default=config.API_HOST,
        help=f"Status API host (default: {config.API_HOST})"
    )
    up_parser.add_argument(
        "--port",
        type=int,
        default=config.API_PORT,
        help=f"Status API port (default: {config.API_PORT})"
    )
    up_parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=config.SHUTDOWN_TIMEOUT_SEC,
        help=f"Seconds allowed for teardown (default: {config.SHUTDOWN_TIMEOUT_SEC:g})"
    )

    status_parser = subparsers.add_parser(
        "status",
        help="Show the status of a running orchestrator"
    )
    status_parser.add_argument(
        "--url",
        default=f"http://localhost:{config.API_PORT}",
        help="Base URL of the status API"
    )
    status_parser.add_argument("--json", action="store_true", help="Print raw JSON")

    subparsers.add_parser(
        "version",
        help="Show version information"
    )

    args = parser.parse_args(argv)

    if args.command == "validate":
        return _validate(args.topology, args.json)

    elif args.command == "up":
        return run(
            args.topology,
            runtime=args.runtime,
            project=args.project,
            serve_api=not args.no_api,
            host=args.host,
            port=args.port,
            shutdown_timeout=args.shutdown_timeout,
        )

    elif args.command == "status":
        return _status(args.url, args.json)

    elif args.command == "version":
        print(f"Service Orchestrator version {__version__}")
        return EXIT_OK

    else:
        parser.print_help()
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
