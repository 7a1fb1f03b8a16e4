"""
Warden Command Line Interface

Provides command-line access to Warden functionality.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import httpx

from warden.core.config import WardenConfig, load_config
from warden.core.logging import setup_logging
from warden.exceptions import ConfigurationInvalid
from warden.types import Location, Principal, RawRequest


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="warden",
        description="Warden - Zero Trust request-risk engine CLI",
    )
    parser.add_argument("--config", type=Path, help="JSON configuration file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Server command
    serve_parser = subparsers.add_parser("serve", help="Start the Warden server")
    serve_parser.add_argument("--host", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, help="Port")
    serve_parser.add_argument("--reload", action="store_true", help="Auto-reload")

    # Config command
    subparsers.add_parser("check-config", help="Validate configuration and print it")

    # Evaluate command
    eval_parser = subparsers.add_parser(
        "evaluate", help="Run one request description through an in-memory pipeline"
    )
    eval_parser.add_argument("request_file", type=Path, help="JSON request description")

    # Health command
    health_parser = subparsers.add_parser("health", help="Check a running server")
    health_parser.add_argument("--url", default="http://localhost:8000", help="Server URL")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config)
    except (ConfigurationInvalid, FileNotFoundError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        for error in getattr(e, "errors", []):
            location = ".".join(str(part) for part in error.get("loc", ()))
            print(f"  {location}: {error.get('msg')}", file=sys.stderr)
        return 2

    if args.command == "serve":
        from warden.main import run_server

        overrides = {}
        if args.host:
            overrides["host"] = args.host
        if args.port:
            overrides["port"] = args.port
        if overrides:
            config = config.model_copy(update=overrides)
        run_server(config, reload=args.reload)
        return 0

    if args.command == "check-config":
        print(json.dumps(config.model_dump(mode="json"), indent=2))
        return 0

    if args.command == "evaluate":
        setup_logging("WARNING", config.log_format)
        return asyncio.run(cmd_evaluate(config, args.request_file))

    if args.command == "health":
        return asyncio.run(cmd_health(args.url))

    return 1


def _principal_from_dict(data: Optional[dict[str, Any]]) -> Optional[Principal]:
    if not data:
        return None
    last_location = data.get("last_login_location")
    return Principal(
        principal_id=data["principal_id"],
        known_locations=[Location.from_dict(loc) for loc in data.get("known_locations", [])],
        last_login=data.get("last_login"),
        last_login_location=Location.from_dict(last_location) if last_location else None,
        active_session_count=data.get("active_session_count", 1),
        session_started_at=data.get("session_started_at"),
        roles=data.get("roles", []),
    )


async def cmd_evaluate(config: WardenConfig, request_file: Path) -> int:
    """Evaluate a single request description and print the decision."""
    from warden.capabilities.geolocation import StaticGeoLocator
    from warden.zero_trust.pipeline import ZeroTrustPipeline

    with open(request_file) as f:
        description = json.load(f)

    geo_table = {
        cidr: Location.from_dict(loc) for cidr, loc in description.get("geolocation", {}).items()
    }
    pipeline = ZeroTrustPipeline(config, geolocator=StaticGeoLocator(geo_table))

    request = RawRequest(
        method=description.get("method", "GET"),
        path=description.get("path", "/"),
        headers=description.get("headers", {}),
        peer_address=description.get("peer_address"),
        is_secure=description.get("is_secure", False),
        session_id=description.get("session_id"),
        timestamp=description.get("timestamp"),
    )
    decision = await pipeline.evaluate(
        request,
        principal=_principal_from_dict(description.get("principal")),
        payload=description.get("payload"),
    )

    print(json.dumps({
        "status": decision.http_status,
        "response": decision.to_response(),
        "decision": decision.to_dict(),
    }, indent=2, default=str))
    return 0 if decision.allowed else 3


async def cmd_health(base_url: str) -> int:
    """Check server health."""
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{base_url}/health", timeout=5.0)
        except httpx.HTTPError as e:
            print(f"Error: {e}")
            return 1

        if response.status_code == 200:
            result = response.json()
            print(f"Status: {result['status']}")
            print(f"Degraded audit: {result['degraded_audit']}")
            return 0 if result["status"] == "healthy" else 1

        print(f"Error: {response.status_code}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
