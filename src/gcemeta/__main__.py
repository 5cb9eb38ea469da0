"""
Metadata Dump
=============
Command line entry point: print metadata values or watch a path.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

import structlog

from gcemeta.client import MetadataClient
from gcemeta.exceptions import MetadataError
from gcemeta.watch import WatchEvent

logger = structlog.get_logger()

DUMP_ACCESSORS = (
    "project_id",
    "numeric_project_id",
    "instance_id",
    "instance_name",
    "hostname",
    "zone",
    "internal_ip",
    "external_ip",
    "instance_tags",
    "instance_attributes",
    "project_attributes",
    "email",
    "scopes",
)


def configure_logging(level: str, log_format: str) -> None:
    """Configure structured logging for the command line."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gcemeta",
        description="Query the Google Compute Engine metadata service.",
    )
    parser.add_argument("path", nargs="?", help="metadata path, e.g. instance/zone")
    parser.add_argument("--json", action="store_true", help="request and print JSON")
    parser.add_argument("--recursive", action="store_true", help="fetch a whole directory")
    parser.add_argument("--watch", action="store_true", help="print every change to PATH")
    parser.add_argument("--log-level", default="WARNING")
    parser.add_argument("--log-format", choices=("json", "console"), default="console")
    return parser


def _format(value: Any) -> str:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, sort_keys=True)
    return str(value)


async def dump(client: MetadataClient) -> None:
    """Print whether we are on GCE and every well-known value."""
    print(f"on_gce = {await client.on_gce()}")
    for name in DUMP_ACCESSORS:
        try:
            value: Any = await getattr(client, name)()
        except MetadataError as e:
            value = f"<{type(e).__name__}: {e}>"
        print(f"{name} = {_format(value)}")


async def run(args: argparse.Namespace) -> int:
    async with MetadataClient() as client:
        if args.path is None:
            await dump(client)
            return 0

        if args.watch:
            def on_change(event: WatchEvent) -> None:
                if event.removed:
                    print(f"{event.path} removed")
                else:
                    print(_format(event.value), flush=True)

            await client.watch(
                args.path,
                on_change,
                recursive=args.recursive,
                type_=Any if args.json else None,
            )
            return 0

        if args.json:
            value = await client.get_as(args.path, recursive=args.recursive)
        else:
            value = await client.get(args.path, recursive=args.recursive)
        print(_format(value))
        return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level.upper(), args.log_format)
    try:
        return asyncio.run(run(args))
    except MetadataError as e:
        logger.error("Metadata request failed", path=args.path, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
