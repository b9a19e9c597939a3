"""Shared CLI infrastructure for skypack-telemetry/skypack-set-target."""

import argparse
import json
import logging
from typing import Any

import numpy as np

import skypack
from skypack.packet import ResponseRecord

# Exit codes
EXIT_OK = 0
EXIT_DEVICE_ERROR = 1
EXIT_USAGE_ERROR = 2


def base_parser(description: str) -> argparse.ArgumentParser:
    """Create ArgumentParser with common flags shared by all CLI tools."""
    defaults = skypack.settings()
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("-H", "--host", default=defaults["host"], help="device address")
    parser.add_argument("-P", "--port", type=int, default=defaults["port"], help="device UDP port")
    parser.add_argument("--bind", default=defaults["bind_host"], help="local bind address")
    parser.add_argument(
        "--timeout",
        type=float,
        default=defaults["attempt_timeout"],
        help=f"seconds to wait after each send (default: {defaults['attempt_timeout']})",
    )
    parser.add_argument(
        "--attempts", type=int, default=defaults["attempts"], help=f"sends per request (default: {defaults['attempts']})"
    )
    parser.add_argument("--format", dest="output_format", choices=("text", "json"), default="text", help="output format")
    parser.add_argument("--trace", action="store_true", help="log every datagram")
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose output")
    return parser


def setup_logging(args):
    level = logging.DEBUG if args.verbose else logging.WARNING
    if args.trace:
        level = min(level, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def make_client(args) -> skypack.Skypack:
    """Create and open a sync client from parsed args."""
    return skypack.connect(
        args.host,
        args.port,
        bind_host=args.bind,
        attempts=args.attempts,
        attempt_timeout=args.timeout,
        trace=args.trace,
    )


def _json_safe(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def format_response(response: ResponseRecord, *, fmt: str) -> str:
    """Format a ResponseRecord for output.

    fmt="json": JSON dict with kind/id/status/ok/data.
    fmt="text": status line followed by the indented payload.
    """
    if fmt == "json":
        return json.dumps(
            {
                "kind": response.kind,
                "id": response.id,
                "status": response.status,
                "ok": response.ok,
                "data": _json_safe(response.payload),
            }
        )

    head = f"kind={response.kind} id={response.id} status={response.status}"
    if not response.ok:
        head += " [ERROR]"
    if response.payload is None:
        return head
    return head + "\n" + json.dumps(_json_safe(response.payload), indent=2, sort_keys=True)
