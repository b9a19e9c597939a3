"""
skypack - request/response client for Skypack navigation devices over UDP.

Each request is a MessagePack datagram tagged with a request kind and a
correlation id. Replies are matched back to their request by (kind, id),
so any number of requests can be in flight over one socket. Lost datagrams
are retried a fixed number of times before the request fails.

Clients:
- Skypack: synchronous client (dedicated reactor thread)
- AsyncSkypack: asyncio client

Example (sync):
    import skypack

    with skypack.connect("192.168.1.50") as device:
        response = device.get_telemetry_sync().raise_for_status()
        print(skypack.nav_lla(response.payload))

Example (async):
    from skypack import AsyncSkypack

    async with AsyncSkypack("192.168.1.50") as device:
        response = await device.get_telemetry()

Environment variables (read at import, overridden by configure()):
    SKYPACK_HOST             Device address (default 127.0.0.1)
    SKYPACK_PORT             Device UDP port (default 41263)
    SKYPACK_BIND             Local bind address (default 0.0.0.0)
    SKYPACK_ATTEMPTS         Sends per request (default 3)
    SKYPACK_ATTEMPT_TIMEOUT  Seconds to wait after each send (default 1.0)
"""

import logging
import os
import threading
from typing import Optional

from skypack.connection import AsyncSkypack
from skypack.connection_sync import Skypack
from skypack.constants import (
    ATTEMPT_TIMEOUT,
    DEFAULT_BIND_HOST,
    DEFAULT_HOST,
    DEFAULT_PORT,
    KIND_SET_TARGET,
    KIND_TELEMETRY,
    MAX_ATTEMPTS,
)
from skypack.correlation import CorrelationTable, IdGenerator, Waiter
from skypack.errors import (
    CorrelationConflictError,
    DecodeError,
    DeviceError,
    DeviceIOError,
    DeviceTimeoutError,
    EncodeError,
    InternalError,
    RemoteStatusError,
    TelemetryError,
)
from skypack.handle import AsyncRequestHandle, RequestHandle
from skypack.packet import RequestRecord, ResponseRecord, decode, encode
from skypack.telemetry import (
    locked_gnss_time,
    nav_lla,
    reference_lla,
    target_state_payload,
    velocity_ned,
)

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Environment Variables (read at import)
# ─────────────────────────────────────────────────────────────────────────────


def _get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Get environment variable as int."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {val!r}")


def _get_env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    """Get environment variable as float."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {val!r}")


_env_host = os.environ.get("SKYPACK_HOST")
_env_port = _get_env_int("SKYPACK_PORT")
_env_bind = os.environ.get("SKYPACK_BIND")
_env_attempts = _get_env_int("SKYPACK_ATTEMPTS")
_env_attempt_timeout = _get_env_float("SKYPACK_ATTEMPT_TIMEOUT")

_ENV_NAMES = {
    "host": "SKYPACK_HOST",
    "port": "SKYPACK_PORT",
    "attempts": "SKYPACK_ATTEMPTS",
    "attempt_timeout": "SKYPACK_ATTEMPT_TIMEOUT",
}


def _check_settings(
    host: Optional[str] = None,
    port: Optional[int] = None,
    attempts: Optional[int] = None,
    attempt_timeout: Optional[float] = None,
    names: Optional[dict] = None,
) -> None:
    """Raise ValueError for any given setting that is out of range. None means unset."""
    names = names or {}
    if host is not None and not host:
        raise ValueError(f"{names.get('host', 'host')} cannot be empty")
    if port is not None and (port <= 0 or port > 65535):
        raise ValueError(f"{names.get('port', 'port')} must be between 1 and 65535, got {port}")
    if attempts is not None and attempts < 1:
        raise ValueError(f"{names.get('attempts', 'attempts')} must be at least 1, got {attempts}")
    if attempt_timeout is not None and attempt_timeout <= 0:
        name = names.get("attempt_timeout", "attempt_timeout")
        raise ValueError(f"{name} must be positive, got {attempt_timeout}")


_check_settings(_env_host, _env_port, _env_attempts, _env_attempt_timeout, names=_ENV_NAMES)


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

_config_lock = threading.Lock()

# User-configured settings (set via configure())
_config_host: Optional[str] = None
_config_port: Optional[int] = None
_config_bind: Optional[str] = None
_config_attempts: Optional[int] = None
_config_attempt_timeout: Optional[float] = None


def configure(
    host: Optional[str] = None,
    port: Optional[int] = None,
    bind_host: Optional[str] = None,
    attempts: Optional[int] = None,
    attempt_timeout: Optional[float] = None,
) -> None:
    """Override default settings for clients created by connect().

    Args:
        host: Device address (default: from SKYPACK_HOST or 127.0.0.1)
        port: Device UDP port (default: from SKYPACK_PORT or 41263)
        bind_host: Local bind address (default: from SKYPACK_BIND or 0.0.0.0)
        attempts: Sends per request (default: from SKYPACK_ATTEMPTS or 3)
        attempt_timeout: Seconds to wait after each send (default: from SKYPACK_ATTEMPT_TIMEOUT or 1.0)

    Raises:
        ValueError: If a value is out of range or host is empty
    """
    global _config_host, _config_port, _config_bind, _config_attempts, _config_attempt_timeout

    _check_settings(host, port, attempts, attempt_timeout)

    with _config_lock:
        if host is not None:
            _config_host = host
        if port is not None:
            _config_port = port
        if bind_host is not None:
            _config_bind = bind_host
        if attempts is not None:
            _config_attempts = attempts
        if attempt_timeout is not None:
            _config_attempt_timeout = attempt_timeout


def reset_configuration() -> None:
    """Forget settings made by configure(); environment defaults apply again."""
    global _config_host, _config_port, _config_bind, _config_attempts, _config_attempt_timeout

    with _config_lock:
        _config_host = None
        _config_port = None
        _config_bind = None
        _config_attempts = None
        _config_attempt_timeout = None


def _first_set(*values):
    return next(v for v in values if v is not None)


def settings() -> dict:
    """Effective settings: configure() > environment > defaults."""
    with _config_lock:
        return {
            "host": _first_set(_config_host, _env_host, DEFAULT_HOST),
            "port": _first_set(_config_port, _env_port, DEFAULT_PORT),
            "bind_host": _first_set(_config_bind, _env_bind, DEFAULT_BIND_HOST),
            "attempts": _first_set(_config_attempts, _env_attempts, MAX_ATTEMPTS),
            "attempt_timeout": _first_set(_config_attempt_timeout, _env_attempt_timeout, ATTEMPT_TIMEOUT),
        }


def connect(host: Optional[str] = None, port: Optional[int] = None, **kwargs) -> Skypack:
    """Create and open a synchronous client from the effective settings.

    Keyword arguments are passed to Skypack and override the settings.

    Example:
        with skypack.connect() as device:
            device.get_telemetry_sync()
    """
    options = settings()
    if host is not None:
        options["host"] = host
    if port is not None:
        options["port"] = port
    options.update(kwargs)

    client = Skypack(options.pop("host"), options.pop("port"), **options)
    client.open()
    logger.debug(f"Connected to {client.host}:{client.port}")
    return client


__all__ = [
    # Clients
    "Skypack",
    "AsyncSkypack",
    "connect",
    "configure",
    "reset_configuration",
    "settings",
    # Handles
    "RequestHandle",
    "AsyncRequestHandle",
    # Records and codec
    "RequestRecord",
    "ResponseRecord",
    "encode",
    "decode",
    # Correlation
    "CorrelationTable",
    "IdGenerator",
    "Waiter",
    # Telemetry helpers
    "nav_lla",
    "reference_lla",
    "locked_gnss_time",
    "target_state_payload",
    "velocity_ned",
    # Errors
    "DeviceError",
    "DeviceIOError",
    "EncodeError",
    "DecodeError",
    "DeviceTimeoutError",
    "InternalError",
    "CorrelationConflictError",
    "RemoteStatusError",
    "TelemetryError",
    # Constants
    "KIND_TELEMETRY",
    "KIND_SET_TARGET",
    "MAX_ATTEMPTS",
    "ATTEMPT_TIMEOUT",
    "DEFAULT_PORT",
]
