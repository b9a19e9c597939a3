"""
Skypack exceptions.

Every failure of a request/response exchange is a DeviceError subclass, so
callers that only care about "did this iteration work" can catch one type.
Remote status codes are not interpreted by the transport; see
ResponseRecord.raise_for_status().
"""

from typing import Optional


class DeviceError(Exception):
    """Base class for all skypack errors."""


class DeviceIOError(DeviceError):
    """Socket bind/send failure, or the client is not open.

    Send failures abort the request immediately; they are never retried.
    The underlying OSError, if any, is chained via ``__cause__``.
    """


class EncodeError(DeviceError):
    """A request record could not be serialized."""


class DecodeError(DeviceError):
    """An inbound datagram is not a valid response record."""


class DeviceTimeoutError(DeviceError):
    """All attempts expired without a matching response.

    Attributes:
        attempts: Number of datagrams sent
        timeout: Per-attempt deadline in seconds
    """

    def __init__(self, attempts: int, timeout: float):
        self.attempts = attempts
        self.timeout = timeout
        super().__init__(f"Request timed out after {attempts} attempts ({timeout:g}s each)")

    def __repr__(self) -> str:
        return f"DeviceTimeoutError(attempts={self.attempts}, timeout={self.timeout})"


class InternalError(DeviceError):
    """The channel between a request and the receiver broke.

    Raised when a waiter is dropped (receiver stopped, client closed) or when
    the task behind a request handle was cancelled or crashed.
    """

    def __init__(self, message: str = "Internal channel closed"):
        super().__init__(message)


class CorrelationConflictError(InternalError):
    """A waiter is already registered under the same (kind, id) key."""

    def __init__(self, key: tuple[int, int]):
        self.key = key
        super().__init__(f"Correlation key already in flight: kind={key[0]}, id={key[1]}")


class RemoteStatusError(DeviceError):
    """The device answered with a non-zero status.

    Attributes:
        kind: Request kind of the response
        status: Signed status code reported by the device
        payload: Response payload, if any
    """

    def __init__(self, kind: int, status: int, payload: Optional[object] = None):
        self.kind = kind
        self.status = status
        self.payload = payload
        super().__init__(f"Device reported status {status} for request kind {kind}")

    def __repr__(self) -> str:
        return f"RemoteStatusError(kind={self.kind}, status={self.status})"


class TelemetryError(DeviceError):
    """A telemetry payload lacks a field, or the field is not usable."""
