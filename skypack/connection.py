"""
Async skypack client: request engine over a single UDP socket.

Every request gets a fresh correlation id and a waiter registered under
(kind, id) before the first datagram leaves, so even an immediate reply is
matched. The same datagram is re-sent up to ``attempts`` times, waiting
``attempt_timeout`` seconds after each send. A reply to any attempt
completes the request.

Key design decisions:
- One reader: ReceiverProtocol is the only consumer of the socket.
- Cleanup on every exit path: the waiter's table entry is removed in a
  finally block, whether the request returns, fails or is cancelled.
- Send failures abort immediately with DeviceIOError; only silence is retried.

Example:
    async with AsyncSkypack("192.168.1.50") as device:
        telemetry = await device.fetch_telemetry()
        handle = device.set_target_state((47.1, 8.5, 420.0), (0.0, 0.0, 0.0), ts)
        await handle
"""

import asyncio
import logging
import socket
from typing import Any, Optional, Sequence

from .constants import (
    ATTEMPT_TIMEOUT,
    DEFAULT_BIND_HOST,
    DEFAULT_BIND_PORT,
    DEFAULT_HOST,
    DEFAULT_PORT,
    KIND_SET_TARGET,
    KIND_TELEMETRY,
    MAX_ATTEMPTS,
)
from .correlation import CorrelationTable, IdGenerator, Waiter
from .errors import DeviceIOError, DeviceTimeoutError
from .handle import AsyncRequestHandle
from .packet import RequestRecord, ResponseRecord, encode
from .receiver import ReceiverProtocol
from .telemetry import target_state_payload

logger = logging.getLogger(__name__)


def _validate(host: str, port: int, attempts: int, attempt_timeout: float):
    if not host:
        raise ValueError("host cannot be empty")
    if port <= 0 or port > 65535:
        raise ValueError(f"port must be between 1 and 65535, got {port}")
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")
    if attempt_timeout <= 0:
        raise ValueError(f"attempt_timeout must be positive, got {attempt_timeout}")


class AsyncSkypack:
    """
    Async client for one remote device.

    Must be opened (``await open()`` or ``async with``) on the event loop
    that will run its requests. Requests may be issued concurrently; each
    one is independent and replies can arrive in any order.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        bind_host: str = DEFAULT_BIND_HOST,
        bind_port: int = DEFAULT_BIND_PORT,
        attempts: int = MAX_ATTEMPTS,
        attempt_timeout: float = ATTEMPT_TIMEOUT,
        trace: bool = False,
        ids: Optional[IdGenerator] = None,
    ):
        _validate(host, port, attempts, attempt_timeout)

        self._host = host
        self._port = port
        self._bind_host = bind_host
        self._bind_port = bind_port
        self._attempts = attempts
        self._attempt_timeout = attempt_timeout
        self._trace = trace

        self._ids = ids if ids is not None else IdGenerator()
        self._table = CorrelationTable()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sock: Optional[socket.socket] = None
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._protocol: Optional[ReceiverProtocol] = None
        self._target: Optional[tuple] = None
        self._closed = False

        # Strong references to fire-and-forget request tasks
        self._tasks: set[asyncio.Task] = set()

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def attempt_timeout(self) -> float:
        return self._attempt_timeout

    @property
    def connected(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    @property
    def local_address(self) -> Optional[tuple]:
        """Bound (host, port) of the socket, once open."""
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")

    @property
    def pending(self) -> int:
        """Number of requests currently awaiting a reply."""
        return len(self._table)

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self):
        """Bind the socket and start the background receiver."""
        if self._closed:
            raise DeviceIOError("Client closed")
        if self._transport is not None:
            return

        loop = asyncio.get_running_loop()
        family = socket.AF_INET6 if ":" in self._bind_host else socket.AF_INET

        try:
            infos = await loop.getaddrinfo(self._host, self._port, family=family, type=socket.SOCK_DGRAM)
            target = infos[0][4]

            sock = socket.socket(family, socket.SOCK_DGRAM)
            try:
                sock.setblocking(False)
                sock.bind((self._bind_host, self._bind_port))
            except OSError:
                sock.close()
                raise

            transport, protocol = await loop.create_datagram_endpoint(
                lambda: ReceiverProtocol(self._table, trace=self._trace),
                sock=sock,
            )
        except OSError as e:
            logger.error(f"Failed to open UDP channel to {self._host}:{self._port}: {e}")
            raise DeviceIOError(f"Cannot open UDP channel to {self._host}:{self._port}: {e}") from e

        self._loop = loop
        self._sock = sock
        self._transport = transport
        self._protocol = protocol
        self._target = target

        logger.info(f"Opened skypack channel {self.local_address} -> {self._host}:{self._port}")

    async def close(self):
        """Close the socket. Pending requests fail with InternalError."""
        self._closed = True

        if self._transport is not None:
            self._transport.close()

        # connection_lost() does the same once the loop runs it; dropping now
        # makes close() deterministic. Both paths are idempotent.
        for waiter in self._table.drain():
            waiter.drop("Client closed")

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        if self._transport is not None:
            logger.info(f"Closed skypack channel to {self._host}:{self._port}")
        self._transport = None
        self._sock = None

    # ------------------------------------------------------------------
    # Request engine
    # ------------------------------------------------------------------

    def _check_loop(self):
        if self._loop is None or self._transport is None:
            raise DeviceIOError("Client is not open")
        if asyncio.get_running_loop() is not self._loop:
            raise RuntimeError("Requests must run on the event loop the client was opened on")

    def _send(self, data: bytes):
        """Send one datagram to the device. Raises DeviceIOError on any failure."""
        if self._transport is None or self._transport.is_closing() or self._sock is None:
            raise DeviceIOError("Client is not open")
        if self._trace:
            logger.info(f"TRACE> {self._target} len={len(data)} {data[:24].hex()}")
        try:
            self._sock.sendto(data, self._target)
        except OSError as e:
            logger.error(f"Failed to send to {self._host}:{self._port}: {e}")
            raise DeviceIOError(f"Send to {self._host}:{self._port} failed: {e}") from e

    async def perform(self, kind: int, payload: Optional[Any] = None) -> ResponseRecord:
        """Send a request and wait for its response.

        Args:
            kind: Request kind (uint32)
            payload: Optional structured payload

        Returns:
            The matching ResponseRecord (its status is not interpreted)

        Raises:
            EncodeError: If the request cannot be serialized
            DeviceIOError: If the client is not open or a send fails
            DeviceTimeoutError: If every attempt expired without a reply
            InternalError: If the receiver stopped or the client closed meanwhile
        """
        self._check_loop()

        msg_id = next(self._ids)
        data = encode(RequestRecord(kind, msg_id, payload))

        key = (kind, msg_id)
        waiter = Waiter(self._loop)
        self._table.insert(key, waiter)

        try:
            for attempt in range(1, self._attempts + 1):
                self._send(data)
                logger.debug(f"Sent kind={kind} id={msg_id} attempt {attempt}/{self._attempts}")

                done, _ = await asyncio.wait({waiter.future}, timeout=self._attempt_timeout)
                if done:
                    return waiter.future.result()

                logger.debug(f"No reply for kind={kind} id={msg_id} within {self._attempt_timeout}s")

            logger.warning(f"Request kind={kind} id={msg_id} timed out after {self._attempts} attempts")
            raise DeviceTimeoutError(self._attempts, self._attempt_timeout)
        finally:
            self._table.take(key)

    def submit(self, kind: int, payload: Optional[Any] = None) -> AsyncRequestHandle:
        """Start a request in the background and return its handle."""
        self._check_loop()
        assert self._loop is not None
        task = self._loop.create_task(self.perform(kind, payload))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return AsyncRequestHandle(task, kind)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(f"Background request failed: {exc}")

    # ------------------------------------------------------------------
    # Device operations
    # ------------------------------------------------------------------

    def get_telemetry(self) -> AsyncRequestHandle:
        """Request telemetry in the background."""
        return self.submit(KIND_TELEMETRY)

    async def fetch_telemetry(self) -> ResponseRecord:
        """Request telemetry and wait for it."""
        return await self.perform(KIND_TELEMETRY)

    def set_target_state(
        self,
        position: Sequence[float],
        velocity: Sequence[float],
        timestamp: float,
        *,
        orientation: Sequence[float] = (0.0, 0.0, 0.0),
        frame: str = "lla",
        item_id: int = 1,
    ) -> AsyncRequestHandle:
        """Send a target state update in the background.

        See telemetry.target_state_payload() for the argument conventions.
        """
        payload = target_state_payload(
            position, velocity, timestamp, orientation=orientation, frame=frame, item_id=item_id
        )
        return self.submit(KIND_SET_TARGET, payload)

    # ------------------------------------------------------------------
    # Async context manager
    # ------------------------------------------------------------------

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    def __repr__(self):
        state = "open" if self.connected else "closed"
        return f"AsyncSkypack({self._host}:{self._port}, {state}, pending={self.pending})"
