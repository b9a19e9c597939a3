"""
Synchronous skypack client: thin wrapper around AsyncSkypack.

Manages a dedicated asyncio reactor thread and delegates all operations
to the async core via run_coroutine_threadsafe. The reactor belongs to the
client alone, so any other thread (including one running its own event
loop) can block on it without starving the receiver.

Example:
    with Skypack("192.168.1.50") as device:
        telemetry = device.get_telemetry_sync()
        handle = device.set_target_state((47.1, 8.5, 420.0), (1.0, 0.0, 0.0), ts)
        handle.wait()
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Coroutine, Optional, Sequence

from .connection import AsyncSkypack, _validate
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
from .correlation import IdGenerator
from .errors import DeviceIOError, InternalError
from .handle import RequestHandle
from .packet import ResponseRecord
from .telemetry import target_state_payload

logger = logging.getLogger(__name__)

__all__ = ["Skypack"]


class Skypack:
    """
    Synchronous client for one remote device.

    All public methods are thread-safe. Blocking calls wait for the request's
    own retry bound (attempts x attempt_timeout) and never longer.
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
        self._ids = ids

        self._async: Optional[AsyncSkypack] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reactor_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Properties: proxy to async core
    # ------------------------------------------------------------------

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def connected(self) -> bool:
        return self._async.connected if self._async else False

    @property
    def local_address(self) -> Optional[tuple]:
        return self._async.local_address if self._async else None

    @property
    def pending(self) -> int:
        return self._async.pending if self._async else 0

    # ------------------------------------------------------------------
    # Reactor management
    # ------------------------------------------------------------------

    def _start_reactor(self):
        """Start the asyncio reactor thread."""
        ready = threading.Event()
        loop_holder: list[asyncio.AbstractEventLoop] = []

        def _run():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            loop_holder.append(loop)
            ready.set()
            loop.run_forever()
            # Cleanup after stop: let callbacks queued behind stop() create
            # their tasks, then cancel everything still running
            loop.run_until_complete(asyncio.sleep(0))
            pending = asyncio.all_tasks(loop)
            for t in pending:
                t.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

        self._reactor_thread = threading.Thread(
            target=_run,
            name="Skypack-Reactor",
            daemon=True,
        )
        self._reactor_thread.start()
        ready.wait(timeout=5.0)

        if not loop_holder:
            raise RuntimeError("Failed to start skypack reactor")

        self._loop = loop_holder[0]

    def _in_reactor(self) -> bool:
        return self._reactor_thread is not None and threading.current_thread() is self._reactor_thread

    def _schedule(self, make_coro: Callable[[AsyncSkypack], Coroutine]) -> concurrent.futures.Future:
        """Schedule a request coroutine on the reactor of the open client.

        Taking the lock orders this against close(): once close() has
        started, nothing new reaches the reactor.
        """
        with self._lock:
            if self._async is None or self._loop is None or self._loop.is_closed():
                raise DeviceIOError("Client is not open")
            return asyncio.run_coroutine_threadsafe(make_coro(self._async), self._loop)

    @staticmethod
    def _result(fut: concurrent.futures.Future, timeout: Optional[float] = None):
        try:
            return fut.result(timeout=timeout)
        except concurrent.futures.CancelledError:
            raise InternalError("Request cancelled") from None

    def _run_sync(self, make_coro: Callable[[AsyncSkypack], Coroutine], timeout: Optional[float] = None):
        """Run a coroutine of the async core on the reactor and block for its result."""
        if self._in_reactor():
            raise RuntimeError("Cannot block the skypack reactor thread on itself; use the async API there")
        return self._result(self._schedule(make_coro), timeout)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def open(self):
        """Start the reactor, bind the socket and start the receiver."""
        with self._lock:
            if self._async is not None:
                return
            self._start_reactor()
            assert self._loop is not None
            core = AsyncSkypack(
                self._host,
                self._port,
                bind_host=self._bind_host,
                bind_port=self._bind_port,
                attempts=self._attempts,
                attempt_timeout=self._attempt_timeout,
                trace=self._trace,
                ids=self._ids,
            )
            try:
                self._result(asyncio.run_coroutine_threadsafe(core.open(), self._loop), timeout=10.0)
            except BaseException:
                self._stop_reactor()
                raise
            self._async = core

    def close(self):
        """Close the socket and stop the reactor. Pending requests fail with InternalError.

        Requests started by other threads while close() runs fail with
        DeviceIOError; none of them is left waiting.
        """
        with self._lock:
            core, self._async = self._async, None
            if core is not None and self._loop is not None:
                if self._in_reactor():
                    # Cannot wait here; the reactor finishes the close while stopping
                    self._loop.create_task(core.close())
                else:
                    try:
                        fut = asyncio.run_coroutine_threadsafe(core.close(), self._loop)
                        fut.result(timeout=5.0)
                    except Exception as e:
                        logger.warning(f"Error closing skypack client: {e}")
            self._stop_reactor()

    def _stop_reactor(self):
        if self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._reactor_thread and self._reactor_thread.is_alive() and not self._in_reactor():
            self._reactor_thread.join(timeout=2.0)

        self._loop = None
        self._reactor_thread = None

    # ------------------------------------------------------------------
    # Sync bridge and background submission
    # ------------------------------------------------------------------

    def perform_sync(self, kind: int, payload: Optional[Any] = None) -> ResponseRecord:
        """Run a request to completion, blocking the calling thread.

        Raises:
            DeviceError: As AsyncSkypack.perform(); InternalError if the
                client closed while the request was in flight
            RuntimeError: If called from the reactor thread itself
        """
        return self._run_sync(lambda core: core.perform(kind, payload))

    def submit(self, kind: int, payload: Optional[Any] = None) -> RequestHandle:
        """Start a request on the reactor and return its handle immediately."""
        return RequestHandle(self._schedule(lambda core: core.perform(kind, payload)), kind)

    # ------------------------------------------------------------------
    # Device operations
    # ------------------------------------------------------------------

    def get_telemetry(self) -> RequestHandle:
        """Request telemetry in the background."""
        return self.submit(KIND_TELEMETRY)

    def get_telemetry_sync(self) -> ResponseRecord:
        """Request telemetry and block until it arrives."""
        return self.perform_sync(KIND_TELEMETRY)

    def set_target_state(
        self,
        position: Sequence[float],
        velocity: Sequence[float],
        timestamp: float,
        *,
        orientation: Sequence[float] = (0.0, 0.0, 0.0),
        frame: str = "lla",
        item_id: int = 1,
    ) -> RequestHandle:
        """Send a target state update in the background."""
        payload = target_state_payload(
            position, velocity, timestamp, orientation=orientation, frame=frame, item_id=item_id
        )
        return self.submit(KIND_SET_TARGET, payload)

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        state = "open" if self.connected else "closed"
        return f"Skypack({self._host}:{self._port}, {state})"
