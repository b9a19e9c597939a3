"""
Request handles: pollable/awaitable wrappers around dispatched requests.

AsyncRequestHandle wraps an asyncio.Task running on the caller's loop.
RequestHandle wraps the concurrent.futures.Future returned when a request is
scheduled onto a sync client's reactor thread; it can be waited on from any
thread and awaited from any event loop.

Either way the request is already running when the handle is returned.
Waiting on a handle never cancels the request; only cancel() does. A
cancelled or crashed request surfaces as InternalError.
"""

import asyncio
import concurrent.futures
from typing import Optional

from .errors import DeviceError, InternalError
from .packet import ResponseRecord


class AsyncRequestHandle:
    """Handle for a request running as a task on the current event loop."""

    def __init__(self, task: asyncio.Task, kind: int):
        self._task = task
        self.kind = kind

    def is_finished(self) -> bool:
        """True once the request completed, failed, or was cancelled."""
        return self._task.done()

    def cancel(self) -> bool:
        """Stop the request at its next suspension point (no further attempts)."""
        return self._task.cancel()

    async def wait(self) -> ResponseRecord:
        """Wait for the response.

        Raises:
            DeviceError: The request failed (InternalError if it was cancelled)
        """
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                raise InternalError("Request cancelled") from None
            raise
        except DeviceError:
            raise
        except Exception as e:
            raise InternalError(f"Request task failed: {e!r}") from e

    def __await__(self):
        return self.wait().__await__()

    def __repr__(self):
        state = "finished" if self.is_finished() else "pending"
        return f"AsyncRequestHandle(kind={self.kind}, {state})"


class RequestHandle:
    """Handle for a request scheduled on a sync client's reactor thread."""

    def __init__(self, future: concurrent.futures.Future, kind: int):
        self._future = future
        self.kind = kind

    def is_finished(self) -> bool:
        """True once the request completed, failed, or was cancelled."""
        return self._future.done()

    def cancel(self) -> bool:
        """Stop the request at its next suspension point (no further attempts)."""
        return self._future.cancel()

    def wait(self, timeout: Optional[float] = None) -> ResponseRecord:
        """Block until the response arrives.

        Args:
            timeout: Seconds to wait; None waits for the request's own
                retry bound to play out

        Raises:
            DeviceError: The request failed (InternalError if it was cancelled)
            TimeoutError: ``timeout`` elapsed first; the request keeps running
        """
        try:
            return self._future.result(timeout=timeout)
        except concurrent.futures.CancelledError:
            raise InternalError("Request cancelled") from None
        except concurrent.futures.TimeoutError:
            raise
        except DeviceError:
            raise
        except Exception as e:
            raise InternalError(f"Request task failed: {e!r}") from e

    async def _wait_async(self) -> ResponseRecord:
        try:
            return await asyncio.shield(asyncio.wrap_future(self._future))
        except asyncio.CancelledError:
            if self._future.cancelled():
                raise InternalError("Request cancelled") from None
            raise
        except DeviceError:
            raise
        except Exception as e:
            raise InternalError(f"Request task failed: {e!r}") from e

    def __await__(self):
        return self._wait_async().__await__()

    def __repr__(self):
        state = "finished" if self.is_finished() else "pending"
        return f"RequestHandle(kind={self.kind}, {state})"
