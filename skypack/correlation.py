"""
Correlation of in-flight requests with their responses.

A Waiter is a single-use cell: it is either fulfilled with one
ResponseRecord or dropped, never both. The CorrelationTable maps
(kind, id) keys to waiters and is shared between every request and the one
receiver, possibly from several threads. Keys are spread over lock stripes
so unrelated requests do not contend on a single lock.
"""

import asyncio
import logging
import random
import threading
from typing import Optional

from .constants import U64_MAX
from .errors import CorrelationConflictError, InternalError
from .packet import CorrelationKey, ResponseRecord

logger = logging.getLogger(__name__)

DEFAULT_STRIPES = 16


class Waiter:
    """Single-fulfillment channel between a request and the receiver.

    Backed by an asyncio.Future on the client's event loop. fulfill() and
    drop() may be called from any thread; calls from outside the loop are
    marshalled onto it.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()

    @property
    def future(self) -> asyncio.Future:
        return self._future

    def done(self) -> bool:
        return self._future.done()

    def fulfill(self, response: ResponseRecord):
        """Deliver the response. Later fulfill()/drop() calls are ignored."""
        self._call(self._set_result, response)

    def drop(self, reason: str = "Internal channel closed"):
        """Close the channel without a response; the waiting side sees InternalError."""
        self._call(self._set_exception, InternalError(reason))

    def _call(self, fn, arg):
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            fn(arg)
        elif self._loop.is_closed():
            logger.debug("Waiter loop already closed, nothing to deliver to")
        else:
            self._loop.call_soon_threadsafe(fn, arg)

    def _set_result(self, response: ResponseRecord):
        if not self._future.done():
            self._future.set_result(response)

    def _set_exception(self, exc: Exception):
        if not self._future.done():
            self._future.set_exception(exc)
            # Mark retrieved so an unobserved drop does not log "exception never retrieved"
            self._future.exception()


class CorrelationTable:
    """Concurrent (kind, id) -> Waiter mapping.

    Thread Safety:
        insert/take/drain are safe from any thread without external locking.
        take() is atomic: of two concurrent takes on one key, exactly one
        gets the waiter.
    """

    def __init__(self, stripes: int = DEFAULT_STRIPES):
        if stripes <= 0:
            raise ValueError(f"stripes must be positive, got {stripes}")
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._shards: list[dict[CorrelationKey, Waiter]] = [{} for _ in range(stripes)]

    def _stripe(self, key: CorrelationKey) -> int:
        return hash(key) % len(self._locks)

    def insert(self, key: CorrelationKey, waiter: Waiter):
        """Register a waiter.

        Raises:
            CorrelationConflictError: If the key already has a live waiter.
                The existing waiter is left in place.
        """
        i = self._stripe(key)
        with self._locks[i]:
            if key in self._shards[i]:
                raise CorrelationConflictError(key)
            self._shards[i][key] = waiter

    def take(self, key: CorrelationKey) -> Optional[Waiter]:
        """Remove and return the waiter for key, or None if absent."""
        i = self._stripe(key)
        with self._locks[i]:
            return self._shards[i].pop(key, None)

    def drain(self) -> list[Waiter]:
        """Remove and return every registered waiter."""
        waiters = []
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                waiters.extend(shard.values())
                shard.clear()
        return waiters

    def __contains__(self, key) -> bool:
        i = self._stripe(key)
        with self._locks[i]:
            return key in self._shards[i]

    def __len__(self) -> int:
        total = 0
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                total += len(shard)
        return total

    def __repr__(self):
        return f"CorrelationTable({len(self)} pending)"


class IdGenerator:
    """Process-shared 64-bit correlation id counter.

    Seeded from a random value so ids from a restarted process are unlikely
    to match stale responses still in flight. Wraps modulo 2**64.
    """

    def __init__(self, seed: Optional[int] = None):
        self._next = random.getrandbits(64) if seed is None else seed & U64_MAX
        self._lock = threading.Lock()

    def __iter__(self):
        return self

    def __next__(self) -> int:
        with self._lock:
            value = self._next
            self._next = (value + 1) & U64_MAX
        return value
