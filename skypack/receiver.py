"""
Background receiver: the single reader of a client's UDP socket.

asyncio drives datagram_received() for every inbound datagram for as long as
the transport is open. Each datagram is decoded as a response, and the
waiter registered under its (kind, id) is taken from the table and
fulfilled. Kind is opaque here; there is no dispatch by kind.
"""

import asyncio
import logging

from .correlation import CorrelationTable
from .errors import DecodeError
from .packet import decode

logger = logging.getLogger(__name__)


class ReceiverProtocol(asyncio.DatagramProtocol):
    """Decodes inbound datagrams and resolves matching waiters.

    Decode failures and transient socket errors are logged and dropped; they
    never stop reception. Losing the transport drops every pending waiter so
    no request is left waiting on a reader that no longer exists.
    """

    def __init__(self, table: CorrelationTable, *, trace: bool = False):
        self._table = table
        self._trace = trace
        self.transport = None
        self.received = 0
        self.dropped = 0

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr):
        if self._trace:
            logger.info(f"TRACE< {addr} len={len(data)} {data[:24].hex()}")

        try:
            response = decode(data)
        except DecodeError as e:
            self.dropped += 1
            logger.warning(f"Dropping undecodable datagram from {addr}: {e}")
            return

        self.received += 1
        waiter = self._table.take(response.key)
        if waiter is None:
            self.dropped += 1
            logger.debug(f"Dropping unmatched response kind={response.kind} id={response.id}")
            return

        waiter.fulfill(response)

    def error_received(self, exc):
        logger.warning(f"UDP receive error: {exc}")

    def connection_lost(self, exc):
        pending = self._table.drain()
        if exc is not None:
            logger.warning(f"Receiver stopped: {exc}")
        if pending:
            logger.debug(f"Receiver stopped with {len(pending)} pending request(s)")
        for waiter in pending:
            waiter.drop("Receiver stopped")
        self.transport = None
