"""DNS over TCP session: length-prefixed message framing on a transport."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

MIN_DNS_QUERY_SIZE = 17
MAX_DNS_QUERY_SIZE = 512

_LEN_PREFIX = 2


class TCPSession:
    """Frames outgoing data and splits incoming data into DNS messages.

    ``transport`` needs ``write``, ``close`` and ``is_closing``, as an
    asyncio transport has. ``got_dns_msg`` receives each message's bytes.
    """

    def __init__(
        self,
        transport: Any,
        malformed_data: Callable[[], None],
        got_dns_msg: Callable[[bytes], None],
        connection_ready: Callable[[], None],
    ) -> None:
        self.transport = transport
        self._malformed_data = malformed_data
        self._got_dns_msg = got_dns_msg
        self._connection_ready = connection_ready
        self._buffer = bytearray()

    def setup(self) -> bool:
        """Prepare the session before connecting; True if all is well."""
        return True

    def on_connect_event(self) -> None:
        self._connection_ready()

    def _close_transport(self) -> None:
        if not self.transport.is_closing():
            self.transport.close()

    def on_end_event(self) -> None:
        """The peer closed its side."""
        self._close_transport()

    def on_shutdown_event(self) -> None:
        """All local writes have finished."""
        self._close_transport()

    def close(self) -> None:
        """Close gracefully, letting buffered writes go out first."""
        self._close_transport()

    def receive_data(self, data: bytes) -> None:
        """Buffer ``data`` and hand on every complete DNS message in it."""
        self._buffer.extend(data)
        while len(self._buffer) >= _LEN_PREFIX:
            size = int.from_bytes(self._buffer[:_LEN_PREFIX], "big")
            if not MIN_DNS_QUERY_SIZE <= size <= MAX_DNS_QUERY_SIZE:
                self._malformed_data()
                break
            end = _LEN_PREFIX + size
            if len(self._buffer) < end:
                break
            message = bytes(self._buffer[_LEN_PREFIX:end])
            del self._buffer[:end]
            self._got_dns_msg(message)

    def write(self, data: bytes) -> None:
        self.transport.write(data)