"""DNS over TLS session: a TLS layer in memory on top of TCP framing."""

from __future__ import annotations

import enum
import ssl
import sys
from collections.abc import Callable
from typing import Any

from .tcpsession import TCPSession

_READ_CHUNK = 2048


class _LinkState(enum.Enum):
    HANDSHAKE = "handshake"
    DATA = "data"
    CLOSE = "close"


class TCPTLSSession(TCPSession):
    """Runs TLS over the transport, passing decrypted data to the TCP framing."""

    def __init__(
        self,
        transport: Any,
        malformed_data: Callable[[], None],
        got_dns_msg: Callable[[bytes], None],
        connection_ready: Callable[[], None],
        handshake_error: Callable[[], None],
        server_hostname: str | None = None,
    ) -> None:
        super().__init__(transport, malformed_data, got_dns_msg, connection_ready)
        self._handshake_error = handshake_error
        self._server_hostname = server_hostname
        self._state = _LinkState.HANDSHAKE
        self._incoming = ssl.MemoryBIO()
        self._outgoing = ssl.MemoryBIO()
        self._tls: ssl.SSLObject | None = None

    def _make_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        # System trust is loaded, but peers are not verified.
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        context.load_default_certs()
        return context

    def setup(self) -> bool:
        try:
            context = self._make_context()
            self._tls = context.wrap_bio(
                self._incoming,
                self._outgoing,
                server_side=False,
                server_hostname=self._server_hostname,
            )
        except (ssl.SSLError, OSError, ValueError) as exc:
            print(f"TLS setup failed: {exc}", file=sys.stderr)
            return False
        return True

    def _flush(self) -> None:
        pending = self._outgoing.read()
        if pending:
            super().write(pending)

    def _require_tls(self) -> ssl.SSLObject:
        if self._tls is None:
            raise RuntimeError("setup() must succeed before the session is used")
        return self._tls

    def _do_handshake(self) -> None:
        tls = self._require_tls()
        try:
            tls.do_handshake()
        except (ssl.SSLWantReadError, ssl.SSLWantWriteError):
            self._flush()
            return
        except ssl.SSLError as exc:
            self._flush()
            print(f"Handshake failed: {exc}", file=sys.stderr)
            self._handshake_error()
            return
        self._flush()
        self._state = _LinkState.DATA
        super().on_connect_event()

    def on_connect_event(self) -> None:
        self._do_handshake()

    def close(self) -> None:
        self._state = _LinkState.CLOSE
        if self._tls is not None:
            try:
                self._tls.unwrap()
            except (ssl.SSLError, ValueError):
                pass
            self._flush()
        super().close()

    def receive_data(self, data: bytes) -> None:
        self._incoming.write(data)
        if self._state is _LinkState.HANDSHAKE:
            self._do_handshake()
        elif self._state is _LinkState.DATA:
            tls = self._require_tls()
            while True:
                try:
                    chunk = tls.read(_READ_CHUNK)
                except ssl.SSLError:
                    break
                if not chunk:
                    break
                super().receive_data(chunk)
            self._flush()

    def write(self, data: bytes) -> None:
        if self._tls is None:
            print("Error in sending data: session is not set up", file=sys.stderr)
            return
        try:
            self._tls.write(data)
        except ssl.SSLError as exc:
            print(f"Error in sending data: {exc}", file=sys.stderr)
        self._flush()