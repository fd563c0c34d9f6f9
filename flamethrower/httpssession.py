"""DNS over HTTPS session: HTTP/2 over an in-memory TLS layer on TCP."""

from __future__ import annotations

import enum
import ssl
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import h2.config
import h2.connection
import h2.events
import h2.exceptions
import h2.settings

from .config import HTTPMethod, Target
from .tcpsession import MAX_DNS_QUERY_SIZE, MIN_DNS_QUERY_SIZE, TCPSession

_READ_CHUNK = 16384
_ALPN = "h2"
_MAX_CONCURRENT_STREAMS = (1 << 31) - 1
_CONTENT_TYPE = "application/dns-message"


@dataclass
class StreamData:
    """One HTTP/2 request carrying a DNS message."""

    scheme: str
    authority: str
    path: str
    id: int
    data: bytes


class _LinkState(enum.Enum):
    HANDSHAKE = "handshake"
    DATA = "data"
    CLOSE = "close"


class _Http2State(enum.Enum):
    WAIT_SETTINGS = "wait_settings"
    SENDING_DATA = "sending_data"


class HTTPSSession(TCPSession):
    """Sends DNS queries as HTTP/2 requests over TLS negotiated with ALPN h2."""

    def __init__(
        self,
        transport: Any,
        malformed_data: Callable[[], None],
        got_dns_msg: Callable[[bytes], None],
        connection_ready: Callable[[], None],
        handshake_error: Callable[[], None],
        target: Target,
        method: HTTPMethod,
    ) -> None:
        super().__init__(transport, malformed_data, got_dns_msg, connection_ready)
        self._malformed = malformed_data
        self._got_msg = got_dns_msg
        self._handshake_error = handshake_error
        self.target = target
        self.method = method
        self._tls_state = _LinkState.HANDSHAKE
        self._http2_state = _Http2State.WAIT_SETTINGS
        self._incoming = ssl.MemoryBIO()
        self._outgoing = ssl.MemoryBIO()
        self._tls: ssl.SSLObject | None = None
        self._conn: h2.connection.H2Connection | None = None
        self._streams: dict[int, StreamData] = {}

    def setup(self) -> bool:
        """Prepare the TLS layer with mandatory h2 ALPN; False on failure."""
        try:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            context.load_default_certs()
            context.set_alpn_protocols([_ALPN])
            self._tls = context.wrap_bio(
                self._incoming,
                self._outgoing,
                server_side=False,
                server_hostname=self.target.host or None,
            )
        except (ssl.SSLError, OSError, ValueError, NotImplementedError) as exc:
            print(f"TLS setup failed: {exc}", file=sys.stderr)
            return False
        return True

    def create_stream_data(self, data: bytes) -> StreamData:
        """Describe the request for ``data``; GET puts it in the ``dns`` query."""
        path = self.target.path
        if self.method is HTTPMethod.GET:
            path += "?dns=" + bytes(data).decode("ascii")
        return StreamData(
            scheme=self.target.scheme,
            authority=self.target.host,
            path=path,
            id=-1,
            data=bytes(data),
        )

    def process_receive(self, data: bytes) -> None:
        """Pass a response body on as a DNS message if its size is plausible."""
        if not MIN_DNS_QUERY_SIZE <= len(data) <= MAX_DNS_QUERY_SIZE:
            print("malformed data", file=sys.stderr)
            self._malformed()
            return
        self._got_msg(bytes(data))

    def settings_received(self) -> None:
        """The first SETTINGS frame makes the connection ready for requests."""
        if self._http2_state is _Http2State.WAIT_SETTINGS:
            super().on_connect_event()
            self._http2_state = _Http2State.SENDING_DATA

    def on_connect_event(self) -> None:
        self._conn = None
        self._do_handshake()

    def close(self) -> None:
        self._tls_state = _LinkState.CLOSE
        if self._tls is not None:
            try:
                self._tls.unwrap()
            except (ssl.SSLError, ValueError):
                pass
            self._flush()
        super().close()

    def receive_data(self, data: bytes) -> None:
        self._incoming.write(data)
        if self._tls_state is _LinkState.HANDSHAKE:
            self._do_handshake()
        elif self._tls_state is _LinkState.DATA:
            tls = self._require_tls()
            while self._tls_state is _LinkState.DATA:
                try:
                    chunk = tls.read(_READ_CHUNK)
                except ssl.SSLError:
                    break
                if not chunk:
                    break
                self._receive_response(chunk)
            self._flush()

    def write(self, data: bytes) -> None:
        """Submit ``data`` as one HTTP/2 request and send it."""
        if self._conn is None:
            print("Could not submit HTTP request: session is not connected", file=sys.stderr)
            return
        stream = self.create_stream_data(data)
        headers = [
            (":method", self.method.value),
            (":scheme", stream.scheme),
            (":authority", stream.authority),
            (":path", stream.path),
            ("accept", _CONTENT_TYPE),
        ]
        is_post = self.method is HTTPMethod.POST
        if is_post:
            headers.append(("content-type", _CONTENT_TYPE))
            headers.append(("content-length", str(len(stream.data))))
        try:
            stream_id = self._conn.get_next_available_outbound_stream_id()
            self._conn.send_headers(stream_id, headers, end_stream=not is_post)
            if is_post:
                self._conn.send_data(stream_id, stream.data, end_stream=True)
        except h2.exceptions.H2Error as exc:
            print(f"Could not submit HTTP request: {exc}", file=sys.stderr)
            return
        stream.id = stream_id
        self._streams[stream_id] = stream
        self._session_send()

    def _require_tls(self) -> ssl.SSLObject:
        if self._tls is None:
            raise RuntimeError("setup() must succeed before the session is used")
        return self._tls

    def _flush(self) -> None:
        pending = self._outgoing.read()
        if pending:
            super().write(pending)

    def _send_tls(self, data: bytes) -> None:
        try:
            self._require_tls().write(data)
        except ssl.SSLError as exc:
            print(f"HTTP2 failed in sending data: {exc}", file=sys.stderr)
        self._flush()

    def _session_send(self) -> None:
        if self._conn is None:
            return
        pending = self._conn.data_to_send()
        if pending:
            self._send_tls(pending)

    def _init_http2(self) -> None:
        conn = h2.connection.H2Connection(config=h2.config.H2Configuration(client_side=True))
        conn.initiate_connection()
        conn.update_settings(
            {h2.settings.SettingCodes.MAX_CONCURRENT_STREAMS: _MAX_CONCURRENT_STREAMS}
        )
        self._conn = conn

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
        if tls.selected_alpn_protocol() != _ALPN:
            print("Cannot get alpn", file=sys.stderr)
            self.close()
            return
        self._init_http2()
        self._session_send()
        self._tls_state = _LinkState.DATA

    def _receive_response(self, chunk: bytes) -> None:
        assert self._conn is not None
        try:
            events = self._conn.receive_data(chunk)
        except h2.exceptions.H2Error as exc:
            print(f"Could not get HTTP2 request: {exc}", file=sys.stderr)
            self.close()
            return
        for event in events:
            if isinstance(event, (h2.events.RemoteSettingsChanged, h2.events.SettingsAcknowledged)):
                self.settings_received()
            elif isinstance(event, h2.events.DataReceived):
                self._conn.acknowledge_received_data(
                    event.flow_controlled_length, event.stream_id
                )
                if event.stream_id not in self._streams:
                    print("No stream data on data chunk", file=sys.stderr)
                    continue
                self.process_receive(event.data)
            elif isinstance(event, (h2.events.StreamEnded, h2.events.StreamReset)):
                if self._streams.pop(event.stream_id, None) is None:
                    print("No stream data on stream close", file=sys.stderr)
                    continue
                self._conn.close_connection(error_code=0)
        self._session_send()