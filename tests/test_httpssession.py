import pytest

from flamethrower.config import HTTPMethod, parse_target
from flamethrower.httpssession import HTTPSSession, StreamData


class FakeTransport:
    def __init__(self):
        self.written = []
        self.closed = False

    def write(self, data):
        self.written.append(bytes(data))

    def close(self):
        self.closed = True

    def is_closing(self):
        return self.closed


class Recorder:
    def __init__(self):
        self.malformed = 0
        self.messages = []
        self.ready = 0
        self.handshake_errors = 0

    def on_malformed(self):
        self.malformed += 1

    def on_msg(self, data):
        self.messages.append(data)

    def on_ready(self):
        self.ready += 1

    def on_handshake_error(self):
        self.handshake_errors += 1


def make_session(method=HTTPMethod.GET, raw="dns.example.com/dns-query"):
    transport = FakeTransport()
    rec = Recorder()
    target = parse_target(raw, "192.0.2.1")
    session = HTTPSSession(
        transport,
        rec.on_malformed,
        rec.on_msg,
        rec.on_ready,
        rec.on_handshake_error,
        target,
        method,
    )
    return session, transport, rec


def test_create_stream_data_get_appends_query():
    session, _, _ = make_session(HTTPMethod.GET)
    sd = session.create_stream_data(b"AAAB")
    assert sd == StreamData("https", "dns.example.com", "/dns-query?dns=AAAB", -1, b"AAAB")


def test_create_stream_data_post_keeps_path():
    session, _, _ = make_session(HTTPMethod.POST)
    payload = b"\x12\x34" + b"\x00" * 20
    sd = session.create_stream_data(payload)
    assert sd.path == "/dns-query"
    assert sd.data == payload
    assert sd.authority == "dns.example.com"
    assert sd.scheme == "https"


@pytest.mark.parametrize("size", [16, 513, 0])
def test_process_receive_rejects_bad_sizes(size):
    session, _, rec = make_session()
    session.process_receive(b"\x00" * size)
    assert rec.malformed == 1
    assert rec.messages == []


@pytest.mark.parametrize("size", [17, 512])
def test_process_receive_accepts_bounds(size):
    session, _, rec = make_session()
    payload = bytes(range(256)) * 2
    session.process_receive(payload[:size])
    assert rec.messages == [payload[:size]]
    assert rec.malformed == 0


def test_settings_received_signals_ready_once():
    session, _, rec = make_session()
    session.settings_received()
    session.settings_received()
    assert rec.ready == 1


def test_setup_and_connect_sends_tls_client_hello():
    session, transport, _ = make_session()
    assert session.setup() is True
    session.on_connect_event()
    assert transport.written
    # TLS record content type 22 is a handshake record
    assert transport.written[0][0] == 0x16


def test_garbage_during_handshake_reports_error():
    session, _, rec = make_session()
    assert session.setup() is True
    session.on_connect_event()
    session.receive_data(b"HTTP/1.1 400 Bad Request\r\n\r\n" * 4)
    assert rec.handshake_errors == 1
    assert rec.ready == 0


def test_write_before_connection_sends_nothing():
    session, transport, rec = make_session()
    assert session.setup() is True
    session.on_connect_event()
    before = list(transport.written)
    session.write(b"AAAB")
    assert transport.written == before
    assert rec.messages == []


def test_close_ignores_later_data():
    session, transport, rec = make_session()
    assert session.setup() is True
    session.on_connect_event()
    session.close()
    assert transport.closed is True
    session.receive_data(b"HTTP/1.1 400 Bad Request\r\n\r\n")
    assert rec.handshake_errors == 0
    assert rec.messages == []


def test_use_without_setup_raises():
    session, _, _ = make_session()
    with pytest.raises(RuntimeError):
        session.on_connect_event()