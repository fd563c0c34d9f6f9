import pytest

from flamethrower.tcpsession import MAX_DNS_QUERY_SIZE, MIN_DNS_QUERY_SIZE, TCPSession


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
        self.messages = []
        self.malformed = 0
        self.ready = 0

    def on_malformed(self):
        self.malformed += 1

    def on_ready(self):
        self.ready += 1


def frame(payload):
    return len(payload).to_bytes(2, "big") + payload


def test_single_message():
    rec = Recorder()
    session = TCPSession(FakeTransport(), rec.on_malformed, rec.messages.append, rec.on_ready)
    payload = bytes(range(20))
    session.receive_data(frame(payload))
    assert rec.messages == [payload]
    assert rec.malformed == 0


def test_message_split_across_chunks():
    rec = Recorder()
    session = TCPSession(FakeTransport(), rec.on_malformed, rec.messages.append, rec.on_ready)
    data = frame(b"x" * 30)
    session.receive_data(data[:1])
    session.receive_data(data[1:10])
    assert rec.messages == []
    session.receive_data(data[10:])
    assert rec.messages == [b"x" * 30]


def test_two_messages_in_one_chunk():
    rec = Recorder()
    session = TCPSession(FakeTransport(), rec.on_malformed, rec.messages.append, rec.on_ready)
    first, second = b"a" * 18, b"b" * 40
    session.receive_data(frame(first) + frame(second) + b"\x00")
    assert rec.messages == [first, second]
    assert rec.malformed == 0


@pytest.mark.parametrize("size", [MIN_DNS_QUERY_SIZE, MAX_DNS_QUERY_SIZE])
def test_size_bounds_accepted(size):
    rec = Recorder()
    session = TCPSession(FakeTransport(), rec.on_malformed, rec.messages.append, rec.on_ready)
    session.receive_data(frame(b"q" * size))
    assert rec.messages == [b"q" * size]


@pytest.mark.parametrize("size", [MIN_DNS_QUERY_SIZE - 1, MAX_DNS_QUERY_SIZE + 1, 0])
def test_size_out_of_bounds_is_malformed(size):
    rec = Recorder()
    session = TCPSession(FakeTransport(), rec.on_malformed, rec.messages.append, rec.on_ready)
    session.receive_data(size.to_bytes(2, "big") + b"z" * size)
    assert rec.malformed == 1
    assert rec.messages == []


def test_write_goes_to_transport():
    rec = Recorder()
    transport = FakeTransport()
    session = TCPSession(transport, rec.on_malformed, rec.messages.append, rec.on_ready)
    session.write(b"hello")
    assert transport.written == [b"hello"]


def test_connect_event_signals_ready():
    rec = Recorder()
    session = TCPSession(FakeTransport(), rec.on_malformed, rec.messages.append, rec.on_ready)
    assert session.setup() is True
    session.on_connect_event()
    assert rec.ready == 1


@pytest.mark.parametrize("method", ["close", "on_end_event", "on_shutdown_event"])
def test_closing_events_close_transport(method):
    rec = Recorder()
    transport = FakeTransport()
    session = TCPSession(transport, rec.on_malformed, rec.messages.append, rec.on_ready)
    getattr(session, method)()
    assert transport.closed is True