"""Traffic generator: sends queries over UDP, TCP, DoT or DoH and tracks replies."""

from __future__ import annotations

import asyncio
import enum
import errno
import random
import socket
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import Config, HTTPMethod, Target
from .httpssession import HTTPSSession
from .metrics import Metrics
from .query import QueryGenerator
from .tcpsession import TCPSession
from .tcptlssession import TCPTLSSession
from .tokenbucket import TokenBucket

_MAX_IDS = 0xFFFF
_DNS_HEADER_LEN = 12
_NS_PER_MS = 1_000_000
_NS_PER_S = 1_000_000_000
_UDP_RECV_SIZE = 65535


class Protocol(enum.Enum):
    """Transport used to send queries."""

    UDP = "udp"
    TCP = "tcp"
    DOH = "doh"
    DOT = "dot"


@dataclass
class TrafGenConfig:
    """Settings shared by all traffic generators of a run."""

    target_list: list[Target] = field(default_factory=list)
    current_target: int = 0
    family: int = socket.AF_INET
    bind_ip: str = "0.0.0.0"
    port: int = 53
    r_timeout: int = 3
    s_delay: int = 1
    batch_count: int = 10
    protocol: Protocol = Protocol.UDP
    method: HTTPMethod = HTTPMethod.POST

    def next_target(self) -> Target:
        """Return targets in strict round robin order."""
        target = self.target_list[self.current_target]
        self.current_target += 1
        if self.current_target >= len(self.target_list):
            self.current_target = 0
        return target


class _Timer:
    """A libuv-style timer: first fires after a timeout, then every repeat ms."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> None:
        self._loop = loop
        self._callback = callback
        self._repeat_ms = 0
        self._handle: asyncio.TimerHandle | None = None

    def start(self, timeout_ms: float, repeat_ms: float) -> None:
        self.stop()
        self._repeat_ms = repeat_ms
        self._handle = self._loop.call_later(timeout_ms / 1000.0, self._fire)

    def _fire(self) -> None:
        self._handle = None
        if self._repeat_ms:
            self._handle = self._loop.call_later(self._repeat_ms / 1000.0, self._fire)
        self._callback()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class _TrackedTransport:
    """Wraps a transport so every write is reported, as a write-done event."""

    def __init__(self, transport: asyncio.Transport, on_write: Callable[[], None]) -> None:
        self._transport = transport
        self._on_write = on_write

    def write(self, data: bytes) -> None:
        self._transport.write(data)
        self._on_write()

    def close(self) -> None:
        self._transport.close()

    def is_closing(self) -> bool:
        return self._transport.is_closing()

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        return self._transport.get_extra_info(name, default)


class _TcpProtocol(asyncio.Protocol):
    def __init__(self, owner: TrafGen) -> None:
        self._owner = owner

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._owner._on_tcp_connect(transport)  # type: ignore[arg-type]

    def data_received(self, data: bytes) -> None:
        self._owner._on_tcp_data(data)

    def eof_received(self) -> bool:
        self._owner._on_tcp_end()
        return False

    def connection_lost(self, exc: Exception | None) -> None:
        self._owner._on_tcp_close()


class TrafGen:
    """One concurrent sender with its own ids, in-flight table and sockets."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        metrics: Metrics,
        config: Config,
        traf_config: TrafGenConfig,
        qgen: QueryGenerator,
        rate_limit: TokenBucket | None = None,
    ) -> None:
        self._loop = loop
        self._metrics = metrics
        self._config = config
        self._traf_config = traf_config
        self._qgen = qgen
        self._rate_limit = rate_limit
        self._stopping = False

        self._free_ids = list(range(_MAX_IDS))
        random.shuffle(self._free_ids)
        self._in_flight: dict[int, int] = {}

        self._udp_sock: socket.socket | None = None
        self._tcp_transport: _TrackedTransport | None = None
        self._session: TCPSession | None = None
        self._connect_task: asyncio.Task[Any] | None = None

        self._sender_timer = _Timer(loop, self._udp_send)
        self._timeout_timer = _Timer(loop, self.handle_timeouts)
        self._shutdown_timer = _Timer(loop, self._shutdown)
        self._finish_timer: _Timer | None = None
        self._closed: asyncio.Future[None] = loop.create_future()

    # -- bookkeeping -------------------------------------------------------

    def in_flight_cnt(self) -> int:
        return len(self._in_flight)

    def _now_ms(self) -> int:
        return int(self._loop.time() * 1000)

    def _take_id(self) -> int:
        qid = self._free_ids.pop()
        assert qid not in self._in_flight
        return qid

    def process_wire(self, data: bytes) -> None:
        """Match a response to its query by id and record it."""
        if len(data) <= _DNS_HEADER_LEN:
            self._metrics.bad_receive(len(self._in_flight))
            return
        qid = int.from_bytes(data[:2], "big")
        rcode = data[3] & 0x0F
        send_time = self._in_flight.get(qid)
        if send_time is None:
            if self._config.verbosity > 1:
                print(f"untracked {qid}", file=sys.stderr)
            self._metrics.bad_receive(len(self._in_flight))
            return
        self._metrics.receive(send_time, rcode, len(self._in_flight))
        del self._in_flight[qid]
        self._free_ids.append(qid)

    def handle_timeouts(self, force_reset: bool = False) -> None:
        """Time out stale queries, or all of them when ``force_reset`` is set."""
        now = time.perf_counter_ns()
        timed_out = [
            qid
            for qid, sent in self._in_flight.items()
            if force_reset or (now - sent) // _NS_PER_S >= self._traf_config.r_timeout
        ]
        for qid in timed_out:
            del self._in_flight[qid]
            self._metrics.timeout(len(self._in_flight))
            self._free_ids.append(qid)

    # -- UDP ---------------------------------------------------------------

    def _start_udp(self) -> None:
        tc = self._traf_config
        sock = socket.socket(tc.family, socket.SOCK_DGRAM)
        sock.setblocking(False)
        if tc.family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        try:
            sock.bind((tc.bind_ip, 0))
        except OSError as exc:
            if exc.errno == errno.EADDRNOTAVAIL:
                sock.close()
                raise RuntimeError(f"unable to bind to ip address: {tc.bind_ip}") from exc
            self._metrics.net_error()
        self._udp_sock = sock
        self._metrics.set_trafgen_id(sock.getsockname()[1])
        self._loop.add_reader(sock.fileno(), self._on_udp_readable)

    def _on_udp_readable(self) -> None:
        while self._udp_sock is not None:
            try:
                data, _ = self._udp_sock.recvfrom(_UDP_RECV_SIZE)
            except BlockingIOError:
                break
            except OSError:
                self._metrics.net_error()
                break
            self.process_wire(data)

    def _udp_send(self) -> None:
        if self._udp_sock is None:
            return
        if self._qgen.finished():
            return
        if not self._free_ids:
            print("max in flight reached", file=sys.stderr)
            return
        tc = self._traf_config
        for _ in range(tc.batch_count):
            if self._rate_limit is not None and not self._rate_limit.consume(1, self._now_ms()):
                return
            if not self._free_ids:
                print("max in flight reached", file=sys.stderr)
                return
            qid = self._take_id()
            wire = self._qgen.next_udp(qid)
            try:
                self._udp_sock.sendto(wire, (tc.next_target().address, tc.port))
            except OSError:
                self._metrics.net_error()
            self._metrics.send(len(wire), 1, len(self._in_flight))
            self._in_flight[qid] = time.perf_counter_ns()

    # -- TCP, DoT and DoH --------------------------------------------------

    def _start_tcp_session(self) -> None:
        tc = self._traf_config
        target = tc.next_target()

        def malformed_data() -> None:
            self._metrics.net_error()
            self.handle_timeouts(True)
            if self._tcp_transport is not None:
                self._tcp_transport.close()

        if tc.protocol is Protocol.TCP:
            session: TCPSession = TCPSession(
                None, malformed_data, self.process_wire, self._connection_ready
            )
        elif tc.protocol is Protocol.DOT:
            session = TCPTLSSession(
                None,
                malformed_data,
                self.process_wire,
                self._connection_ready,
                malformed_data,
                target.host or None,
            )
        else:
            session = HTTPSSession(
                None,
                malformed_data,
                self.process_wire,
                self._connection_ready,
                malformed_data,
                target,
                tc.method,
            )
        self._session = session
        if not session.setup():
            return
        self._connect_task = self._loop.create_task(self._connect(target))

    async def _connect(self, target: Target) -> None:
        tc = self._traf_config
        try:
            await self._loop.create_connection(
                lambda: _TcpProtocol(self),
                host=target.address,
                port=tc.port,
                family=tc.family,
                local_addr=(tc.bind_ip, 0),
            )
        except OSError as exc:
            if self._config.verbosity > 1:
                print(f"{target.address}:{tc.port} - {exc}", file=sys.stderr)
            self._metrics.net_error()
            self._on_tcp_close()

    def _on_tcp_connect(self, transport: asyncio.Transport) -> None:
        wrapped = _TrackedTransport(transport, self._on_tcp_write)
        self._tcp_transport = wrapped
        sockname = transport.get_extra_info("sockname")
        if sockname:
            self._metrics.set_trafgen_id(sockname[1])
        if self._session is None:
            transport.close()
            return
        self._session.transport = wrapped
        self._session.on_connect_event()
        self._metrics.tcp_connection()

    def _on_tcp_data(self, data: bytes) -> None:
        if self._session is not None:
            self._session.receive_data(data)

    def _on_tcp_end(self) -> None:
        if self._session is not None:
            self._session.on_end_event()

    def _on_tcp_write(self) -> None:
        if self._finish_timer is None:
            self._start_wait_timer_for_tcp_finish()

    def _on_tcp_close(self) -> None:
        if self._finish_timer is not None:
            self._finish_timer.stop()
            self._finish_timer = None
        self._session = None
        self._tcp_transport = None
        self._connect_task = None
        self.handle_timeouts(True)
        if not self._stopping:
            self._start_tcp_session()

    def _connection_ready(self) -> None:
        tc = self._traf_config
        session = self._session
        if session is None:
            return
        id_list: list[int] = []
        for _ in range(tc.batch_count):
            if not self._free_ids:
                break
            if self._rate_limit is not None and not self._rate_limit.consume(1, self._now_ms()):
                break
            qid = self._take_id()
            id_list.append(qid)
            self._in_flight[qid] = time.perf_counter_ns()
            if tc.protocol is Protocol.DOH:
                if tc.method is HTTPMethod.GET:
                    wire = self._qgen.next_base64url(qid)
                else:
                    wire = self._qgen.next_udp(qid)
                session.write(wire)
                self._metrics.send(len(wire), 1, len(self._in_flight))

        if not id_list:
            if self._tcp_transport is not None:
                self._tcp_transport.close()
            return

        if tc.protocol is not Protocol.DOH:
            wire = self._qgen.next_tcp(id_list)
            session.write(wire)
            self._metrics.send(len(wire), len(id_list), len(self._in_flight))

    def _start_wait_timer_for_tcp_finish(self) -> None:
        tc = self._traf_config
        wait_start = time.perf_counter_ns()

        def on_tick() -> None:
            waited_ms = (time.perf_counter_ns() - wait_start) // _NS_PER_MS
            if self._in_flight and waited_ms < tc.r_timeout * 1000:
                return
            if waited_ms < tc.s_delay:
                return
            if self._finish_timer is not None:
                self._finish_timer.stop()
            if self._tcp_transport is not None:
                self._tcp_transport.close()

        self._finish_timer = _Timer(self._loop, on_tick)
        self._finish_timer.start(1, tc.s_delay)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Open the socket or connection and start the send and timeout timers."""
        tc = self._traf_config
        if tc.protocol is Protocol.UDP:
            self._start_udp()
            self._sender_timer.start(1, tc.s_delay)
        else:
            self._start_tcp_session()
        self._timeout_timer.start(tc.r_timeout * 1000, 1000)

    def _shutdown(self) -> None:
        if self._udp_sock is not None:
            self._loop.remove_reader(self._udp_sock.fileno())
            self._udp_sock.close()
            self._udp_sock = None
        if self._tcp_transport is not None:
            self._tcp_transport.close()
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        if self._finish_timer is not None:
            self._finish_timer.stop()
        self._timeout_timer.stop()
        self._sender_timer.stop()
        self.handle_timeouts()
        if not self._closed.done():
            self._closed.set_result(None)

    def stop(self) -> None:
        """Stop sending; shut down once in-flight queries had time to answer."""
        self._stopping = True
        self._sender_timer.stop()
        delay_ms = self._traf_config.r_timeout * 1000 if self._in_flight else 1
        self._shutdown_timer.start(delay_ms, 0)

    async def wait_closed(self) -> None:
        """Wait until the generator has shut down after ``stop``."""
        await asyncio.shield(self._closed)