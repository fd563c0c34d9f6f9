"""Per-generator counters and their periodic aggregation and output."""

from __future__ import annotations

import json
import math
import time
from collections import Counter
from typing import IO, Any

from .config import VERSION_NUM, Config

_RCODE_NAMES = {
    0: "NOERROR",
    1: "FORMERR",
    2: "SERVFAIL",
    3: "NXDOMAIN",
    4: "NOTIMPL",
    5: "REFUSED",
    6: "YXDOMAIN",
    7: "YXRRSET",
    8: "NXRRSET",
    9: "NOTAUTH",
    10: "NOTZONE",
}

_NS_PER_MS = 1_000_000
_NS_PER_S = 1_000_000_000
_PERIOD_S = 1.0


def rcode_name(rcode: int) -> str:
    """Return the mnemonic for a DNS response code."""
    return _RCODE_NAMES.get(rcode, str(rcode))


def _dump(obj: dict[str, Any]) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def _fmt(value: float | int) -> str:
    if isinstance(value, float):
        return format(value, "g")
    return str(value)


def _lower(current: float, candidate: float) -> float:
    if current == 0:
        return candidate
    if candidate and candidate < current:
        return candidate
    return current


def _higher(current: float, candidate: float) -> float:
    if current == 0:
        return candidate
    if candidate and candidate > current:
        return candidate
    return current


class Metrics:
    """Counters kept by one traffic generator."""

    def __init__(self) -> None:
        self.trafgen_id = ""
        self.total_r_count = 0
        self.total_s_count = 0
        self.in_flight = 0
        self.reset_periodic_stats()

    def set_trafgen_id(self, port: int) -> None:
        self.trafgen_id = str(port)

    def receive(self, send_time: int, rcode: int, in_flight: int) -> None:
        """Record a response; ``send_time`` is a ``time.perf_counter_ns()`` value."""
        latency_ms = (time.perf_counter_ns() - send_time) / _NS_PER_MS
        self.in_flight = in_flight
        self.response_codes[rcode] += 1
        self.total_r_count += 1
        self.period_r_count += 1
        n = self.period_r_count
        self.period_response_avg_ms = (latency_ms + self.period_response_avg_ms * (n - 1)) / n
        if latency_ms > self.period_response_max_ms:
            self.period_response_max_ms = latency_ms
        if self.period_response_min_ms == 0 or latency_ms < self.period_response_min_ms:
            self.period_response_min_ms = latency_ms

    def reset_periodic_stats(self) -> None:
        self.period_r_count = 0
        self.period_s_count = 0
        self.period_bad_count = 0
        self.period_net_errors = 0
        self.period_timeouts = 0
        self.period_tcp_connections = 0
        self.period_response_avg_ms = 0.0
        self.period_response_min_ms = 0.0
        self.period_response_max_ms = 0.0
        self.period_pkt_size_avg = 0.0
        self.response_codes: Counter[int] = Counter()

    def timeout(self, in_flight: int) -> None:
        self.period_timeouts += 1
        self.in_flight = in_flight

    def net_error(self) -> None:
        self.period_net_errors += 1

    def send(self, size: int, count: int, in_flight: int) -> None:
        """Record ``count`` queries sent in ``size`` bytes in total."""
        self.in_flight = in_flight
        self.total_s_count += count
        self.period_s_count += count
        n = self.period_s_count
        self.period_pkt_size_avg = (size + self.period_pkt_size_avg * (n - count)) / n

    def tcp_connection(self) -> None:
        self.period_tcp_connections += 1

    def bad_receive(self, in_flight: int) -> None:
        self.in_flight = in_flight
        self.period_bad_count += 1
        self.total_r_count += 1
        self.period_r_count += 1

    def to_dict(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "period_s_count": self.period_s_count,
            "period_r_count": self.period_r_count,
            "trafgen_id": self.trafgen_id,
            "period_timeouts": self.period_timeouts,
            "in_flight": self.in_flight,
            "period_bad_count": self.period_bad_count,
            "period_response_avg_ms": self.period_response_avg_ms,
            "period_response_min_ms": self.period_response_min_ms,
            "period_response_max_ms": self.period_response_max_ms,
            "period_net_errors": self.period_net_errors,
            "period_tcp_connections": self.period_tcp_connections,
            "pkt_size_avg": self.period_pkt_size_avg,
        }
        if self.response_codes:
            record["responses"] = {
                rcode_name(code): count for code, count in sorted(self.response_codes.items())
            }
        return record


class MetricsMgr:
    """Aggregates all generators' metrics once a second and reports them.

    ``loop`` is an asyncio event loop used for the periodic timer, or None
    when periodic_stats is driven by the caller.
    """

    def __init__(self, loop: Any, config: Config, cmdline: str) -> None:
        self._loop = loop
        self._config = config
        self._cmdline = cmdline
        self._metrics: list[Metrics] = []
        self._metric_file: IO[str] | None = None
        self._timer: Any = None
        self.per_trafgen_metrics = True

        self.run_id = ""
        self.start_ts = ""
        self.runtime_s = 0.0
        self._start_time = time.perf_counter_ns()
        self._qps_clock = self._start_time

        self.response_codes: Counter[int] = Counter()
        self._avg_qps_calc_r_count = 0
        self._avg_qps_calc_s_count = 0
        self.aggregate_count = 0

        self.total_r_count = 0
        self.total_s_count = 0
        self.total_qps_r_avg = 0
        self.total_qps_s_avg = 0
        self.total_timeouts = 0
        self.total_bad_count = 0
        self.total_net_errors = 0
        self.total_tcp_connections = 0
        self.total_response_min_ms = 0.0
        self.total_response_max_ms = 0.0
        self.total_pkt_size_avg = 0.0
        self.total_response_avg_ms = 0.0
        self._reset_period()

    def _reset_period(self) -> None:
        self.period_r_count = 0
        self.period_s_count = 0
        self.period_in_flight = 0
        self.period_timeouts = 0
        self.period_bad_count = 0
        self.period_net_errors = 0
        self.period_tcp_connections = 0
        self.period_response_min_ms = 0.0
        self.period_response_max_ms = 0.0
        self.period_pkt_size_avg = 0.0
        self.period_response_avg_ms = 0.0

    def create_trafgen_metrics(self) -> Metrics:
        metrics = Metrics()
        self._metrics.append(metrics)
        return metrics

    def start(self) -> None:
        """Stamp the run, open the output file and start the periodic timer."""
        self.start_ts = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        self.run_id = format(hash(self.start_ts) & 0xFFFFFFFFFFFFFFFF, "x")
        if self._config.output_file:
            try:
                self._metric_file = open(self._config.output_file, "a", encoding="utf-8")
            except OSError as exc:
                raise RuntimeError("unable to open metric output file") from exc
            self._header_to_disk()
        if self._loop is not None:
            self._timer = self._loop.call_later(_PERIOD_S, self._on_timer)
        self._start_time = time.perf_counter_ns()
        self._qps_clock = self._start_time

    def _on_timer(self) -> None:
        self.periodic_stats()
        self._timer = self._loop.call_later(_PERIOD_S, self._on_timer)

    def stop(self) -> None:
        self.periodic_stats()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _update_runtime(self) -> None:
        self.runtime_s = (time.perf_counter_ns() - self._start_time) / _NS_PER_S

    def _write(self, record: dict[str, Any]) -> None:
        assert self._metric_file is not None
        self._metric_file.write(_dump(record) + "\n")
        self._metric_file.flush()

    def _header_to_disk(self) -> None:
        self._write(
            {
                "version": VERSION_NUM,
                "cmdline": self._cmdline,
                "start_timestamp": self.start_ts,
                "run_id": self.run_id,
            }
        )

    def _flush_to_disk(self) -> None:
        self._update_runtime()
        record: dict[str, Any] = {
            "period_number": self.aggregate_count,
            "total_s_count": self.total_s_count,
            "total_r_count": self.total_r_count,
            "period_timeouts": self.period_timeouts,
            "total_timeouts": self.total_timeouts,
            "period_in_flight": self.period_in_flight,
            "total_bad_count": self.total_bad_count,
            "period_bad_count": self.period_bad_count,
            "total_response_avg_ms": self.total_response_avg_ms,
            "total_response_min_ms": self.total_response_min_ms,
            "total_response_max_ms": self.total_response_max_ms,
            "period_response_avg_ms": self.period_response_avg_ms,
            "period_response_min_ms": self.period_response_min_ms,
            "period_response_max_ms": self.period_response_max_ms,
            "total_qps_r_avg": self.total_qps_r_avg,
            "total_qps_s_avg": self.total_qps_s_avg,
            "total_net_errors": self.total_net_errors,
            "total_tcp_connections": self.total_tcp_connections,
            "total_pkt_size_avg": self.total_pkt_size_avg,
            "period_net_errors": self.period_net_errors,
            "period_pkt_size_avg": self.period_pkt_size_avg,
            "runtime_s": self.runtime_s,
            "run_id": self.run_id,
        }
        if self.response_codes:
            record["total_responses"] = {
                rcode_name(code): count for code, count in sorted(self.response_codes.items())
            }
        self._write(record)

    def _display_final_text(self) -> None:
        if self.total_s_count:
            timeout_pct = self.total_timeouts / self.total_s_count * 100
        else:
            timeout_pct = math.nan
        lines = [
            "",
            "------",
            f"run id      : {self.run_id}",
            f"run start   : {self.start_ts}",
            f"runtime     : {_fmt(self.runtime_s)} s",
            f"total sent  : {self.total_s_count}",
            f"total rcvd  : {self.total_r_count}",
            f"min resp    : {_fmt(self.total_response_min_ms)} ms",
            f"avg resp    : {_fmt(self.total_response_avg_ms)} ms",
            f"max resp    : {_fmt(self.total_response_max_ms)} ms",
            f"avg r qps   : {self.total_qps_r_avg}",
            f"avg s qps   : {self.total_qps_s_avg}",
            f"avg pkt     : {_fmt(self.total_pkt_size_avg)} bytes",
            f"tcp conn.   : {self.total_tcp_connections}",
            f"timeouts    : {self.total_timeouts} ({_fmt(timeout_pct)}%) ",
            f"bad recv    : {self.total_bad_count}",
            f"net errors  : {self.total_net_errors}",
        ]
        if self.response_codes:
            lines.append("responses   :")
            lines.extend(
                f"  {rcode_name(code)}: {count}"
                for code, count in sorted(self.response_codes.items())
            )
        print("\n".join(lines))

    def _display_periodic_stats(self) -> None:
        self._update_runtime()
        print(
            f"{_fmt(self.runtime_s)}s: send: {self.period_s_count}, "
            f"avg send: {self.total_qps_s_avg}, recv: {self.period_r_count}, "
            f"avg recv: {self.total_qps_r_avg}, min/avg/max resp: "
            f"{_fmt(self.period_response_min_ms)}/{_fmt(self.period_response_avg_ms)}/"
            f"{_fmt(self.period_response_max_ms)}ms, in flight: {self.period_in_flight}, "
            f"timeouts: {self.period_timeouts}"
        )

    def aggregate(self, no_avgs: bool = False) -> None:
        """Fold every generator's period counters into the totals and reset them."""
        self.aggregate_count += 1
        for metrics in self._metrics:
            self._aggregate_trafgen(metrics)

        if not no_avgs:
            if time.perf_counter_ns() != self._qps_clock:
                if self.period_s_count:
                    self._avg_qps_calc_s_count += 1
                    n = self._avg_qps_calc_s_count
                    self.total_qps_s_avg = (self.period_s_count + self.total_qps_s_avg * (n - 1)) // n
                if self.period_r_count:
                    self._avg_qps_calc_r_count += 1
                    n = self._avg_qps_calc_r_count
                    self.total_qps_r_avg = (self.period_r_count + self.total_qps_r_avg * (n - 1)) // n

            response_avgs = [m.period_response_avg_ms for m in self._metrics if m.period_r_count]
            if response_avgs:
                self.period_response_avg_ms = sum(response_avgs) / len(response_avgs)
            if self._metrics:
                self.period_pkt_size_avg = sum(
                    m.period_pkt_size_avg for m in self._metrics
                ) / len(self._metrics)
            n = self.aggregate_count
            if self.period_response_avg_ms:
                self.total_response_avg_ms = (
                    self.period_response_avg_ms + self.total_response_avg_ms * (n - 1)
                ) / n
            if self.period_pkt_size_avg:
                self.total_pkt_size_avg = (
                    self.period_pkt_size_avg + self.total_pkt_size_avg * (n - 1)
                ) / n

        for metrics in self._metrics:
            metrics.reset_periodic_stats()
        self._qps_clock = time.perf_counter_ns()

    def _aggregate_trafgen(self, m: Metrics) -> None:
        self._update_runtime()
        if self.per_trafgen_metrics and self._metric_file is not None:
            record: dict[str, Any] = {
                "period_number": self.aggregate_count,
                "run_id": self.run_id,
                "runtime_s": self.runtime_s,
            }
            record.update(m.to_dict())
            self._write(record)

        self.total_r_count += m.period_r_count
        self.total_s_count += m.period_s_count
        self.period_s_count += m.period_s_count
        self.period_r_count += m.period_r_count
        self.period_in_flight += m.in_flight
        self.period_timeouts += m.period_timeouts
        self.total_timeouts += m.period_timeouts
        self.period_bad_count += m.period_bad_count
        self.total_bad_count += m.period_bad_count
        self.period_net_errors += m.period_net_errors
        self.total_net_errors += m.period_net_errors
        self.period_tcp_connections += m.period_tcp_connections
        self.total_tcp_connections += m.period_tcp_connections

        self.total_response_min_ms = _lower(self.total_response_min_ms, m.period_response_min_ms)
        self.period_response_min_ms = _lower(self.period_response_min_ms, m.period_response_min_ms)
        self.total_response_max_ms = _higher(self.total_response_max_ms, m.period_response_max_ms)
        self.period_response_max_ms = _higher(
            self.period_response_max_ms, m.period_response_max_ms
        )
        self.response_codes.update(m.response_codes)

    def periodic_stats(self) -> None:
        """Aggregate, display and write out one period, then reset it."""
        self.aggregate()
        if self._config.verbosity:
            self._display_periodic_stats()
        if self._metric_file is not None:
            self._flush_to_disk()
        self._reset_period()

    def finalize(self) -> None:
        """Collect what remains after the run, print the summary and close the file."""
        self.aggregate(True)
        if self._config.verbosity:
            if self.period_r_count:
                self._display_periodic_stats()
            self._display_final_text()
        if self._metric_file is not None:
            self._flush_to_disk()
            self._metric_file.close()
            self._metric_file = None

    def to_json(self) -> str:
        record: dict[str, Any] = {
            "period_number": self.aggregate_count,
            "run_id": self.run_id,
            "runtime_s": self.runtime_s,
        }
        if self._metrics:
            record["trafgen"] = [m.to_dict() for m in self._metrics]
        return _dump(record)