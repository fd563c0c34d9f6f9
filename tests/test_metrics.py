import json
import re
import time

import pytest

from flamethrower.config import VERSION_NUM, Config
from flamethrower.metrics import Metrics, MetricsMgr, rcode_name


def test_rcode_names():
    assert rcode_name(0) == "NOERROR"
    assert rcode_name(3) == "NXDOMAIN"
    assert rcode_name(14) == "14"


def test_send_tracks_counts_and_batch_average():
    m = Metrics()
    m.send(300, 3, 3)
    assert m.period_s_count == 3
    assert m.total_s_count == 3
    assert m.in_flight == 3
    assert m.period_pkt_size_avg == 100


def test_send_average_lies_between_sizes():
    m = Metrics()
    for size in (40, 90, 60):
        m.send(size, 1, 1)
    assert 40 <= m.period_pkt_size_avg <= 90


def test_receive_latency_stats():
    m = Metrics()
    m.receive(time.perf_counter_ns() - 5_000_000, 0, 2)
    m.receive(time.perf_counter_ns() - 1_000_000, 3, 1)
    assert m.period_r_count == 2
    assert m.total_r_count == 2
    assert m.in_flight == 1
    assert m.period_response_max_ms >= 5
    assert m.period_response_min_ms >= 1
    assert m.period_response_min_ms <= m.period_response_avg_ms <= m.period_response_max_ms
    assert m.to_dict()["responses"] == {"NOERROR": 1, "NXDOMAIN": 1}


def test_bad_receive_timeout_and_errors():
    m = Metrics()
    m.bad_receive(4)
    m.timeout(3)
    m.net_error()
    m.tcp_connection()
    d = m.to_dict()
    assert d["period_bad_count"] == 1
    assert d["period_r_count"] == 1
    assert d["period_timeouts"] == 1
    assert d["period_net_errors"] == 1
    assert d["period_tcp_connections"] == 1
    assert d["in_flight"] == 3
    assert "responses" not in d


def test_reset_keeps_totals():
    m = Metrics()
    m.send(50, 1, 1)
    m.receive(time.perf_counter_ns(), 0, 0)
    m.reset_periodic_stats()
    assert m.period_s_count == 0
    assert m.period_r_count == 0
    assert m.period_pkt_size_avg == 0.0
    assert m.total_s_count == 1
    assert m.total_r_count == 1
    assert "responses" not in m.to_dict()


def test_trafgen_id_is_port_text():
    m = Metrics()
    m.set_trafgen_id(40000)
    assert m.to_dict()["trafgen_id"] == "40000"


def _feed(mgr):
    a = mgr.create_trafgen_metrics()
    b = mgr.create_trafgen_metrics()
    a.send(100, 2, 2)
    b.send(50, 1, 1)
    a.receive(time.perf_counter_ns() - 2_000_000, 0, 1)
    b.bad_receive(0)
    b.timeout(0)
    return a, b


def test_manager_aggregates_period(tmp_path):
    mgr = MetricsMgr(None, Config(verbosity=0), "flame target")
    a, _ = _feed(mgr)
    mgr.periodic_stats()
    assert mgr.total_s_count == 3
    assert mgr.total_r_count == 2
    assert mgr.total_bad_count == 1
    assert mgr.total_timeouts == 1
    assert mgr.total_qps_s_avg == 3
    assert mgr.total_response_min_ms >= 2
    assert mgr.response_codes[0] == 1
    assert a.period_s_count == 0
    assert mgr.period_s_count == 0


def test_manager_writes_output_file(tmp_path):
    out = tmp_path / "metrics.json"
    mgr = MetricsMgr(None, Config(verbosity=0, output_file=str(out)), "flame target")
    mgr.start()
    _feed(mgr)
    mgr.periodic_stats()
    mgr.finalize()
    records = [json.loads(line) for line in out.read_text().splitlines()]
    header = records[0]
    assert header["version"] == VERSION_NUM
    assert header["cmdline"] == "flame target"
    assert header["run_id"] == mgr.run_id
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\dZ", header["start_timestamp"])
    per_trafgen = [r for r in records if "trafgen_id" in r]
    assert len(per_trafgen) == 4
    final = records[-1]
    assert final["total_s_count"] == 3
    assert final["total_r_count"] == 2
    assert final["total_responses"] == {"NOERROR": 1}
    assert all(r["run_id"] == mgr.run_id for r in records)


def test_output_file_lines_are_compact_and_sorted(tmp_path):
    out = tmp_path / "metrics.json"
    mgr = MetricsMgr(None, Config(verbosity=0, output_file=str(out)), "cmd")
    mgr.start()
    mgr.finalize()
    first = out.read_text().splitlines()[0]
    assert " " not in first.replace('"cmd"', "")
    keys = list(json.loads(first))
    assert keys == sorted(keys)


def test_unopenable_output_file_raises(tmp_path):
    mgr = MetricsMgr(None, Config(verbosity=0, output_file=str(tmp_path)), "cmd")
    with pytest.raises(RuntimeError, match="unable to open metric output file"):
        mgr.start()


def test_to_json_lists_trafgens():
    mgr = MetricsMgr(None, Config(verbosity=0), "cmd")
    _feed(mgr)
    doc = json.loads(mgr.to_json())
    assert len(doc["trafgen"]) == 2
    assert doc["trafgen"][0]["period_s_count"] == 2
    assert doc["period_number"] == mgr.aggregate_count


def test_to_json_without_trafgens():
    mgr = MetricsMgr(None, Config(verbosity=0), "cmd")
    doc = json.loads(mgr.to_json())
    assert "trafgen" not in doc
    assert doc["period_number"] == 0


def test_finalize_prints_summary(capsys):
    mgr = MetricsMgr(None, Config(verbosity=1), "cmd")
    mgr.start()
    _feed(mgr)
    mgr.finalize()
    out = capsys.readouterr().out
    assert "total sent  : 3" in out
    assert "total rcvd  : 2" in out
    assert "bad recv    : 1" in out
    assert "  NOERROR: 1" in out


def test_periodic_display_line(capsys):
    mgr = MetricsMgr(None, Config(verbosity=1), "cmd")
    _feed(mgr)
    mgr.periodic_stats()
    out = capsys.readouterr().out
    assert "send: 3" in out
    assert "timeouts: 1" in out


def test_stop_runs_final_period_and_cancels_timer():
    class FakeHandle:
        def __init__(self):
            self.cancelled = False

        def cancel(self):
            self.cancelled = True

    class FakeLoop:
        def __init__(self):
            self.handles = []

        def call_later(self, delay, callback):
            handle = FakeHandle()
            self.handles.append((delay, callback, handle))
            return handle

    loop = FakeLoop()
    mgr = MetricsMgr(loop, Config(verbosity=0), "cmd")
    mgr.start()
    _feed(mgr)
    delay, callback, handle = loop.handles[0]
    assert delay == 1.0
    callback()
    assert mgr.total_s_count == 3
    assert len(loop.handles) == 2
    mgr.stop()
    assert loop.handles[1][2].cancelled is True
    assert mgr.aggregate_count == 2