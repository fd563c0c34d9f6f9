"""Command line entry point: parse options, build generators and run the senders."""

from __future__ import annotations

import argparse
import asyncio
import signal
import socket
import sys
import threading
from collections import deque
from collections.abc import Iterable, Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from .config import VERSION, Config, HTTPMethod, Target, parse_target
from .generators import (
    NumberNameQueryGenerator,
    RandomLabelQueryGenerator,
    RandomPktQueryGenerator,
    RandomQNameQueryGenerator,
)
from .metrics import MetricsMgr
from .query import FileQueryGenerator, QueryGenerator, StaticQueryGenerator
from .tokenbucket import TokenBucket
from .trafgen import Protocol, TrafGen, TrafGenConfig
from .utils import split

METRIC_ROUTE = "/api/v1/metrics"

_PROTOCOLS = {
    "udp": Protocol.UDP,
    "tcp": Protocol.TCP,
    "dot": Protocol.DOT,
    # "tcptls" is kept as a deprecated alias of dot.
    "tcptls": Protocol.DOT,
    "doh": Protocol.DOH,
}
_FAMILIES = {"inet": socket.AF_INET, "inet6": socket.AF_INET6}
_DEFAULT_PORTS = {Protocol.DOT: 853, Protocol.DOH: 443}

_GENERATORS: dict[str, type[QueryGenerator]] = {
    "numberqname": NumberNameQueryGenerator,
    "randompkt": RandomPktQueryGenerator,
    "randomqname": RandomQNameQueryGenerator,
    "randomlabel": RandomLabelQueryGenerator,
}

_EPILOG = """\
TARGET may be a hostname, an IP address, or a comma separated list of either.
If multiple targets are specified, they are sent queries in strict round robin
across all concurrent generators. TARGET may also be "file", in which case
--targets must be given.

Generators (arguments as KEY=VAL pairs, keys not case sensitive):
  static       single qname/qtype set with -r and -T
  file         one qname/qtype pair per line, used with -f
  numberqname  random numbers in [LOW, HIGH] under the -r zone (LOW=0, HIGH=100000)
  randompkt    COUNT random packets of size [1,SIZE] (COUNT=1000, SIZE=600)
  randomqname  COUNT random qnames of length [1,SIZE] under -r (COUNT=1000, SIZE=255)
  randomlabel  COUNT qnames of up to LBLCOUNT random labels of size [1,LBLSIZE]
               under -r (COUNT=1000, LBLSIZE=10, LBLCOUNT=5)

Example:
  flame target.test.com -T ANY -g randomlabel lblsize=10 lblcount=4 count=1000
"""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flame",
        description="Flamethrower.",
        epilog=_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=VERSION)
    parser.add_argument("--class", dest="qclass", default="IN",
                        help="default query class, IN or CH")
    parser.add_argument("-b", dest="bind_ip", help="IP address to bind to")
    parser.add_argument("-c", dest="concurrency", type=int,
                        help="concurrent traffic generators [10, 30 for tcp]")
    parser.add_argument("-d", dest="delay", type=int,
                        help="ms delay between each generator's query [1, 1000 for tcp]")
    parser.add_argument("-q", dest="batch", type=int,
                        help="queries sent every DELAY ms [10, 100 for tcp]")
    parser.add_argument("-l", dest="limit_secs", type=int, default=0,
                        help="limit traffic generation to N seconds, 0 is unlimited")
    parser.add_argument("-t", dest="timeout", type=int, default=3, help="query timeout in seconds")
    parser.add_argument("-n", dest="loops", type=int, default=0,
                        help="loop N times through the record list, 0 is unlimited")
    parser.add_argument("-Q", dest="qps", type=int, default=0,
                        help="rate limit to a maximum of QPS, 0 is no limit")
    parser.add_argument("--qps-flow", dest="qps_flow", help="QPS,MS;QPS,MS;...")
    parser.add_argument("-r", dest="record", default="test.com", help="base record to query")
    parser.add_argument("-T", dest="qtype", default="A", help="query type")
    parser.add_argument("-f", dest="file", help="read records from FILE, one QNAME TYPE per row")
    parser.add_argument("-p", dest="port", type=int, help="port [53, 443 for doh, 853 for dot]")
    parser.add_argument("-F", dest="family_name", default="inet", help="inet or inet6")
    parser.add_argument("-P", dest="protocol_name", default="udp", help="udp, tcp, dot or doh")
    parser.add_argument("-M", dest="http_method", default="GET", help="POST or GET for doh")
    parser.add_argument("-g", dest="generator", default="static", help="query generator")
    parser.add_argument("-o", dest="output_file", default="", help="metrics output file, JSON")
    parser.add_argument("--http-srv", dest="http_srv", type=int,
                        help="expose JSON metrics via HTTP on this port")
    parser.add_argument("-v", dest="verbosity", type=int, default=1, help="verbosity, 0 is silent")
    parser.add_argument("-R", dest="randomize", action="store_true",
                        help="randomize the query list before sending")
    parser.add_argument("--targets", dest="targets_file", help="file of targets, one per line")
    parser.add_argument("--dnssec", action="store_true", help="set DO flag in EDNS")
    parser.add_argument("target", metavar="TARGET")
    parser.add_argument("genopts", metavar="GENOPTS", nargs="*")
    return parser


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse the command line and fill in the defaults that depend on protocol.

    Raises ValueError for an unknown protocol or internet family.
    """
    args = _build_parser().parse_intermixed_args(list(argv))

    protocol = _PROTOCOLS.get(args.protocol_name)
    if protocol is None:
        raise ValueError("protocol must be 'udp', 'tcp', dot' or 'doh'")
    args.protocol = protocol
    stream = protocol is not Protocol.UDP
    if args.delay is None:
        args.delay = 1000 if stream else 1
    if args.batch is None:
        args.batch = 100 if stream else 10
    if args.concurrency is None:
        args.concurrency = 30 if stream else 10
    if args.port is None:
        args.port = _DEFAULT_PORTS.get(protocol, 53)

    args.method = HTTPMethod.POST if args.http_method == "POST" else HTTPMethod.GET

    family = _FAMILIES.get(args.family_name)
    if family is None:
        raise ValueError("internet family must be 'inet' or 'inet6'")
    args.family = family
    if args.bind_ip is None:
        args.bind_ip = "0.0.0.0" if family == socket.AF_INET else "::0"
    return args


def parse_flowspec(spec: str, verbosity: int, c_count: int) -> deque[tuple[int, int]]:
    """Parse ``QPS,MS;QPS,MS;...`` into a queue of (qps, milliseconds) pairs.

    A QPS below the number of concurrent senders is raised to that number.
    """
    result: deque[tuple[int, int]] = deque()
    for group in split(spec, ";"):
        nums = split(group, ",")
        if len(nums) < 2:
            raise ValueError(f"invalid QPS flow: {group!r}")
        if verbosity > 1:
            print(f"adding QPS flow: {nums[0]}qps, {nums[1]}ms")
        want_r = int(nums[0])
        if want_r < c_count:
            print(
                "WARNING: QPS flow limit is less than concurrent senders, "
                f"changing limit to {c_count}",
                file=sys.stderr,
            )
            want_r = c_count
        result.append((want_r, int(nums[1])))
    return result


def flow_change(
    loop: asyncio.AbstractEventLoop,
    qps_flow: Iterable[tuple[int, int]],
    rl_list: Sequence[TokenBucket],
    verbosity: int,
    c_count: int,
) -> asyncio.TimerHandle | None:
    """Apply the first flow to every bucket and schedule the next one.

    Returns the handle of the scheduled change, or None after the last flow.
    """
    flows = deque(qps_flow)
    qps, duration_ms = flows.popleft()
    if verbosity:
        if flows:
            print(f"QPS flow now {qps} for {duration_ms}ms, flows left: {len(flows)}")
        else:
            print(f"QPS flow now {qps} until completion")
    for bucket in rl_list:
        # Start the bucket afresh at the new rate, as a new bucket would.
        bucket.__init__(qps // c_count)
    if not flows:
        return None
    return loop.call_later(
        duration_ms / 1000.0, flow_change, loop, flows, rl_list, verbosity, c_count
    )


def load_targets(target: str, targets_file: str | None) -> list[str]:
    """List raw targets: lines of ``targets_file`` for ``file``, else comma separated."""
    if target == "file" and targets_file:
        try:
            with open(targets_file, encoding="utf-8") as handle:
                return handle.read().splitlines()
        except OSError as exc:
            raise OSError(f"couldn't open targets file: {targets_file}") from exc
    return split(target, ",")


def build_generator(args: argparse.Namespace, config: Config) -> QueryGenerator:
    """Make and initialise the query generator chosen on the command line."""
    if args.file:
        qgen: QueryGenerator = FileQueryGenerator(config, args.file)
    else:
        qgen = _GENERATORS.get(args.generator, StaticQueryGenerator)(config)
    qgen.set_args(args.genopts)
    qgen.qclass = args.qclass
    qgen.loops = args.loops
    qgen.dnssec = args.dnssec
    qgen.qname = args.record
    qgen.qtype = args.qtype
    qgen.init()
    if not qgen.synthesized_queries and len(qgen) == 0:
        raise ValueError("no queries were generated")
    return qgen


def serve_metrics(metrics_mgr: Any, port: int) -> ThreadingHTTPServer:
    """Serve the manager's JSON metrics on localhost in a background thread."""

    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            if self.path != METRIC_ROUTE:
                self.send_error(404)
                return
            try:
                body = metrics_mgr.to_json().encode("utf-8")
                status, ctype = 200, "text/json"
            except Exception as exc:  # any failure is reported to the client
                body = str(exc).encode("utf-8")
                status, ctype = 500, "text/plain"
            self.send_response(status)
            self.send_header("Content-Type", ctype)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: Any) -> None:
            pass

    try:
        server = ThreadingHTTPServer(("localhost", port), _Handler)
    except OSError as exc:
        raise RuntimeError("unable to listen") from exc
    bound = server.server_address[1]
    print(f"Metrics web server listening on http://localhost:{bound}{METRIC_ROUTE}", file=sys.stderr)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


def _resolve_targets(args: argparse.Namespace) -> list[Target]:
    targets = []
    for raw in load_targets(args.target, args.targets_file):
        target = parse_target(raw)
        try:
            infos = socket.getaddrinfo(target.host, str(args.port))
        except (socket.gaierror, UnicodeError) as exc:
            message = f"unable to resolve target address: {target.host}"
            if raw == "file":
                message += "\n(did you mean to include --targets?)"
            raise LookupError(message) from exc
        address = next((info[4][0] for info in infos if info[0] == args.family), None)
        if address is None:
            raise LookupError(
                f"name did not resolve to valid IP address for this inet family: {raw}"
            )
        targets.append(parse_target(raw, address))
    return targets


def _describe_run(args: argparse.Namespace, tc: TrafGenConfig, qgen: QueryGenerator,
                  config: Config) -> None:
    print(f"binding traffic generators to {tc.bind_ip}")
    shown = ", ".join(t.address for t in tc.target_list[:3])
    if len(tc.target_list) > 3:
        shown += f", and {len(tc.target_list) - 3} more"
    print(
        f"flaming target(s) [{shown}] on port {args.port} with {args.concurrency} "
        f"concurrent generators, each sending {args.batch} queries every {args.delay}ms "
        f"on protocol {args.protocol_name}"
    )
    print(f"query generator [{qgen.name}] contains {len(qgen)} record(s)")
    if args.randomize:
        print("query list randomized")
    if config.rate_limit:
        per_sender = config.rate_limit / args.concurrency
        print(f"rate limit @ {config.rate_limit} QPS ({per_sender:g} QPS per concurrent sender)")


async def _run(args: argparse.Namespace, config: Config, qgen: QueryGenerator,
               targets: list[Target], cmdline: str) -> int:
    loop = asyncio.get_running_loop()
    metrics_mgr = MetricsMgr(loop, config, cmdline)
    server = serve_metrics(metrics_mgr, args.http_srv) if args.http_srv is not None else None

    qps_flow = (
        parse_flowspec(args.qps_flow, config.verbosity, args.concurrency)
        if args.qps_flow else deque()
    )
    traf_config = TrafGenConfig(
        target_list=targets,
        family=args.family,
        bind_ip=args.bind_ip,
        port=args.port,
        r_timeout=args.timeout,
        s_delay=args.delay,
        batch_count=args.batch,
        protocol=args.protocol,
        method=args.method,
    )

    rl_list: list[TokenBucket] = []
    throwers: list[TrafGen] = []
    for _ in range(args.concurrency):
        bucket: TokenBucket | None = None
        if config.rate_limit:
            bucket = TokenBucket(config.rate_limit / args.concurrency)
        elif args.qps_flow:
            bucket = TokenBucket()
            rl_list.append(bucket)
        thrower = TrafGen(loop, metrics_mgr.create_trafgen_metrics(), config,
                          traf_config, qgen, bucket)
        throwers.append(thrower)
        thrower.start()
    if qps_flow:
        flow_change(loop, qps_flow, rl_list, config.verbosity, args.concurrency)

    stopped = asyncio.Event()
    timers: list[asyncio.TimerHandle] = []
    signals: list[int] = []

    def shutdown() -> None:
        if stopped.is_set():
            return
        stopped.set()
        for signum in signals:
            loop.remove_signal_handler(signum)
        for timer in timers:
            timer.cancel()
        for thrower in throwers:
            thrower.stop()
        metrics_mgr.stop()
        if config.verbosity and any(t.in_flight_cnt() for t in throwers):
            print(f"stopping, waiting up to {traf_config.r_timeout}s for in flight to finish...")

    if args.limit_secs:
        timers.append(loop.call_later(args.limit_secs, shutdown))

    def check_loops() -> None:
        if qgen.finished():
            shutdown()
        elif not stopped.is_set():
            timers.append(loop.call_later(0.5, check_loops))

    if qgen.loops:
        timers.append(loop.call_later(0.5, check_loops))

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, shutdown)
            signals.append(signum)
        except (NotImplementedError, RuntimeError, ValueError):
            pass

    if config.verbosity:
        _describe_run(args, traf_config, qgen, config)

    try:
        metrics_mgr.start()
    except (OSError, RuntimeError) as exc:
        print(str(exc), file=sys.stderr)
        shutdown()
        await asyncio.gather(*(t.wait_closed() for t in throwers))
        return 1

    await stopped.wait()
    await asyncio.gather(*(t.wait_closed() for t in throwers))

    if server is not None:
        server.shutdown()
        server.server_close()
    metrics_mgr.finalize()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the traffic generator; returns the process exit status."""
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        args = parse_args(argv)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    if args.verbosity > 3:
        for key, value in sorted(vars(args).items()):
            print(f"{key}: {value}")

    try:
        socket.getaddrinfo(args.bind_ip, "0")
    except (socket.gaierror, UnicodeError):
        print(f"unable to resolve bind ip address: {args.bind_ip}", file=sys.stderr)
        return 1

    try:
        targets = _resolve_targets(args)
    except (OSError, LookupError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    want_r_limit = args.qps
    if want_r_limit and want_r_limit < args.concurrency:
        print(
            "WARNING: QPS limit is less than concurrent senders, "
            f"changing limit to {args.concurrency}",
            file=sys.stderr,
        )
        want_r_limit = args.concurrency
    config = Config(verbosity=args.verbosity, output_file=args.output_file,
                    rate_limit=want_r_limit)

    try:
        qgen = build_generator(args, config)
    except (ValueError, OSError, RuntimeError) as exc:
        print(f"generator error: {exc}", file=sys.stderr)
        return 1

    if args.randomize:
        qgen.randomize()

    cmdline = " ".join(["flame", *argv])
    return asyncio.run(_run(args, config, qgen, targets, cmdline))


if __name__ == "__main__":
    sys.exit(main())