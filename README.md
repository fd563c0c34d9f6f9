# flamethrower

A DNS traffic generator for performance and functional testing. It sends
queries to one or more name servers over UDP, TCP, DNS-over-TLS or
DNS-over-HTTPS (HTTP/2), applies optional rate limits, and reports sent and
received counts, latencies, timeouts and response codes on the console, to a
JSON lines file, or over a small HTTP endpoint.

## Installation

    pip install .

This installs the `flame` command. Tests need the `test` extra:

    pip install .[test]
    pytest

## Usage

    flame [options] TARGET [GENOPTS]...

`TARGET` is a hostname, an IP address, or a comma separated list of either.
Queries go to the targets in strict round robin. Each target may also be
written as an `https://` URL; for DoH its path is the request path, so give
it, e.g. `dns.example.com/dns-query`. Use `TARGET` = `file` together with
`--targets FILE` to read one target per line from a file.

| Option | Meaning | Default |
| --- | --- | --- |
| `-P PROTOCOL` | `udp`, `tcp`, `dot` or `doh` (`tcptls` is an alias of `dot`) | `udp` |
| `-p PORT` | target port | 53, 853 for DoT, 443 for DoH |
| `-F FAMILY` | `inet` or `inet6` | `inet` |
| `-b BIND_IP` | local address to bind to | `0.0.0.0`, `::0` for inet6 |
| `-c TCOUNT` | concurrent traffic generators | 10 (30 for tcp/dot/doh) |
| `-q QCOUNT` | queries sent every DELAY ms | 10 (100 for tcp/dot/doh) |
| `-d DELAY_MS` | delay between batches | 1 (1000 for tcp/dot/doh) |
| `-Q QPS` | overall rate limit, 0 is none; raised to TCOUNT if lower | 0 |
| `--qps-flow SPEC` | rate limit over time, `QPS,MS;QPS,MS;...` | |
| `-l LIMIT_SECS` | stop after N seconds, 0 is unlimited | 0 |
| `-t TIMEOUT` | query timeout in seconds | 3 |
| `-r RECORD` | base query name | `test.com` |
| `-T QTYPE` | query type | `A` |
| `--class CLASS` | `IN` or `CH` | `IN` |
| `--dnssec` | set the DO flag in EDNS | |
| `-M METHOD` | `GET` or `POST` for DoH | `GET` |
| `-g GENERATOR` | query generator, see below | `static` |
| `-f FILE` | read `QNAME QTYPE [ADDR/LEN]` lines from FILE | |
| `-n LOOP` | loop through the record list N times, 0 is unlimited | 0 |
| `-R` | shuffle the query list before sending | |
| `-o FILE` | append JSON metrics, one object per line, to FILE | |
| `--http-srv PORT` | serve metrics at `http://localhost:PORT/api/v1/metrics` | |
| `-v VERBOSITY` | 0 is silent | 1 |

Supported query types: A, AAAA, SOA, PTR (sent as AAAA), TXT, ANY, CNAME, MX,
NS, SRV, SPF, A6, CAA, CERT, AFSDB, DNAME, HINFO, NAPTR, DS, RP. Every query is
recursive and carries EDNS with a 1232-byte buffer size. An `ADDR/LEN` column
in a records file adds an EDNS client subnet option.

### Generators

Choose with `-g`; pass generator settings as `KEY=VAL` pairs after the target
(keys are case-insensitive), or all as positional values in the order shown.

- `static` – a single qname/qtype from `-r` and `-T` (default)
- `file` – used with `-f`
- `numberqname` – `N.<zone>` with N random in `[LOW, HIGH]` under the `-r` zone
  (`LOW=0`, `HIGH=100000`); built per query, UDP only
- `randompkt` – `COUNT` packets of random bytes of size `[1, SIZE]`
  (`COUNT=1000`, `SIZE=600`, at most 65500)
- `randomqname` – `COUNT` queries whose name is one label of random bytes of
  length `[1, SIZE]`, capped at 63 bytes (`COUNT=1000`, `SIZE=255`)
- `randomlabel` – `COUNT` names of up to `LBLCOUNT` random labels of size
  `[2, LBLSIZE]` under the `-r` zone, each with a random popular qtype
  (`COUNT=1000`, `LBLSIZE=10`, `LBLCOUNT=5`)

### Examples

    flame 127.0.0.1
    flame -P tcp -Q 1000 ns1.example.com
    flame -P doh -M POST dns.example.com/dns-query
    flame target.example.com -T ANY -g randomlabel lblsize=10 lblcount=4 count=1000
    flame -l 30 -o metrics.json --http-srv 8080 127.0.0.1

Stop a run at any time with Ctrl-C; in-flight queries are given up to the
query timeout to finish, then a summary is printed.

## Library use

- `flamethrower.query`: `build_query`, `cvt_qtype`, `QueryGenerator`,
  `StaticQueryGenerator`, `FileQueryGenerator`
- `flamethrower.generators`: `RandomPktQueryGenerator`,
  `RandomQNameQueryGenerator`, `RandomLabelQueryGenerator`,
  `NumberNameQueryGenerator`
- `flamethrower.tokenbucket`: `TokenBucket`
- `flamethrower.metrics`: `Metrics`, `MetricsMgr`, `rcode_name`
- `flamethrower.tcpsession`, `flamethrower.tcptlssession`,
  `flamethrower.httpssession`: `TCPSession`, `TCPTLSSession`, `HTTPSSession`
- `flamethrower.trafgen`: `Protocol`, `TrafGenConfig`, `TrafGen`
- `flamethrower.config`: `Config`, `HTTPMethod`, `Target`, `parse_target`
- `flamethrower.main`: `main`, `parse_args`, `parse_flowspec`, `flow_change`,
  `load_targets`, `build_generator`, `serve_metrics`

## Limitations

- DoT and DoH connections load the system trust store but do not verify the
  server certificate or host name.
- The `numberqname` generator cannot be used with TCP-based protocols.
- UDP sending relies on event loop socket readers, so it needs a POSIX system.