"""DNS query wire building and the query generators that feed senders."""

from __future__ import annotations

import abc
import base64
import enum
import ipaddress
import random
import re
import sys
from collections.abc import Iterable, Sequence

import dns.edns
import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rdataclass
import dns.rdatatype

from .config import Config
from .utils import split

# EDNS buffer size that avoids fragmentation on IPv6
EDNS_BUFFER_SIZE = 1232
MAX_LABEL_LEN = 63
MAX_DOMAIN_LEN = 255

_ECS_OPTION_CODE = 8

_QTYPES = {
    "A": dns.rdatatype.A,
    "AAAA": dns.rdatatype.AAAA,
    "SOA": dns.rdatatype.SOA,
    # PTR has always been sent as AAAA by this tool; kept for compatibility.
    "PTR": dns.rdatatype.AAAA,
    "TXT": dns.rdatatype.TXT,
    "ANY": dns.rdatatype.ANY,
    "CNAME": dns.rdatatype.CNAME,
    "MX": dns.rdatatype.MX,
    "NS": dns.rdatatype.NS,
    "SRV": dns.rdatatype.SRV,
    "SPF": dns.rdatatype.SPF,
    "A6": dns.rdatatype.A6,
    "CAA": dns.rdatatype.CAA,
    "CERT": dns.rdatatype.CERT,
    "AFSDB": dns.rdatatype.AFSDB,
    "DNAME": dns.rdatatype.DNAME,
    "HINFO": dns.rdatatype.HINFO,
    "NAPTR": dns.rdatatype.NAPTR,
    "DS": dns.rdatatype.DS,
    "RP": dns.rdatatype.RP,
}

_LINE_RE = re.compile(r"^\s*(\S+)\s+(\S+)\s*(\S+)?\s*$")


class GeneratorArgFmt(enum.Enum):
    """How generator arguments were given on the command line."""

    POSITIONAL = "positional"
    KEYVAL = "keyval"


def cvt_qtype(name: str) -> dns.rdatatype.RdataType:
    """Map a query type name (any case) to its record type.

    Raises ValueError for types the generators do not support.
    """
    qt = name.upper()
    try:
        return _QTYPES[qt]
    except KeyError:
        raise ValueError(f"unimplemented QTYPE: [{qt}]") from None


def _ecs_option(prefix: str) -> dns.edns.Option | None:
    parts = split(prefix, "/")
    if len(parts) != 2:
        return None
    cidr, mask_text = parts
    mask = int(mask_text)
    try:
        if ":" in cidr:
            family = 2
            packed = ipaddress.IPv6Address(cidr).packed
        else:
            family = 1
            packed = ipaddress.IPv4Address(cidr).packed
    except ValueError as exc:
        raise ValueError(f"invalid client subnet address: {cidr}") from exc
    if not 0 <= mask <= len(packed) * 8:
        raise ValueError(f"invalid client subnet prefix length: {mask}")
    numbytes = (mask + 7) // 8
    data = bytes([0x00, family, mask, 0x00]) + packed[:numbytes]
    return dns.edns.GenericOption(_ECS_OPTION_CODE, data)


def build_query(
    qname: str | bytes,
    qtype: str,
    qclass: str = "IN",
    dnssec: bool = False,
    prefix: str = "",
    binary: bool = False,
    qid: int = 0,
) -> bytes:
    """Build the wire form of a recursive query with EDNS.

    A ``binary`` qname is taken as the raw bytes of a single label, capped
    at 63 bytes. ``prefix`` of the form ``ADDR/LEN`` adds a client subnet
    option. Raises ValueError when no valid packet can be made.
    """
    rdtype = cvt_qtype(qtype)
    rdclass = dns.rdataclass.CH if qclass == "CH" else dns.rdataclass.IN
    try:
        if binary:
            raw = qname.encode("latin-1") if isinstance(qname, str) else bytes(qname)
            raw = raw[:MAX_LABEL_LEN]
            labels = (raw, b"") if raw else (b"",)
            name = dns.name.Name(labels)
        else:
            text = qname.decode("latin-1") if isinstance(qname, bytes) else qname
            name = dns.name.from_text(text)
    except (dns.exception.DNSException, ValueError) as exc:
        raise ValueError(f"failed to create wire packet on [{qtype} {qname!r}]") from exc

    options = []
    ecs = _ecs_option(prefix)
    if ecs is not None:
        options.append(ecs)

    msg = dns.message.make_query(
        name,
        rdtype,
        rdclass,
        use_edns=0,
        want_dnssec=dnssec,
        payload=EDNS_BUFFER_SIZE,
        options=options,
    )
    msg.id = qid
    return msg.to_wire()


def _with_id(wire: bytes, qid: int) -> bytes:
    header = qid.to_bytes(2, "big")[: len(wire)]
    return header + wire[len(header):]


class QueryGenerator(abc.ABC):
    """Holds prebuilt query packets and hands them out round robin."""

    name = "generator"
    synthesized_queries = False

    def __init__(self, config: Config) -> None:
        self.config = config
        self.loops = 0
        self.qclass = ""
        self.qname = ""
        self.qtype = ""
        self.dnssec = False
        self.args_fmt = GeneratorArgFmt.KEYVAL
        self.positional_args: list[str] = []
        self.kv_args: dict[str, str] = {}
        self.wire_buffers: list[bytes] = []
        self.reqs = 0

    @abc.abstractmethod
    def init(self) -> None:
        """Build the generator's queries from its settings and arguments."""

    def set_args(self, args: Sequence[str]) -> None:
        """Take generator arguments, either all KEY=VAL pairs or all positional."""
        have_kv = any("=" in arg for arg in args)
        all_kv = all("=" in arg for arg in args)
        if have_kv and not all_kv:
            raise ValueError("mixed positional and key/val generator arguments are not supported")

        if not args or have_kv:
            self.args_fmt = GeneratorArgFmt.KEYVAL
        else:
            self.args_fmt = GeneratorArgFmt.POSITIONAL

        if self.args_fmt is GeneratorArgFmt.POSITIONAL:
            self.positional_args = list(args)
            if self.config.verbosity > 1:
                print(f"{len(self.positional_args)} positional generator arguments", file=sys.stderr)
        else:
            for arg in args:
                vals = split(arg, "=")
                if len(vals) != 2:
                    raise ValueError("invalid key/value pair")
                self.kv_args[vals[0].upper()] = vals[1]
            if self.config.verbosity > 1:
                print(f"{len(self.kv_args)} key/value generator arguments", file=sys.stderr)

    def finished(self) -> bool:
        """True once every query has been sent ``loops`` times (never if loops is 0)."""
        if not self.loops or not self.wire_buffers:
            return False
        return self.reqs // len(self.wire_buffers) >= self.loops

    def randomize(self) -> None:
        """Shuffle the order in which queries are sent."""
        random.shuffle(self.wire_buffers)

    def _log_push(self, qname: str | bytes, binary: bool) -> None:
        if self.config.verbosity >= 2 and len(self.wire_buffers) < 10:
            if binary:
                raw = qname.encode("latin-1") if isinstance(qname, str) else bytes(qname)
                shown = "".join(f"\\{byte:03d}" for byte in raw)
            else:
                shown = qname.decode("latin-1") if isinstance(qname, bytes) else qname
            print(f'{self.name}: push "{shown}."', file=sys.stderr)

    def _new_rec(
        self,
        qname: str | bytes,
        qtype: str,
        prefix: str = "",
        binary: bool = False,
        qid: int = 0,
    ) -> bytes:
        wire = build_query(qname, qtype, self.qclass, self.dnssec, prefix, binary, qid)
        self._log_push(qname, binary)
        return wire

    def push_rec(
        self, qname: str | bytes, qtype: str, prefix: str = "", binary: bool = False
    ) -> None:
        """Build a query and add it to the list handed out by the senders."""
        self.wire_buffers.append(self._new_rec(qname, qtype, prefix, binary))

    def _next_wire(self) -> bytes:
        if not self.wire_buffers:
            raise ValueError("no queries were generated")
        wire = self.wire_buffers[self.reqs % len(self.wire_buffers)]
        self.reqs += 1
        return wire

    def next_udp(self, qid: int) -> bytes:
        """Return the next query with its id set to ``qid``."""
        return _with_id(self._next_wire(), qid)

    def next_tcp(self, id_list: Iterable[int]) -> bytes:
        """Return one length-prefixed query per id, concatenated."""
        chunks = []
        for qid in id_list:
            wire = self._next_wire()
            chunks.append(len(wire).to_bytes(2, "big"))
            chunks.append(_with_id(wire, qid))
        return b"".join(chunks)

    def next_base64url(self, qid: int) -> bytes:
        """Return the next query, id set, as unpadded base64url."""
        return base64.urlsafe_b64encode(self.next_udp(qid)).rstrip(b"=")

    def __len__(self) -> int:
        return len(self.wire_buffers)


class StaticQueryGenerator(QueryGenerator):
    """A single query built from the configured qname and qtype."""

    name = "static"

    def init(self) -> None:
        self.push_rec(self.qname, self.qtype)


class FileQueryGenerator(QueryGenerator):
    """Queries read from a file of ``QNAME QTYPE [SUBNET]`` lines."""

    name = "file"

    def __init__(self, config: Config, fname: str) -> None:
        super().__init__(config)
        try:
            with open(fname, encoding="utf-8", errors="surrogateescape") as handle:
                lines = handle.read().splitlines()
        except OSError as exc:
            raise OSError(f"unable to open {fname}") from exc
        for line in lines:
            match = _LINE_RE.match(line)
            if match is None:
                continue
            qname, qtype, prefix = match.groups()
            self.push_rec(qname, qtype, prefix or "")

    def init(self) -> None:
        """Nothing to do: the file was read when the generator was made."""