"""Query generators that synthesize random or numbered queries."""

from __future__ import annotations

import os
import random
import re
import string
from collections.abc import Iterable, Sequence

from .query import MAX_DOMAIN_LEN, MAX_LABEL_LEN, GeneratorArgFmt, QueryGenerator

_LABEL_CHARS = string.digits + string.ascii_uppercase + string.ascii_lowercase + "-_"
_RANDOM_QTYPES = ("A", "AAAA", "NS", "CNAME", "MX", "TXT", "PTR", "SOA")
_MAX_PKT_SIZE = 65500
_LEADING_INT = re.compile(r"\s*[+-]?\d+")


def _to_int(key: str, value: str) -> int:
    """Read the leading integer of ``value``, as a C-style string-to-int would."""
    match = _LEADING_INT.match(value)
    if match is None:
        raise ValueError(f"invalid integer for {key}: {value!r}")
    return int(match.group())


def _read_args(
    gen: QueryGenerator, names: Sequence[str], defaults: dict[str, int]
) -> dict[str, int]:
    """Collect integer generator arguments, positional or KEY=VAL, over defaults."""
    if gen.args_fmt is GeneratorArgFmt.POSITIONAL:
        if len(gen.positional_args) != len(names):
            raise ValueError(
                f"expected {len(names)} positional generator arguments: {' '.join(names)}"
            )
        given = dict(zip(names, gen.positional_args))
    else:
        given = {key: gen.kv_args[key] for key in names if key in gen.kv_args}
    values = dict(defaults)
    values.update((key, _to_int(key, text)) for key, text in given.items())
    return values


class RandomPktQueryGenerator(QueryGenerator):
    """COUNT packets of random bytes, each of random size in [1, SIZE]."""

    name = "randompkt"

    def init(self) -> None:
        args = _read_args(self, ("COUNT", "SIZE"), {"COUNT": 1000, "SIZE": 600})
        total, max_bytes = args["COUNT"], args["SIZE"]
        if total <= 0:
            raise ValueError("COUNT must be >= 1")
        if not 1 <= max_bytes <= _MAX_PKT_SIZE:
            raise ValueError("SIZE out of range")
        self.wire_buffers.extend(
            os.urandom(random.randint(1, max_bytes)) for _ in range(total)
        )


class RandomQNameQueryGenerator(QueryGenerator):
    """COUNT queries whose qname is random bytes of random length in [1, SIZE]."""

    name = "randomqname"

    def init(self) -> None:
        args = _read_args(self, ("COUNT", "SIZE"), {"COUNT": 1000, "SIZE": MAX_DOMAIN_LEN})
        total, max_bytes = args["COUNT"], args["SIZE"]
        if total <= 0:
            raise ValueError("COUNT must be >= 1")
        if not 1 <= max_bytes <= MAX_DOMAIN_LEN:
            raise ValueError("SIZE out of range")
        for _ in range(total):
            self.push_rec(os.urandom(random.randint(1, max_bytes)), self.qtype, binary=True)


class RandomLabelQueryGenerator(QueryGenerator):
    """COUNT queries of random labels under the base zone, with random qtypes."""

    name = "randomlabel"

    _MIN_LABEL_LEN = 2
    _MIN_LABELS = 1

    def init(self) -> None:
        args = _read_args(
            self,
            ("COUNT", "LBLSIZE", "LBLCOUNT"),
            {"COUNT": 1000, "LBLSIZE": 10, "LBLCOUNT": 5},
        )
        total, max_len, max_lbl = args["COUNT"], args["LBLSIZE"], args["LBLCOUNT"]
        if total <= 0:
            raise ValueError("COUNT: total qnames to generate must be >= 1")
        if not self._MIN_LABEL_LEN <= max_len <= MAX_LABEL_LEN:
            raise ValueError(f"LBLSIZE: size of labels must be between 1 and {MAX_LABEL_LEN}")
        if not self._MIN_LABELS <= max_lbl <= MAX_DOMAIN_LEN // 2:
            raise ValueError(
                f"LBLCOUNT: label count must be between 1 and {MAX_DOMAIN_LEN // 2}"
            )
        for _ in range(total):
            qname = self._random_qname(max_len, max_lbl)
            self.push_rec(qname, random.choice(_RANDOM_QTYPES))

    def _random_qname(self, max_len: int, max_lbl: int) -> str:
        lcount = random.randint(self._MIN_LABELS, max_lbl)
        limit = MAX_DOMAIN_LEN - lcount - len(self.qname)
        labels: list[str] = []
        used = 0
        for _ in range(lcount):
            size = random.randint(self._MIN_LABEL_LEN, max_len)
            if used + size > limit:
                break
            labels.append("".join(random.choices(_LABEL_CHARS, k=size)))
            used += size
        labels.append(self.qname)
        return ".".join(labels) + "."


class NumberNameQueryGenerator(QueryGenerator):
    """Queries for ``N.<qname>`` with N drawn at random from [LOW, HIGH]."""

    name = "numberqname"
    synthesized_queries = True

    def __init__(self, config) -> None:
        super().__init__(config)
        self._low = 0
        self._high = 100000

    def init(self) -> None:
        args = _read_args(self, ("LOW", "HIGH"), {"LOW": 0, "HIGH": 100000})
        low, high = args["LOW"], args["HIGH"]
        if low < 0 or low >= high:
            raise ValueError("LOW and HIGH must be 0 >= LOW > HIGH")
        self._low, self._high = low, high

    def next_udp(self, qid: int) -> bytes:
        number = random.randint(self._low, self._high)
        return self._new_rec(f"{number}.{self.qname}", self.qtype, qid=qid)

    def next_tcp(self, id_list: Iterable[int]) -> bytes:
        raise RuntimeError("tcp unsupported")