import base64

import dns.message
import dns.rdatatype
import pytest

from flamethrower.config import Config
from flamethrower.generators import (
    NumberNameQueryGenerator,
    RandomLabelQueryGenerator,
    RandomPktQueryGenerator,
    RandomQNameQueryGenerator,
)

ALLOWED = set("0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz-_")


def make(cls, args, qname="example.com", qtype="A"):
    gen = cls(Config(verbosity=0))
    gen.qname = qname
    gen.qtype = qtype
    gen.qclass = "IN"
    gen.set_args(args)
    return gen


def test_randompkt_count_and_sizes():
    gen = make(RandomPktQueryGenerator, ["count=5", "size=10"])
    gen.init()
    assert len(gen) == 5
    assert all(1 <= len(pkt) <= 10 for pkt in gen.wire_buffers)


def test_randompkt_positional():
    gen = make(RandomPktQueryGenerator, ["3", "4"])
    gen.init()
    assert len(gen) == 3
    assert all(1 <= len(pkt) <= 4 for pkt in gen.wire_buffers)


def test_randompkt_wrong_positional_count():
    gen = make(RandomPktQueryGenerator, ["3"])
    with pytest.raises(ValueError, match="COUNT SIZE"):
        gen.init()


@pytest.mark.parametrize("args", [["count=0"], ["size=70000"], ["size=0"]])
def test_randompkt_bad_values(args):
    gen = make(RandomPktQueryGenerator, args)
    with pytest.raises(ValueError):
        gen.init()


def test_non_integer_argument():
    gen = make(RandomPktQueryGenerator, ["count=many"])
    with pytest.raises(ValueError):
        gen.init()


def test_randomqname_builds_parseable_queries():
    gen = make(RandomQNameQueryGenerator, ["count=20", "size=30"], qtype="MX")
    gen.init()
    assert len(gen) == 20
    for wire in gen.wire_buffers:
        msg = dns.message.from_wire(wire)
        question = msg.question[0]
        assert question.rdtype == dns.rdatatype.MX
        assert 1 <= len(question.name.labels[0]) <= 30


def test_randomqname_size_too_large():
    gen = make(RandomQNameQueryGenerator, ["size=256"])
    with pytest.raises(ValueError, match="SIZE out of range"):
        gen.init()


def test_randomlabel_queries_under_zone():
    gen = make(RandomLabelQueryGenerator, ["count=50", "lblsize=6", "lblcount=4"])
    gen.init()
    assert len(gen) == 50
    allowed_types = {dns.rdatatype.from_text(t) for t in ("A", "AAAA", "NS", "CNAME", "MX", "TXT", "SOA")}
    for wire in gen.wire_buffers:
        question = dns.message.from_wire(wire).question[0]
        labels = [label.decode() for label in question.name.labels]
        assert labels[-3:] == ["example", "com", ""]
        random_labels = labels[:-3]
        assert 1 <= len(random_labels) <= 4
        for label in random_labels:
            assert 2 <= len(label) <= 6
            assert set(label) <= ALLOWED
        assert question.rdtype in allowed_types


def test_randomlabel_requires_three_positional():
    gen = make(RandomLabelQueryGenerator, ["10", "5"])
    with pytest.raises(ValueError, match="COUNT LBLSIZE LBLCOUNT"):
        gen.init()


@pytest.mark.parametrize(
    "args, message",
    [(["lblsize=64"], "LBLSIZE"), (["lblcount=128"], "LBLCOUNT"), (["count=0"], "COUNT")],
)
def test_randomlabel_limits(args, message):
    gen = make(RandomLabelQueryGenerator, args)
    with pytest.raises(ValueError, match=message):
        gen.init()


def test_numberqname_next_udp():
    gen = make(NumberNameQueryGenerator, ["low=5", "high=10"], qname="zone.test")
    gen.init()
    for qid in (0x1234, 7):
        msg = dns.message.from_wire(gen.next_udp(qid))
        assert msg.id == qid
        labels = [label.decode() for label in msg.question[0].name.labels]
        assert 5 <= int(labels[0]) <= 10
        assert labels[1:] == ["zone", "test", ""]
    assert gen.synthesized_queries is True
    assert len(gen) == 0
    assert gen.finished() is False


def test_numberqname_base64url():
    gen = make(NumberNameQueryGenerator, ["1", "2"])
    gen.init()
    encoded = gen.next_base64url(99)
    padded = encoded + b"=" * (-len(encoded) % 4)
    msg = dns.message.from_wire(base64.urlsafe_b64decode(padded))
    assert msg.id == 99


def test_numberqname_tcp_unsupported():
    gen = make(NumberNameQueryGenerator, [])
    gen.init()
    with pytest.raises(RuntimeError, match="tcp unsupported"):
        gen.next_tcp([1, 2])


@pytest.mark.parametrize("args", [["low=10", "high=10"], ["low=-1", "high=5"], ["20", "3"]])
def test_numberqname_bad_range(args):
    gen = make(NumberNameQueryGenerator, args)
    with pytest.raises(ValueError, match="LOW and HIGH"):
        gen.init()