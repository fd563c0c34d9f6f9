"""Run configuration, HTTP method choice and query targets."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from urllib.parse import urlsplit

VERSION_NUM = "0.12.0"
VERSION = "Flamethrower 0.12.0-master"

_HTTPS_PREFIX = "https://"


class HTTPMethod(enum.Enum):
    """HTTP method used for DNS over HTTPS requests."""

    POST = "POST"
    GET = "GET"


@dataclass(frozen=True)
class Config:
    """Settings shared by the whole run."""

    verbosity: int = 1
    output_file: str = ""
    rate_limit: int = 0


@dataclass(frozen=True)
class Target:
    """A resolved query target and the URL it was given as."""

    address: str
    uri: str
    scheme: str
    host: str
    path: str


def parse_target(raw: str, address: str = "") -> Target:
    """Parse a target name or URL; a missing scheme defaults to https.

    Raises ValueError when the URL has no host or cannot be parsed.
    """
    uri = raw if raw.startswith(_HTTPS_PREFIX) else _HTTPS_PREFIX + raw
    if any(ch.isspace() for ch in uri):
        raise ValueError(f"could not parse url: {uri}")
    try:
        parts = urlsplit(uri)
    except ValueError as exc:
        raise ValueError(f"could not parse url: {uri}") from exc
    netloc = parts.netloc.rpartition("@")[2]
    if netloc.startswith("["):
        host = netloc[1:].partition("]")[0]
    else:
        host = netloc.partition(":")[0]
    if not host:
        raise ValueError(f"could not parse url: {uri}")
    return Target(address=address, uri=uri, scheme=parts.scheme, host=host, path=parts.path)