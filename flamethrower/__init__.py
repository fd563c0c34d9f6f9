"""DNS traffic generator: query generators, UDP/TCP/DoT/DoH senders, rate limiting and metrics."""

__version__ = "0.12.0"