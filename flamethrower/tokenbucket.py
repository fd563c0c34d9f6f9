"""Token bucket rate limiter driven by a millisecond clock."""

from __future__ import annotations


class TokenBucket:
    """Allows up to ``rate`` tokens per second, refilled lazily."""

    def __init__(self, rate: float = 0.0) -> None:
        self.rate_qps = float(rate)
        self._wallet = 0.0
        self._last_fill_ms = 0

    def consume(self, tokens: int, now_ms: int) -> bool:
        """Take ``tokens`` from the bucket at time ``now_ms``; False if too few."""
        if self._wallet < tokens:
            if self._last_fill_ms == 0:
                self._last_fill_ms = now_ms
            elif now_ms > self._last_fill_ms:
                add = self.rate_qps * (now_ms - self._last_fill_ms) / 1000.0
                if self._wallet + add >= tokens:
                    self._wallet += add
                    self._last_fill_ms = now_ms
            if self._wallet < tokens:
                return False
        self._wallet -= tokens
        return True