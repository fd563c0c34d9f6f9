"""Small text helpers."""

from __future__ import annotations


def split(s: str, delim: str) -> list[str]:
    """Split on a delimiter, dropping a single trailing empty field.

    An empty string gives an empty list; empty fields inside are kept.
    """
    parts = s.split(delim)
    if parts[-1] == "":
        parts.pop()
    return parts