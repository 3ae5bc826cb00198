from __future__ import annotations

import re

from .errors import ParseError

_NUMBER_RE = re.compile(r"\d+", re.ASCII)


def _parse_index(raw: str, expr: str) -> int:
    token = raw.strip()
    if not _NUMBER_RE.fullmatch(token):
        raise ParseError(f"invalid node index {token!r} in {expr!r}")
    return int(token)


def expand_dash_range(term: str, expr: str | None = None) -> list[int]:
    expr = term if expr is None else expr
    parts = term.split("-")
    if len(parts) == 1:
        return [_parse_index(parts[0], expr)]
    if len(parts) != 2:
        raise ParseError(f"invalid range {term.strip()!r} in {expr!r}")

    low = _parse_index(parts[0], expr)
    high = _parse_index(parts[1], expr)
    if low > high:
        raise ParseError(f"range {low}-{high} in {expr!r} is descending")
    return list(range(low, high + 1))


def parse_range(expr: str) -> list[int]:
    """Parse ``3``, ``2-5`` or ``[0-2,4]`` into node indices, in written order."""
    s = expr.strip()
    if s.startswith("[") and s.endswith("]"):
        out: list[int] = []
        for term in s[1:-1].split(","):
            out.extend(expand_dash_range(term, expr))
        return out
    return expand_dash_range(s, expr)


def all_nodes(count: int) -> list[int]:
    return list(range(count))
