"""PromQuery: a parsed PromQL expression that can be scoped with extra label matchers.

Label injection touches every leaf selector, so in a binary expression both
sides are scoped:

    >>> q = PromQuery.parse('foo{role="bar"} - qux{role!="baz"}')
    >>> str(q.add_label("az", "us-east-1"))
    'foo{az="us-east-1",role="bar"} - qux{az="us-east-1",role!="baz"}'
"""

from __future__ import annotations

from promquery.errors import ConfigurationError
from promquery.query.ast import (
    Expr,
    LabelMatcher,
    MatchType,
    VectorSelector,
    iter_selectors,
    map_selectors,
)
from promquery.query.parser import parse_expr


class PromQuery:
    """An immutable, parsed PromQL query."""

    __slots__ = ("_canonical", "expr", "source")

    def __init__(self, source: str, expr: Expr) -> None:
        self.source = source
        self.expr = expr
        self._canonical = str(expr)

    @classmethod
    def parse(cls, source: str) -> PromQuery:
        return cls(source, parse_expr(source))

    def selectors(self) -> list[VectorSelector]:
        return list(iter_selectors(self.expr))

    def with_matcher(self, matcher: LabelMatcher) -> PromQuery:
        """Return a copy with ``matcher`` added to every leaf selector."""
        expr = map_selectors(self.expr, lambda selector: selector.with_matcher(matcher))
        return PromQuery(self.source, expr)

    def add_label(self, name: str, value: str, equal: bool = True) -> PromQuery:
        match_type = MatchType.EQUAL if equal else MatchType.NOT_EQUAL
        return self.with_matcher(LabelMatcher(name, value, match_type))

    def add_regexp_label(self, name: str, value: str, equal: bool = True) -> PromQuery:
        match_type = MatchType.REGEX_MATCH if equal else MatchType.REGEX_NOT_MATCH
        return self.with_matcher(LabelMatcher(name, value, match_type))

    def __str__(self) -> str:
        return self._canonical

    def __repr__(self) -> str:
        return f"PromQuery({self._canonical!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PromQuery):
            return NotImplemented
        return self._canonical == other._canonical

    def __hash__(self) -> int:
        return hash(self._canonical)


def parse_matcher(text: str) -> LabelMatcher:
    """Parse a ``name=value`` style matcher as given on the command line.

    Accepts ``=``, ``!=``, ``=~`` and ``!~``. The value is taken verbatim
    (no quoting needed).
    """
    for op in ("!~", "=~", "!=", "="):
        name, sep, value = text.partition(op)
        if sep and name and "=" not in name and "!" not in name:
            return LabelMatcher(name.strip(), value, MatchType(op))
    raise ConfigurationError(f"invalid label matcher {text!r}, expected name=value")
