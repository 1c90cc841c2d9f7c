"""PromQL expression tree.

Nodes are frozen dataclasses; rewriting a tree always produces a new tree.
``str(node)`` prints the canonical PromQL form used by Prometheus itself:
label matchers sorted, the implicit ``__name__`` matcher omitted, numbers
without exponent, durations in compound units (``1h30m``).
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import StrEnum

from promquery.errors import ConfigurationError

METRIC_NAME_LABEL = "__name__"

_MS_PER_SECOND = 1000
_MS_PER_MINUTE = 60 * _MS_PER_SECOND
_MS_PER_HOUR = 60 * _MS_PER_MINUTE
_MS_PER_DAY = 24 * _MS_PER_HOUR

# (unit, milliseconds, only when it divides exactly)
_DURATION_UNITS: tuple[tuple[str, int, bool], ...] = (
    ("y", 365 * _MS_PER_DAY, True),
    ("w", 7 * _MS_PER_DAY, True),
    ("d", _MS_PER_DAY, False),
    ("h", _MS_PER_HOUR, False),
    ("m", _MS_PER_MINUTE, False),
    ("s", _MS_PER_SECOND, False),
    ("ms", 1, False),
)


def format_duration(ms: int) -> str:
    """Format milliseconds the way Prometheus prints durations."""
    if ms == 0:
        return "0s"
    sign = "-" if ms < 0 else ""
    remaining = abs(ms)
    parts = []
    for unit, unit_ms, exact in _DURATION_UNITS:
        if exact and remaining % unit_ms != 0:
            continue
        count, remaining = divmod(remaining, unit_ms)
        if count:
            parts.append(f"{count}{unit}")
    return sign + "".join(parts)


def format_number(value: float) -> str:
    if value != value:
        return "NaN"
    if value in (float("inf"), float("-inf")):
        return "+Inf" if value > 0 else "-Inf"
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


class MatchType(StrEnum):
    EQUAL = "="
    NOT_EQUAL = "!="
    REGEX_MATCH = "=~"
    REGEX_NOT_MATCH = "!~"


@dataclass(frozen=True)
class LabelMatcher:
    """A single ``name<op>"value"`` matcher inside a selector."""

    name: str
    value: str
    match_type: MatchType = MatchType.EQUAL

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("label matcher needs a label name")
        if self.is_regex:
            try:
                re.compile(self.value)
            except re.error as exc:
                raise ConfigurationError(
                    f"invalid regular expression {self.value!r} for label {self.name!r}: {exc}"
                ) from exc

    @property
    def is_regex(self) -> bool:
        return self.match_type in (MatchType.REGEX_MATCH, MatchType.REGEX_NOT_MATCH)

    def matches(self, value: str) -> bool:
        """Whether a label value satisfies this matcher. Regexes are fully anchored."""
        if self.match_type == MatchType.EQUAL:
            return value == self.value
        if self.match_type == MatchType.NOT_EQUAL:
            return value != self.value
        matched = re.fullmatch(self.value, value) is not None
        return matched if self.match_type == MatchType.REGEX_MATCH else not matched

    def __str__(self) -> str:
        return f"{self.name}{self.match_type}{quote(self.value)}"


class Expr:
    """Base class for expression nodes."""

    def children(self) -> tuple[Expr, ...]:
        return ()

    def map_children(self, fn: Callable[[Expr], Expr]) -> Expr:
        return self


@dataclass(frozen=True)
class NumberLiteral(Expr):
    value: float

    def __str__(self) -> str:
        return format_number(self.value)


@dataclass(frozen=True)
class StringLiteral(Expr):
    value: str

    def __str__(self) -> str:
        return quote(self.value)


def _at_str(at: str | None) -> str:
    return f" @ {at}" if at else ""


def _offset_str(offset_ms: int) -> str:
    return f" offset {format_duration(offset_ms)}" if offset_ms else ""


@dataclass(frozen=True)
class VectorSelector(Expr):
    """Leaf node: a metric name and/or label matchers.

    When a metric name is given, the parser also records an equivalent
    ``__name__`` matcher, mirroring Prometheus.
    """

    name: str | None
    matchers: tuple[LabelMatcher, ...]
    offset_ms: int = 0
    at: str | None = None

    def with_matcher(self, matcher: LabelMatcher) -> VectorSelector:
        if matcher in self.matchers:
            return self
        return replace(self, matchers=(*self.matchers, matcher))

    def body(self) -> str:
        labels = sorted(
            str(m)
            for m in self.matchers
            if not (
                m.name == METRIC_NAME_LABEL
                and m.match_type == MatchType.EQUAL
                and m.value == self.name
            )
        )
        name = self.name or ""
        if not labels:
            return name
        return f"{name}{{{','.join(labels)}}}"

    def __str__(self) -> str:
        return f"{self.body()}{_at_str(self.at)}{_offset_str(self.offset_ms)}"


@dataclass(frozen=True)
class MatrixSelector(Expr):
    selector: VectorSelector
    range_ms: int

    def children(self) -> tuple[Expr, ...]:
        return (self.selector,)

    def map_children(self, fn: Callable[[Expr], Expr]) -> Expr:
        selector = fn(self.selector)
        if not isinstance(selector, VectorSelector):
            raise TypeError("a range vector must wrap a vector selector")
        return replace(self, selector=selector)

    def __str__(self) -> str:
        return (
            f"{self.selector.body()}[{format_duration(self.range_ms)}]"
            f"{_at_str(self.selector.at)}{_offset_str(self.selector.offset_ms)}"
        )


@dataclass(frozen=True)
class SubqueryExpr(Expr):
    expr: Expr
    range_ms: int
    step_ms: int = 0
    offset_ms: int = 0
    at: str | None = None

    def children(self) -> tuple[Expr, ...]:
        return (self.expr,)

    def map_children(self, fn: Callable[[Expr], Expr]) -> Expr:
        return replace(self, expr=fn(self.expr))

    def __str__(self) -> str:
        step = format_duration(self.step_ms) if self.step_ms else ""
        return (
            f"{self.expr}[{format_duration(self.range_ms)}:{step}]"
            f"{_at_str(self.at)}{_offset_str(self.offset_ms)}"
        )


@dataclass(frozen=True)
class Call(Expr):
    func: str
    args: tuple[Expr, ...]

    def children(self) -> tuple[Expr, ...]:
        return self.args

    def map_children(self, fn: Callable[[Expr], Expr]) -> Expr:
        return replace(self, args=tuple(fn(arg) for arg in self.args))

    def __str__(self) -> str:
        return f"{self.func}({', '.join(str(arg) for arg in self.args)})"


@dataclass(frozen=True)
class AggregateExpr(Expr):
    op: str
    expr: Expr
    param: Expr | None = None
    grouping: tuple[str, ...] = ()
    without: bool = False

    def children(self) -> tuple[Expr, ...]:
        if self.param is None:
            return (self.expr,)
        return (self.param, self.expr)

    def map_children(self, fn: Callable[[Expr], Expr]) -> Expr:
        param = fn(self.param) if self.param is not None else None
        return replace(self, expr=fn(self.expr), param=param)

    def __str__(self) -> str:
        head = self.op
        if self.without:
            head += f" without ({', '.join(self.grouping)}) "
        elif self.grouping:
            head += f" by ({', '.join(self.grouping)}) "
        args = str(self.expr) if self.param is None else f"{self.param}, {self.expr}"
        return f"{head}({args})"


@dataclass(frozen=True)
class VectorMatching:
    on: bool = False
    labels: tuple[str, ...] = ()
    group: str | None = None  # "group_left" / "group_right"
    include: tuple[str, ...] = ()

    def __str__(self) -> str:
        if not (self.on or self.labels):
            return ""
        text = f" {'on' if self.on else 'ignoring'} ({', '.join(self.labels)})"
        if self.group:
            text += f" {self.group} ({', '.join(self.include)})"
        return text


@dataclass(frozen=True)
class BinaryExpr(Expr):
    op: str
    lhs: Expr
    rhs: Expr
    return_bool: bool = False
    matching: VectorMatching | None = None

    def children(self) -> tuple[Expr, ...]:
        return (self.lhs, self.rhs)

    def map_children(self, fn: Callable[[Expr], Expr]) -> Expr:
        return replace(self, lhs=fn(self.lhs), rhs=fn(self.rhs))

    def __str__(self) -> str:
        modifiers = " bool" if self.return_bool else ""
        if self.matching is not None:
            modifiers += str(self.matching)
        return f"{self.lhs} {self.op}{modifiers} {self.rhs}"


@dataclass(frozen=True)
class ParenExpr(Expr):
    expr: Expr

    def children(self) -> tuple[Expr, ...]:
        return (self.expr,)

    def map_children(self, fn: Callable[[Expr], Expr]) -> Expr:
        return replace(self, expr=fn(self.expr))

    def __str__(self) -> str:
        return f"({self.expr})"


@dataclass(frozen=True)
class UnaryExpr(Expr):
    op: str
    expr: Expr

    def children(self) -> tuple[Expr, ...]:
        return (self.expr,)

    def map_children(self, fn: Callable[[Expr], Expr]) -> Expr:
        return replace(self, expr=fn(self.expr))

    def __str__(self) -> str:
        return f"{self.op}{self.expr}"


def iter_selectors(node: Expr) -> Iterator[VectorSelector]:
    """Yield every leaf vector selector, left to right."""
    if isinstance(node, VectorSelector):
        yield node
        return
    for child in node.children():
        yield from iter_selectors(child)


def map_selectors(node: Expr, fn: Callable[[VectorSelector], VectorSelector]) -> Expr:
    """Return a copy of the tree with ``fn`` applied to every leaf vector selector."""
    if isinstance(node, VectorSelector):
        return fn(node)
    return node.map_children(lambda child: map_selectors(child, fn))
