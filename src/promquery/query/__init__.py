"""PromQL expressions: parse, scope with extra label matchers, serialize."""

from .ast import (
    AggregateExpr,
    BinaryExpr,
    Call,
    Expr,
    LabelMatcher,
    MatchType,
    MatrixSelector,
    NumberLiteral,
    ParenExpr,
    StringLiteral,
    SubqueryExpr,
    UnaryExpr,
    VectorSelector,
    format_duration,
)
from .parser import parse_expr
from .promquery import PromQuery, parse_matcher

__all__ = [
    "AggregateExpr",
    "BinaryExpr",
    "Call",
    "Expr",
    "LabelMatcher",
    "MatchType",
    "MatrixSelector",
    "NumberLiteral",
    "ParenExpr",
    "PromQuery",
    "StringLiteral",
    "SubqueryExpr",
    "UnaryExpr",
    "VectorSelector",
    "format_duration",
    "parse_expr",
    "parse_matcher",
]
