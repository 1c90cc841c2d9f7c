"""Recursive-descent PromQL parser.

Binary operator precedence, lowest first:
    or < and, unless < comparisons < + - < * / % atan2 < ^ (right-associative)

Unary minus binds looser than ``^``: ``-a ^ b`` is ``-(a ^ b)``.
"""

from __future__ import annotations

from dataclasses import replace
from typing import NoReturn

from promquery.errors import ConfigurationError, QueryParseError
from promquery.query.ast import (
    METRIC_NAME_LABEL,
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
    VectorMatching,
    VectorSelector,
)
from promquery.query.lexer import Token, TokenKind, tokenize

AGGREGATORS = frozenset(
    {
        "avg",
        "bottomk",
        "count",
        "count_values",
        "group",
        "limit_ratio",
        "limitk",
        "max",
        "min",
        "quantile",
        "stddev",
        "stdvar",
        "sum",
        "topk",
    }
)

# Aggregators that take a leading parameter: topk(5, ...)
PARAMETER_AGGREGATORS = frozenset(
    {"bottomk", "count_values", "limit_ratio", "limitk", "quantile", "topk"}
)

FUNCTIONS = frozenset(
    {
        "abs", "absent", "absent_over_time", "acos", "acosh", "asin", "asinh", "atan",
        "atanh", "avg_over_time", "ceil", "changes", "clamp", "clamp_max", "clamp_min",
        "cos", "cosh", "count_over_time", "day_of_month", "day_of_week", "day_of_year",
        "days_in_month", "deg", "delta", "deriv", "double_exponential_smoothing", "exp",
        "floor", "histogram_avg", "histogram_count", "histogram_fraction",
        "histogram_quantile", "histogram_stddev", "histogram_stdvar", "histogram_sum",
        "holt_winters", "hour", "idelta", "increase", "info", "irate", "label_join",
        "label_replace", "last_over_time", "ln", "log10", "log2", "mad_over_time",
        "max_over_time", "min_over_time", "minute", "month", "pi", "predict_linear",
        "present_over_time", "quantile_over_time", "rad", "rate", "resets", "round",
        "scalar", "sgn", "sin", "sinh", "sort", "sort_by_label", "sort_by_label_desc",
        "sort_desc", "sqrt", "stddev_over_time", "stdvar_over_time", "sum_over_time",
        "tan", "tanh", "time", "timestamp", "vector", "year",
    }
)  # fmt: skip

COMPARISON_OPERATORS = frozenset({"==", "!=", ">", "<", ">=", "<="})
SET_OPERATORS = frozenset({"and", "or", "unless"})

_PRECEDENCE = {
    "or": 1,
    "and": 2,
    "unless": 2,
    "==": 3,
    "!=": 3,
    ">": 3,
    "<": 3,
    ">=": 3,
    "<=": 3,
    "+": 4,
    "-": 4,
    "*": 5,
    "/": 5,
    "%": 5,
    "atan2": 5,
    "^": 6,
}
_POWER_PRECEDENCE = _PRECEDENCE["^"]

_MATCH_TYPES = {m.value: m for m in MatchType}


def parse_expr(query: str) -> Expr:
    """Parse a PromQL expression, raising QueryParseError on malformed input."""
    return _Parser(query).parse()


class _Parser:
    def __init__(self, query: str) -> None:
        self.query = query
        self.tokens = tokenize(query)
        self.index = 0

    # -- token helpers -------------------------------------------------------

    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        token = self.peek()
        self.index += 1
        return token

    def at_op(self, *ops: str) -> bool:
        token = self.peek()
        return token.kind == TokenKind.OP and token.text in ops

    def at_keyword(self, *words: str, offset: int = 0) -> bool:
        token = self.peek(offset)
        return token.kind == TokenKind.IDENT and token.text.lower() in words

    def expect_op(self, op: str) -> Token:
        if not self.at_op(op):
            self.fail(f"expected {op!r}")
        return self.advance()

    def expect(self, kind: TokenKind) -> Token:
        if self.peek().kind != kind:
            self.fail(f"expected {kind}")
        return self.advance()

    def fail(self, message: str, token: Token | None = None) -> NoReturn:
        token = token or self.peek()
        found = token.text or token.kind
        raise QueryParseError(self.query, f"{message}, found {found!r}", token.pos)

    # -- grammar -------------------------------------------------------------

    def parse(self) -> Expr:
        if self.peek().kind == TokenKind.EOF:
            self.fail("no expression found in input")
        expr = self.parse_binary(0)
        if self.peek().kind != TokenKind.EOF:
            self.fail("unexpected trailing input")
        return expr

    def binary_op(self) -> str | None:
        token = self.peek()
        if token.kind == TokenKind.OP and token.text in _PRECEDENCE:
            return token.text
        if token.kind == TokenKind.IDENT and token.text.lower() in ("and", "or", "unless", "atan2"):
            return token.text.lower()
        return None

    def parse_binary(self, min_precedence: int) -> Expr:
        lhs = self.parse_unary()
        while True:
            op = self.binary_op()
            if op is None or _PRECEDENCE[op] < min_precedence:
                return lhs
            op_token = self.advance()
            return_bool, matching = self.parse_binary_modifiers(op, op_token)
            # "^" is right-associative, everything else left-associative
            precedence = _PRECEDENCE[op]
            rhs = self.parse_binary(precedence if op == "^" else precedence + 1)
            lhs = self.fold_binary(op, lhs, rhs, return_bool, matching, op_token)

    def fold_binary(
        self,
        op: str,
        lhs: Expr,
        rhs: Expr,
        return_bool: bool,
        matching: VectorMatching | None,
        op_token: Token,
    ) -> Expr:
        if op in SET_OPERATORS and (_is_scalar(lhs) or _is_scalar(rhs)):
            self.fail(f"set operator {op!r} not allowed in binary scalar expression", op_token)
        if _is_scalar(lhs) and _is_scalar(rhs) and op in COMPARISON_OPERATORS and not return_bool:
            self.fail("comparisons between scalars must use BOOL modifier", op_token)
        return BinaryExpr(op, lhs, rhs, return_bool, matching)

    def parse_binary_modifiers(
        self, op: str, op_token: Token
    ) -> tuple[bool, VectorMatching | None]:
        return_bool = False
        if self.at_keyword("bool"):
            if op not in COMPARISON_OPERATORS:
                self.fail("bool modifier can only be used on comparison operators")
            self.advance()
            return_bool = True

        if not self.at_keyword("on", "ignoring"):
            return return_bool, None

        on = self.advance().text.lower() == "on"
        labels = self.parse_label_list()
        group = None
        include: tuple[str, ...] = ()
        if self.at_keyword("group_left", "group_right"):
            if op in SET_OPERATORS:
                self.fail(f"no grouping allowed for {op!r} operation", op_token)
            group = self.advance().text.lower()
            if self.at_op("("):
                include = self.parse_label_list()
        return return_bool, VectorMatching(on=on, labels=labels, group=group, include=include)

    def parse_unary(self) -> Expr:
        if self.at_op("-", "+"):
            op = self.advance().text
            operand = self.parse_binary(_POWER_PRECEDENCE)
            if isinstance(operand, NumberLiteral):
                return NumberLiteral(-operand.value if op == "-" else operand.value)
            return UnaryExpr(op, operand)
        return self.parse_postfix(self.parse_primary())

    def parse_postfix(self, expr: Expr) -> Expr:
        while True:
            if self.at_op("["):
                expr = self.parse_range(expr)
            elif self.at_keyword("offset"):
                expr = self.parse_offset(expr)
            elif self.at_op("@"):
                expr = self.parse_at(expr)
            else:
                return expr

    def parse_range(self, expr: Expr) -> Expr:
        bracket = self.expect_op("[")
        range_ms = self.expect(TokenKind.DURATION).value
        if self.at_op(":"):
            self.advance()
            step_ms = 0
            if self.peek().kind == TokenKind.DURATION:
                step_ms = self.advance().value
            self.expect_op("]")
            return SubqueryExpr(expr, range_ms, step_ms)
        self.expect_op("]")
        if not isinstance(expr, VectorSelector):
            self.fail("ranges only allowed for vector selectors", bracket)
        if expr.offset_ms or expr.at:
            self.fail("no offset or @ modifiers allowed before range", bracket)
        return MatrixSelector(expr, range_ms)

    def parse_offset(self, expr: Expr) -> Expr:
        keyword = self.advance()
        sign = 1
        if self.at_op("-", "+"):
            sign = -1 if self.advance().text == "-" else 1
        offset_ms = sign * self.expect(TokenKind.DURATION).value

        if isinstance(expr, VectorSelector) and not expr.offset_ms:
            return replace(expr, offset_ms=offset_ms)
        if isinstance(expr, MatrixSelector) and not expr.selector.offset_ms:
            return replace(expr, selector=replace(expr.selector, offset_ms=offset_ms))
        if isinstance(expr, SubqueryExpr) and not expr.offset_ms:
            return replace(expr, offset_ms=offset_ms)
        self.fail(
            "offset modifier must be preceded by an instant vector selector, "
            "range vector selector or subquery, and may only appear once",
            keyword,
        )

    def parse_at(self, expr: Expr) -> Expr:
        marker = self.advance()
        if self.at_keyword("start", "end") and self.peek(1).text == "(":
            name = self.advance().text.lower()
            self.expect_op("(")
            self.expect_op(")")
            at = f"{name}()"
        else:
            sign = 1.0
            if self.at_op("-", "+"):
                sign = -1.0 if self.advance().text == "-" else 1.0
            at = f"{sign * self.expect(TokenKind.NUMBER).value:.3f}"

        if isinstance(expr, VectorSelector) and not expr.at:
            return replace(expr, at=at)
        if isinstance(expr, MatrixSelector) and not expr.selector.at:
            return replace(expr, selector=replace(expr.selector, at=at))
        if isinstance(expr, SubqueryExpr) and not expr.at:
            return replace(expr, at=at)
        self.fail(
            "@ modifier must be preceded by an instant vector selector, "
            "range vector selector or subquery, and may only appear once",
            marker,
        )

    def parse_primary(self) -> Expr:
        token = self.peek()

        if token.kind == TokenKind.NUMBER:
            self.advance()
            return NumberLiteral(token.value)

        if token.kind == TokenKind.STRING:
            self.advance()
            return StringLiteral(token.value)

        if self.at_op("("):
            self.advance()
            inner = self.parse_binary(0)
            self.expect_op(")")
            return ParenExpr(inner)

        if self.at_op("{"):
            return self.parse_selector(None, token)

        if token.kind == TokenKind.IDENT:
            name = token.text
            next_token = self.peek(1)
            if name.lower() in AGGREGATORS and (
                (next_token.kind == TokenKind.OP and next_token.text == "(")
                or self.at_keyword("by", "without", offset=1)
            ):
                return self.parse_aggregate()
            if next_token.kind == TokenKind.OP and next_token.text == "(":
                return self.parse_call()
            self.advance()
            return self.parse_selector(name, token)

        self.fail("unexpected token")

    def parse_call(self) -> Expr:
        token = self.advance()
        if token.text not in FUNCTIONS:
            self.fail(f"unknown function with name {token.text!r}", token)
        self.expect_op("(")
        args: list[Expr] = []
        if not self.at_op(")"):
            args.append(self.parse_binary(0))
            while self.at_op(","):
                self.advance()
                args.append(self.parse_binary(0))
        self.expect_op(")")
        return Call(token.text, tuple(args))

    def parse_aggregate(self) -> Expr:
        op = self.advance().text.lower()
        grouping: tuple[str, ...] = ()
        without = False
        grouped = False
        if self.at_keyword("by", "without"):
            without = self.advance().text.lower() == "without"
            grouping = self.parse_label_list()
            grouped = True

        self.expect_op("(")
        param = None
        if op in PARAMETER_AGGREGATORS:
            param = self.parse_binary(0)
            self.expect_op(",")
        expr = self.parse_binary(0)
        self.expect_op(")")

        if not grouped and self.at_keyword("by", "without"):
            without = self.advance().text.lower() == "without"
            grouping = self.parse_label_list()

        return AggregateExpr(op, expr, param, grouping, without)

    def parse_label_list(self) -> tuple[str, ...]:
        self.expect_op("(")
        labels: list[str] = []
        while not self.at_op(")"):
            labels.append(self.expect(TokenKind.IDENT).text)
            if not self.at_op(","):
                break
            self.advance()
        self.expect_op(")")
        return tuple(labels)

    def parse_selector(self, name: str | None, start: Token) -> VectorSelector:
        matchers: list[LabelMatcher] = []
        if self.at_op("{"):
            self.advance()
            while not self.at_op("}"):
                matchers.append(self.parse_matcher())
                if not self.at_op(","):
                    break
                self.advance()
            self.expect_op("}")

        if name is not None:
            if any(m.name == METRIC_NAME_LABEL for m in matchers):
                self.fail(f"metric name must not be set twice: {name!r}", start)
            matchers.append(LabelMatcher(METRIC_NAME_LABEL, name))

        if not any(not m.matches("") for m in matchers):
            self.fail("vector selector must contain at least one non-empty matcher", start)
        return VectorSelector(name, tuple(matchers))

    def parse_matcher(self) -> LabelMatcher:
        label = self.expect(TokenKind.IDENT)
        op_token = self.peek()
        if op_token.kind != TokenKind.OP or op_token.text not in _MATCH_TYPES:
            self.fail("expected label matching operator")
        self.advance()
        value = self.expect(TokenKind.STRING)
        try:
            return LabelMatcher(label.text, value.value, _MATCH_TYPES[op_token.text])
        except ConfigurationError as exc:
            raise QueryParseError(self.query, str(exc), value.pos) from exc


def _is_scalar(expr: Expr) -> bool:
    while isinstance(expr, ParenExpr):
        expr = expr.expr
    if isinstance(expr, NumberLiteral):
        return True
    if isinstance(expr, UnaryExpr):
        return _is_scalar(expr.expr)
    if isinstance(expr, BinaryExpr):
        return _is_scalar(expr.lhs) and _is_scalar(expr.rhs)
    return isinstance(expr, Call) and expr.func in ("scalar", "time", "pi")
