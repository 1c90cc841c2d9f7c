"""Tokenizer for PromQL."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from promquery.errors import QueryParseError


class TokenKind(StrEnum):
    IDENT = "identifier"
    NUMBER = "number"
    DURATION = "duration"
    STRING = "string"
    OP = "operator"
    EOF = "end of input"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    pos: int
    value: object = None  # float for NUMBER, milliseconds for DURATION, str for STRING


_IDENT_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_DURATION_RE = re.compile(r"(?:[0-9]+(?:ms|[smhdwy]))+(?![a-zA-Z0-9_])")
_DURATION_PART_RE = re.compile(r"([0-9]+)(ms|[smhdwy])")
_NUMBER_RE = re.compile(
    r"0[xX][0-9a-fA-F]+|(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?"
)

# Longest first so "=~" wins over "="
_OPERATORS = (
    "==", "!=", ">=", "<=", "=~", "!~",
    "+", "-", "*", "/", "%", "^", ">", "<", "=",
    ",", "(", ")", "{", "}", "[", "]", ":", "@",
)  # fmt: skip

_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
    "\\": "\\",
    '"': '"',
    "'": "'",
}

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "y": 365 * 24 * 60 * 60 * 1000,
}


def parse_duration(text: str) -> int:
    """Convert a PromQL duration literal (``1h30m``) into milliseconds."""
    return sum(int(count) * _UNIT_MS[unit] for count, unit in _DURATION_PART_RE.findall(text))


def tokenize(query: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    length = len(query)
    in_brackets = False

    while pos < length:
        char = query[pos]

        if char.isspace():
            pos += 1
            continue

        if char == "#":
            newline = query.find("\n", pos)
            pos = length if newline == -1 else newline
            continue

        if char in "\"'`":
            value, end = _read_string(query, pos)
            tokens.append(Token(TokenKind.STRING, query[pos:end], pos, value))
            pos = end
            continue

        if char.isdigit() or (char == "." and pos + 1 < length and query[pos + 1].isdigit()):
            duration = _DURATION_RE.match(query, pos)
            if duration:
                text = duration.group()
                tokens.append(Token(TokenKind.DURATION, text, pos, parse_duration(text)))
                pos = duration.end()
                continue
            number = _NUMBER_RE.match(query, pos)
            if number is None:
                raise QueryParseError(query, f"bad number {char!r}", pos)
            text = number.group()
            value = float(int(text, 16)) if text[:2].lower() == "0x" else float(text)
            tokens.append(Token(TokenKind.NUMBER, text, pos, value))
            pos = number.end()
            continue

        # Inside a range/subquery bracket ":" separates range and step
        ident = None if (in_brackets and char == ":") else _IDENT_RE.match(query, pos)
        if ident:
            text = ident.group()
            if text.lower() in ("inf", "nan"):
                tokens.append(Token(TokenKind.NUMBER, text, pos, float(text)))
            else:
                tokens.append(Token(TokenKind.IDENT, text, pos))
            pos = ident.end()
            continue

        for op in _OPERATORS:
            if query.startswith(op, pos):
                tokens.append(Token(TokenKind.OP, op, pos))
                pos += len(op)
                if op in "[]":
                    in_brackets = op == "["
                break
        else:
            raise QueryParseError(query, f"unexpected character {char!r}", pos)

    tokens.append(Token(TokenKind.EOF, "", length))
    return tokens


def _read_string(query: str, start: int) -> tuple[str, int]:
    """Read a quoted string starting at ``start``; return (value, end position)."""
    quote_char = query[start]
    pos = start + 1

    if quote_char == "`":
        end = query.find("`", pos)
        if end == -1:
            raise QueryParseError(query, "unterminated raw string", start)
        return query[pos:end], end + 1

    chars: list[str] = []
    while pos < len(query):
        char = query[pos]
        if char == quote_char:
            return "".join(chars), pos + 1
        if char == "\n":
            break
        if char != "\\":
            chars.append(char)
            pos += 1
            continue

        pos += 1
        if pos >= len(query):
            break
        escape = query[pos]
        if escape in _ESCAPES:
            chars.append(_ESCAPES[escape])
            pos += 1
        elif escape in "xuU":
            width = {"x": 2, "u": 4, "U": 8}[escape]
            digits = query[pos + 1 : pos + 1 + width]
            if len(digits) != width or not all(c in "0123456789abcdefABCDEF" for c in digits):
                raise QueryParseError(query, f"invalid \\{escape} escape in string", pos - 1)
            code = int(digits, 16)
            if code > 0x10FFFF or 0xD800 <= code <= 0xDFFF:
                raise QueryParseError(query, "invalid unicode escape", pos - 1)
            chars.append(chr(code))
            pos += 1 + width
        elif escape in "01234567":
            digits = query[pos : pos + 3]
            if len(digits) != 3 or not all(c in "01234567" for c in digits):
                raise QueryParseError(query, "invalid octal escape in string", pos - 1)
            chars.append(chr(int(digits, 8)))
            pos += 3
        else:
            raise QueryParseError(query, f"unknown escape sequence \\{escape}", pos - 1)

    raise QueryParseError(query, "unterminated quoted string", start)
