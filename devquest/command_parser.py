"""Tokenizer for shell-like input lines.

``parse_line`` never raises. Problems the caller should report (chained
commands, a dangling redirect, extra pipe stages) come back in
``ParsedCommand.error``.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

CHAINING_ERROR = "Invalid command format. Execute commands step-by-step."
NEWLINE_SYNTAX_ERROR = "bash: syntax error near unexpected token `newline'"
PIPE_ERROR = "Only a single pipe into a filter is supported."

_CHAIN_OPERATORS = ("->", "&&", "||", ";")
_FALLBACK_TOKEN_RE = re.compile(r'"[^"]*"?|\'[^\']*\'?|[^\s"\']+')
_VARIABLE_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<plain>[A-Za-z_][A-Za-z0-9_]*))")
# Marks a single-quoted or backslash-escaped ``$`` so variable expansion skips it.
_LITERAL_DOLLAR = "\x00"


@dataclass(frozen=True)
class Redirect:
    target: str
    append: bool = False


@dataclass
class ParsedCommand:
    command: str = ""
    args: List[str] = field(default_factory=list)
    pipeline: List[str] = field(default_factory=list)
    redirect: Optional[Redirect] = None
    error: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.command and self.error is None

    @property
    def filter_name(self) -> Optional[str]:
        return self.pipeline[0] if self.pipeline else None


class _ChainedCommand(ValueError):
    pass


def _escaped(char: str) -> str:
    return _LITERAL_DOLLAR if char == "$" else "\\" + char


def _scan(line: str) -> Tuple[List[str], List[str]]:
    """Split *line* at unquoted ``|``, ``>`` and ``>>``.

    Returns the text segments and the operators between them.
    """

    segments: List[str] = []
    operators: List[str] = []
    buffer: List[str] = []
    quote: Optional[str] = None
    index = 0
    length = len(line)
    while index < length:
        char = line[index]
        if quote is not None:
            if char == "\\" and quote == '"' and index + 1 < length:
                buffer.append(_escaped(line[index + 1]))
                index += 2
                continue
            if char == quote:
                quote = None
                buffer.append(char)
            elif char == "$" and quote == "'":
                buffer.append(_LITERAL_DOLLAR)
            else:
                buffer.append(char)
            index += 1
            continue
        if char in ("'", '"'):
            quote = char
            buffer.append(char)
            index += 1
            continue
        if char == "\\" and index + 1 < length:
            buffer.append(_escaped(line[index + 1]))
            index += 2
            continue
        if any(line.startswith(op, index) for op in _CHAIN_OPERATORS):
            raise _ChainedCommand(CHAINING_ERROR)
        if char == "|":
            segments.append("".join(buffer))
            operators.append("|")
            buffer = []
            index += 1
            continue
        if char == ">":
            operator = ">>" if line.startswith(">>", index) else ">"
            segments.append("".join(buffer))
            operators.append(operator)
            buffer = []
            index += len(operator)
            continue
        buffer.append(char)
        index += 1
    segments.append("".join(buffer))
    return segments, operators


def _fallback_split(text: str) -> List[str]:
    tokens = []
    for raw in _FALLBACK_TOKEN_RE.findall(text):
        if raw[:1] in ("'", '"'):
            quote = raw[0]
            raw = raw[1:-1] if len(raw) > 1 and raw.endswith(quote) else raw[1:]
        tokens.append(raw)
    return tokens


def tokenize(text: str) -> List[str]:
    """Split one segment into words, tolerating malformed quoting."""

    try:
        lexer = shlex.shlex(text, posix=True, punctuation_chars=False)
        lexer.whitespace_split = True
        lexer.commenters = ""
        return list(lexer)
    except ValueError:
        return _fallback_split(text)


def expand_variables(token: str, env: Mapping[str, str]) -> str:
    def _lookup(match: "re.Match[str]") -> str:
        name = match.group("braced") or match.group("plain")
        return env.get(name, "")

    return _VARIABLE_RE.sub(_lookup, token).replace(_LITERAL_DOLLAR, "$")


def parse_line(line: str, env: Optional[Mapping[str, str]] = None) -> ParsedCommand:
    """Parse one input line into command, arguments, filter stage and redirect."""

    env = env or {}
    text = line.strip()
    if not text:
        return ParsedCommand()
    try:
        segments, operators = _scan(text)
    except _ChainedCommand as exc:
        return ParsedCommand(error=str(exc))

    words = [[expand_variables(token, env) for token in tokenize(segment)] for segment in segments]
    stages: List[List[str]] = [words[0]]
    redirect: Optional[Redirect] = None
    for operator, tokens in zip(operators, words[1:]):
        if operator == "|":
            if redirect is not None or len(stages) > 1:
                return ParsedCommand(error=PIPE_ERROR)
            stages.append(tokens)
            continue
        if not tokens:
            return ParsedCommand(error=NEWLINE_SYNTAX_ERROR)
        if redirect is not None:
            return ParsedCommand(error=CHAINING_ERROR)
        redirect = Redirect(target=tokens[0], append=operator == ">>")
        # Words after the target still belong to the command, as in bash.
        stages[-1].extend(tokens[1:])

    primary = stages[0]
    if not primary:
        if redirect is not None or len(stages) > 1:
            return ParsedCommand(error=NEWLINE_SYNTAX_ERROR)
        return ParsedCommand()
    pipeline = stages[1] if len(stages) > 1 else []
    if len(stages) > 1 and not pipeline:
        return ParsedCommand(error=NEWLINE_SYNTAX_ERROR)
    return ParsedCommand(command=primary[0], args=primary[1:], pipeline=pipeline, redirect=redirect)


__all__ = [
    "CHAINING_ERROR",
    "NEWLINE_SYNTAX_ERROR",
    "PIPE_ERROR",
    "ParsedCommand",
    "Redirect",
    "expand_variables",
    "parse_line",
    "tokenize",
]
