"""Best-effort recovery of JSON values from raw LLM output.

Each strategy is a pure function ``(text) -> value`` that either returns a
parsed JSON value or raises :class:`MalformedOutputError`. :func:`parse_json`
runs them in the order declared by :data:`DEFAULT_STRATEGIES` and reports
which one succeeded.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

Strategy = Callable[[str], Any]
Acceptor = Callable[[Any], bool]

_FENCED_BLOCK_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?(.*?)```", re.DOTALL)
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([a-zA-Z_][a-zA-Z0-9_]*)\s*:")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_ADJACENT_STRINGS_RE = re.compile(r'"\s+"')
_ADJACENT_OBJECTS_RE = re.compile(r"}\s+{")

# Truncation recovery only looks at the back half of the text.
_TRUNCATION_SCAN_FLOOR = 0.5


class MalformedOutputError(ValueError):
    """Raised when no strategy can recover a JSON value from model output."""

    def __init__(self, message: str, raw_text: str = "", attempts: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.raw_text = raw_text
        self.attempts = attempts or []


@dataclass
class ParseResult:
    value: Any
    strategy: str


def strip_markdown(text: str | None) -> str:
    """Remove code fences and any prose before the first JSON container."""
    cleaned = (text or "").strip()
    fenced = _FENCED_BLOCK_RE.search(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()
    elif cleaned.startswith("```"):
        # Opening fence with no closing one: the response was cut off.
        lines = cleaned.splitlines()[1:]
        cleaned = "\n".join(lines).strip()

    starts = [idx for idx in (cleaned.find("{"), cleaned.find("[")) if idx != -1]
    if starts and min(starts) > 0:
        cleaned = cleaned[min(starts):]
    return cleaned


def close_open_structures(text: str) -> str:
    """Append the closers needed to balance every unmatched ``{`` and ``[``.

    Brackets inside string literals are ignored. An unterminated string is
    closed first and a dangling comma is dropped before the closers.
    """
    stack: List[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            stack.append("}")
        elif ch == "[":
            stack.append("]")
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()

    body = text
    if in_string:
        if escaped:
            body = body[:-1]
        body += '"'
    body = body.rstrip()
    while body.endswith(","):
        body = body[:-1].rstrip()
    return body + "".join(reversed(stack))


def apply_heuristic_fixes(text: str) -> str:
    fixed = _UNQUOTED_KEY_RE.sub(r'\1"\2":', text)
    fixed = fixed.replace("'", '"')
    fixed = _TRAILING_COMMA_RE.sub(r"\1", fixed)
    fixed = _ADJACENT_STRINGS_RE.sub('", "', fixed)
    fixed = _ADJACENT_OBJECTS_RE.sub("}, {", fixed)
    return fixed


def _loads(text: str) -> Any:
    if not text:
        raise MalformedOutputError("Empty model output", raw_text=text)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        # Tolerate trailing prose after a complete value.
        value, _ = json.JSONDecoder().raw_decode(text)
        return value
    except json.JSONDecodeError as exc:
        raise MalformedOutputError(f"Invalid JSON: {exc.msg} at position {exc.pos}", raw_text=text) from None


def _is_container(value: Any) -> bool:
    return isinstance(value, (dict, list))


def parse_direct(text: str) -> Any:
    return _loads(strip_markdown(text))


def parse_with_heuristics(text: str) -> Any:
    return _loads(apply_heuristic_fixes(strip_markdown(text)))


def parse_balanced(text: str) -> Any:
    cleaned = strip_markdown(text)
    try:
        return _loads(close_open_structures(cleaned))
    except MalformedOutputError:
        return _loads(close_open_structures(apply_heuristic_fixes(cleaned)))


def recover_truncated(text: str, accept: Acceptor = _is_container) -> Any:
    """Return the longest balanced prefix that parses and satisfies ``accept``."""
    cleaned = strip_markdown(text)
    floor = int(len(cleaned) * _TRUNCATION_SCAN_FLOOR)
    for end in range(len(cleaned) - 1, max(floor, 0), -1):
        if cleaned[end - 1] not in '}]"':
            continue
        candidate = close_open_structures(cleaned[:end])
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if accept(value):
            logger.debug("Recovered truncated JSON using %d of %d characters", end, len(cleaned))
            return value
    raise MalformedOutputError("No recoverable JSON prefix found", raw_text=text)


DEFAULT_STRATEGIES: Sequence[Strategy] = (
    parse_direct,
    parse_with_heuristics,
    parse_balanced,
    recover_truncated,
)


def _strategy_name(strategy: Strategy) -> str:
    func = strategy.func if isinstance(strategy, partial) else strategy
    return getattr(func, "__name__", repr(func))


def parse_json(
    text: str | None,
    strategies: Iterable[Strategy] = DEFAULT_STRATEGIES,
    accept: Acceptor | None = None,
) -> ParseResult:
    """Run the repair ladder until a strategy yields an acceptable value.

    ``accept`` filters results from every strategy and is also handed to
    :func:`recover_truncated` so it keeps scanning past unacceptable prefixes.
    """
    raw = text or ""
    attempts: List[str] = []
    for strategy in strategies:
        if strategy is recover_truncated and accept is not None:
            strategy = partial(recover_truncated, accept=accept)
        name = _strategy_name(strategy)
        try:
            value = strategy(raw)
        except MalformedOutputError as exc:
            attempts.append(f"{name}: {exc}")
            logger.debug("JSON strategy %s failed: %s", name, exc)
            continue
        if accept is not None and not accept(value):
            attempts.append(f"{name}: parsed value rejected")
            continue
        if name != "parse_direct":
            logger.info("Recovered model JSON with strategy %s", name)
        return ParseResult(value=value, strategy=name)

    raise MalformedOutputError(
        "Unable to parse JSON from model output after %d strategies" % len(attempts),
        raw_text=raw,
        attempts=attempts,
    )
