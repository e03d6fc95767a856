"""Best-effort structural repair of near-valid JSON produced by models.

Repair runs an ordered list of passes, re-trying ``json.loads`` after each
one.  Passes are cumulative and only ever rewrite text outside string
literals.  When every pass has been applied and the text still does not
parse, the payload is reported as unrepairable.
"""

import json
import re
from typing import Any, Callable

from tool_relay.exceptions import InvalidStructuredDataError
from tool_relay.logging import get_logger

log = get_logger(__name__)

_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_$][\w$\-]*)(\s*:)")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_PYTHON_LITERALS = {"True": "true", "False": "false", "None": "null"}
_PYTHON_LITERAL_RE = re.compile(r"\b(True|False|None)\b")
_CODE_FENCE_RE = re.compile(r"^```[\w-]*\s*\n?|\n?```\s*$")
_CLOSERS = {"{": "}", "[": "]"}


def _split_segments(text: str, quotes: str = "\"'") -> list[tuple[str, bool]]:
    """Split text into (segment, is_string) pieces.

    A string runs from an opening quote to the matching unescaped quote; an
    unterminated string runs to the end of the text.
    """
    segments: list[tuple[str, bool]] = []
    buf: list[str] = []
    quote: str | None = None
    escaped = False
    for ch in text:
        if quote is None:
            if ch in quotes:
                if buf:
                    segments.append(("".join(buf), False))
                buf = [ch]
                quote = ch
            else:
                buf.append(ch)
            continue
        buf.append(ch)
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == quote:
            segments.append(("".join(buf), True))
            buf = []
            quote = None
    if buf:
        segments.append(("".join(buf), quote is not None))
    return segments


def _rewrite_outside_strings(text: str, rewrite: Callable[[str], str], quotes: str = "\"'") -> str:
    return "".join(
        segment if is_string else rewrite(segment)
        for segment, is_string in _split_segments(text, quotes)
    )


def _quote_bare_keys(text: str) -> str:
    return _rewrite_outside_strings(text, lambda s: _BARE_KEY_RE.sub(r'\1"\2"\3', s))


def _strip_trailing_commas(text: str) -> str:
    return _rewrite_outside_strings(text, lambda s: _TRAILING_COMMA_RE.sub(r"\1", s))


def _balance_delimiters(text: str) -> str:
    """Close an open string and any open brackets; drop unmatched closers."""
    out: list[str] = []
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                continue
            stack.pop()
        out.append(ch)

    if in_string:
        if escaped:
            out.pop()
        out.append('"')
    repaired = "".join(out).rstrip()
    if stack:
        if repaired.endswith(","):
            repaired = repaired[:-1].rstrip()
        if repaired.endswith(":"):
            repaired += " null"
    return repaired + "".join(reversed(stack))


def _convert_single_quotes(text: str) -> str:
    """Rewrite single-quoted strings as double-quoted JSON strings."""
    parts: list[str] = []
    for segment, is_string in _split_segments(text):
        if is_string and segment.startswith("'"):
            inner = segment[1:-1] if len(segment) > 1 and segment.endswith("'") else segment[1:]
            inner = inner.replace("\\'", "'").replace('"', '\\"')
            parts.append(f'"{inner}"')
        else:
            parts.append(segment)
    return "".join(parts)


def _convert_python_literals(text: str) -> str:
    return _rewrite_outside_strings(
        text,
        lambda s: _PYTHON_LITERAL_RE.sub(lambda m: _PYTHON_LITERALS[m.group(1)], s),
        quotes='"',
    )


REPAIR_PASSES: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("quote_bare_keys", _quote_bare_keys),
    ("strip_trailing_commas", _strip_trailing_commas),
    ("balance_delimiters", _balance_delimiters),
    ("convert_single_quotes", _convert_single_quotes),
    ("convert_python_literals", _convert_python_literals),
)


def _try_parse(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def _strip_code_fence(text: str) -> str:
    return _CODE_FENCE_RE.sub("", text.strip()).strip()


def _snippet(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _repair(text: str) -> tuple[str, Any]:
    if not text or not text.strip():
        raise InvalidStructuredDataError("Empty structured payload")

    ok, value = _try_parse(text)
    if ok:
        return text, value

    candidate = _strip_code_fence(text)
    ok, value = _try_parse(candidate)
    if ok:
        return candidate, value

    for name, repair_pass in REPAIR_PASSES:
        candidate = repair_pass(candidate)
        ok, value = _try_parse(candidate)
        if ok:
            log.debug("Repaired structured payload", last_pass=name, original_length=len(text))
            return candidate, value

    raise InvalidStructuredDataError(
        f"Unrepairable structured payload after {len(REPAIR_PASSES)} passes",
        snippet=_snippet(text),
    )


def repair_json(text: str) -> str:
    """Return a corrected version of ``text`` that parses as JSON.

    Raises:
        InvalidStructuredDataError: if the pass budget is exhausted
    """
    repaired, _ = _repair(text)
    return repaired


def loads_lenient(text: str) -> Any:
    """Parse JSON directly, falling back to the repair passes.

    Raises:
        InvalidStructuredDataError: if the payload is unrepairable
    """
    _, value = _repair(text)
    return value


def is_complete_json(text: str) -> bool:
    """Cheap balance check: brackets, braces and quotes only, no semantics."""
    if not text or not text.strip():
        return False
    stripped = text.strip()
    if stripped[0] not in "{[":
        return False

    brace_depth = 0
    bracket_depth = 0
    in_string = False
    escaped = False
    for ch in stripped:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            brace_depth += 1
        elif ch == "}":
            brace_depth -= 1
        elif ch == "[":
            bracket_depth += 1
        elif ch == "]":
            bracket_depth -= 1

    return brace_depth == 0 and bracket_depth == 0 and not in_string


def find_object_end(text: str, start: int) -> int | None:
    """Index one past the brace matching ``text[start]``, or None if unbalanced.

    Both quote styles are honoured so braces inside strings are ignored.
    """
    if start >= len(text) or text[start] != "{":
        return None
    depth = 0
    quote: str | None = None
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if quote is not None:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx + 1
    return None
