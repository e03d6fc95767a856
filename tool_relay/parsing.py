"""Extract narrative text and tool invocations from one complete model response.

Model families announce tool calls in different ways.  The parser tries a
priority-ordered list of extraction strategies:

    explicit tagged block  >  fenced structured block  >  bare inline object

The first strategy that finds something shaped like an invocation wins and
the others are not consulted, so one response never mixes formats.  What is
left after the payloads are cut out is run through an ordered list of
heuristic cleanup rules to produce the narrative.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from tool_relay.exceptions import ErrorKind, InvalidStructuredDataError
from tool_relay.llm import InvocationFormat, ModelIdentity, ToolInvocation
from tool_relay.logging import get_logger
from tool_relay.repair import find_object_end, loads_lenient

log = get_logger(__name__)

IdFactory = Callable[[], str]

TAG_VARIANTS: tuple[str, ...] = ("tool_call", "tool_use", "function_call")
REASONING_TAGS: tuple[str, ...] = (
    "think",
    "thinking",
    "reflection",
    "reasoning",
    "scratch",
    "internal",
    "thought",
    "analysis",
)
FENCE_LANGUAGES = {"", "json", "json5", "tool_call", "tool", "function_call"}

_NAME_KEYS = ("tool", "tool_name", "name", "function")
_ARGUMENT_KEYS = ("parameters", "arguments", "args", "input")
_NAME_KEY_MENTION_RE = re.compile(
    r"""(?:^|[{,\s])["']?(?:tool|tool_name|name|function|tool_call)["']?\s*:"""
)
_FENCE_RE = re.compile(r"```(?P<lang>[\w-]*)[ \t]*\n?(?P<body>.*?)\n?[ \t]*```", re.DOTALL)
_CALL_MARKER = "\x00CALL\x00"
_FENCE_TOKEN = "\x00FENCE{}\x00"
_FENCE_TOKEN_RE = re.compile(r"\x00FENCE(\d+)\x00")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_MIN_DEDUP_SENTENCE_LENGTH = 12
_MIN_ECHO_SUBSTRING_LENGTH = 40


@dataclass(frozen=True)
class ModelProfile:
    """Per-model-family parsing preferences."""

    name: str
    tag_order: tuple[str, ...] = TAG_VARIANTS
    reasoning_tags: tuple[str, ...] = REASONING_TAGS
    result_style: str = "plain"


_GENERIC_PROFILE = ModelProfile(name="generic")
_QWEN_PROFILE = ModelProfile(name="qwen", result_style="bracketed_result")
_LLAMA_PROFILE = ModelProfile(name="llama", result_style="bracketed_tool")
_CLAUDE_PROFILE = ModelProfile(
    name="claude",
    tag_order=("tool_use", "tool_call", "function_call"),
    result_style="tool_result_tag",
)

# Prefix order matters: the first prefix the model name starts with wins.
MODEL_PROFILES: tuple[tuple[str, ModelProfile], ...] = (
    ("llama", _LLAMA_PROFILE),
    ("qwen", _QWEN_PROFILE),
    ("gpt", _GENERIC_PROFILE),
    ("o1", _GENERIC_PROFILE),
    ("claude", _CLAUDE_PROFILE),
    ("gemini", _GENERIC_PROFILE),
    ("mistral", _LLAMA_PROFILE),
    ("mixtral", _LLAMA_PROFILE),
    ("deepseek", _QWEN_PROFILE),
    ("gemma", _LLAMA_PROFILE),
    ("phi", _GENERIC_PROFILE),
)


def resolve_profile(identity: ModelIdentity | str | None) -> ModelProfile:
    """Pick the parsing profile for a model by name prefix."""
    if isinstance(identity, ModelIdentity):
        model_name = identity.model
    else:
        model_name = identity or ""
    lowered = model_name.strip().lower()
    # Registry-style names ("library/qwen2.5") carry the family after the slash.
    lowered = lowered.rsplit("/", 1)[-1]
    for prefix, profile in MODEL_PROFILES:
        if lowered.startswith(prefix):
            return profile
    return _GENERIC_PROFILE


@dataclass
class ParseError:
    """A problem found while parsing; never aborts the parse."""

    kind: ErrorKind
    message: str
    snippet: str = ""


@dataclass
class ParseOutcome:
    """Result of parsing one response."""

    narrative: str
    invocations: list[ToolInvocation] = field(default_factory=list)
    errors: list[ParseError] = field(default_factory=list)
    complete: bool = True

    @property
    def has_invocations(self) -> bool:
        return bool(self.invocations)


@dataclass
class _Candidate:
    start: int
    end: int
    payload: str
    source_format: InvocationFormat
    terminated: bool = True


def sequential_id_factory(prefix: str = "call_", start: int = 1) -> IdFactory:
    """Return a factory producing ``call_1``, ``call_2``, ..."""
    counter = start - 1

    def _next() -> str:
        nonlocal counter
        counter += 1
        return f"{prefix}{counter}"

    return _next


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower()


def _snippet(text: str, limit: int = 200) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


# ---------------------------------------------------------------------------
# Payload shapes
# ---------------------------------------------------------------------------


def _coerce_arguments(raw: Any) -> dict[str, Any]:
    """Turn whatever sits in the arguments slot into an argument map."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return {}
        if stripped.startswith("{"):
            try:
                parsed = loads_lenient(stripped)
            except InvalidStructuredDataError:
                parsed = None
            if isinstance(parsed, dict):
                return parsed
    return {"input": raw}


def _first_present(payload: dict[str, Any], keys: Iterable[str]) -> tuple[bool, Any]:
    for key in keys:
        if key in payload:
            return True, payload[key]
    return False, None


def invocation_fields(payload: Any) -> tuple[str, dict[str, Any]] | None:
    """Return ``(name, arguments)`` when ``payload`` is shaped like a tool call.

    Recognised shapes::

        {"tool": "x", "parameters": {...}}          (also args / arguments / input)
        {"tool_name": "x", "arguments": {...}}
        {"name": "x", "arguments": {...}}           (arguments may be a JSON string)
        {"function": {"name": "x", "arguments": ...}}
        {"function": "x", "arguments": {...}}
        {"tool_call": {"name": "x", "arguments": ...}}
    """
    if not isinstance(payload, dict):
        return None

    nested = payload.get("tool_call")
    if isinstance(nested, dict):
        return invocation_fields(nested)

    function = payload.get("function")
    if isinstance(function, dict) and isinstance(function.get("name"), str):
        _, raw_args = _first_present(function, _ARGUMENT_KEYS)
        return function["name"].strip(), _coerce_arguments(raw_args)

    for key in _NAME_KEYS:
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        has_args, raw_args = _first_present(payload, _ARGUMENT_KEYS)
        # {"name": ...} alone is too common in ordinary data to count as a call.
        if key == "name" and not has_args:
            return None
        return value.strip(), _coerce_arguments(raw_args)
    return None


def _payload_items(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    return [value]


def _yields_invocation(payload: str) -> bool:
    try:
        value = loads_lenient(payload)
    except InvalidStructuredDataError:
        return False
    return any(invocation_fields(item) is not None for item in _payload_items(value))


# ---------------------------------------------------------------------------
# Extraction strategies
# ---------------------------------------------------------------------------


class ExtractionStrategy:
    """Finds candidate payloads of one format."""

    source_format: InvocationFormat
    # Whether code fences in other languages are blanked out before searching.
    skips_foreign_fences: bool = True

    def find(self, text: str, profile: ModelProfile) -> list[_Candidate]:
        raise NotImplementedError


class TaggedBlockStrategy(ExtractionStrategy):
    """``<tool_call>{...}</tool_call>`` and sibling tag names."""

    source_format = InvocationFormat.TAGGED
    skips_foreign_fences = False

    def find(self, text: str, profile: ModelProfile) -> list[_Candidate]:
        for tag in profile.tag_order:
            candidates = self._find_tag(text, tag)
            if candidates:
                return candidates
        return []

    def _find_tag(self, text: str, tag: str) -> list[_Candidate]:
        open_re = re.compile(rf"<{tag}(?:\s[^>]*)?>", re.IGNORECASE)
        close_re = re.compile(rf"</{tag}\s*>", re.IGNORECASE)
        candidates: list[_Candidate] = []
        pos = 0
        while True:
            opening = open_re.search(text, pos)
            if opening is None:
                break
            closing = close_re.search(text, opening.end())
            if closing is None:
                candidates.append(_Candidate(
                    start=opening.start(),
                    end=len(text),
                    payload=text[opening.end():],
                    source_format=self.source_format,
                    terminated=False,
                ))
                break
            candidates.append(_Candidate(
                start=opening.start(),
                end=closing.end(),
                payload=text[opening.end():closing.start()],
                source_format=self.source_format,
            ))
            pos = closing.end()
        return candidates


class FencedBlockStrategy(ExtractionStrategy):
    """```` ```json {...} ``` ```` blocks that mention a tool name key."""

    source_format = InvocationFormat.FENCED

    def find(self, text: str, profile: ModelProfile) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        for match in _FENCE_RE.finditer(text):
            if match.group("lang").lower() not in FENCE_LANGUAGES:
                continue
            body = match.group("body").strip()
            if not body.startswith(("{", "[")) or not _NAME_KEY_MENTION_RE.search(body):
                continue
            candidates.append(_Candidate(
                start=match.start(),
                end=match.end(),
                payload=body,
                source_format=self.source_format,
            ))
        return candidates


class InlineObjectStrategy(ExtractionStrategy):
    """Bare ``{...}`` objects in running text that mention a tool name key."""

    source_format = InvocationFormat.INLINE

    def find(self, text: str, profile: ModelProfile) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        unterminated: _Candidate | None = None
        pos = 0
        while True:
            start = text.find("{", pos)
            if start < 0:
                break
            end = find_object_end(text, start)
            if end is None:
                tail = text[start:]
                if _NAME_KEY_MENTION_RE.search(tail[:200]):
                    candidate = _Candidate(
                        start=start,
                        end=len(text),
                        payload=tail,
                        source_format=self.source_format,
                        terminated=False,
                    )
                    if _yields_invocation(tail):
                        candidates.append(candidate)
                        break
                    # A stray brace in prose must not hide a later call.
                    if unterminated is None:
                        unterminated = candidate
                pos = start + 1
                continue
            body = text[start:end]
            if not _NAME_KEY_MENTION_RE.search(body):
                pos = start + 1
                continue
            span_start, span_end = start, end
            if start > 0 and end < len(text) and text[start - 1] == "`" and text[end] == "`":
                span_start, span_end = start - 1, end + 1
            candidates.append(_Candidate(
                start=span_start,
                end=span_end,
                payload=body,
                source_format=self.source_format,
            ))
            pos = end
        if unterminated is not None and not any(c.start > unterminated.start for c in candidates):
            candidates.append(unterminated)
        return candidates


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    TaggedBlockStrategy(),
    FencedBlockStrategy(),
    InlineObjectStrategy(),
)


# ---------------------------------------------------------------------------
# Cleanup rules
# ---------------------------------------------------------------------------


@dataclass
class CleanupContext:
    """Per-response facts the cleanup rules may consult."""

    echo_candidates: tuple[str, ...] = ()


@dataclass(frozen=True)
class CleanupRule:
    """One named text transformation, applied once per response."""

    name: str
    apply: Callable[[str, CleanupContext], str]


def _regex_rule(name: str, pattern: str, replacement: str = "", flags: int = 0) -> CleanupRule:
    compiled = re.compile(pattern, flags)
    return CleanupRule(name, lambda text, _ctx: compiled.sub(replacement, text))


_FILLER_LINE_RE = re.compile(
    r"^[ \t]*(?:(?:ok(?:ay)?|alright|sure|great)[,!.]?[ \t]+)?(?:now,?[ \t]+)?"
    r"(?:i[’']ll|i will|let me|let[’']s|i[’']m going to|i am going to|i need to|next,?[ \t]+i[’']ll)"
    r"[ \t]+(?:now[ \t]+|first[ \t]+|quickly[ \t]+)?"
    r"(?:check|look|run|use|call|search|read|list|execute|examine|inspect|find|get|fetch|open|see|try"
    r"|start|explore|gather|query|view|scan)\b[^\n]{0,160}$",
    re.IGNORECASE | re.MULTILINE,
)


def _remove_filler_lines(text: str, _ctx: CleanupContext) -> str:
    """Drop announcement-only lines that no invocation follows."""
    last_call = text.rfind(_CALL_MARKER)
    boundary = last_call + len(_CALL_MARKER) if last_call >= 0 else 0

    def _drop(match: re.Match[str]) -> str:
        return "" if match.start() >= boundary else match.group(0)

    return _FILLER_LINE_RE.sub(_drop, text)


def _remove_echoed_outputs(text: str, ctx: CleanupContext) -> str:
    """Drop text that repeats a tool output the model was shown."""
    echoes = [candidate.strip() for candidate in ctx.echo_candidates if candidate and candidate.strip()]
    if not echoes:
        return text
    for echo in echoes:
        if len(echo) >= _MIN_ECHO_SUBSTRING_LENGTH:
            text = text.replace(echo, "\n")
    echo_paragraphs = {
        _normalize(paragraph)
        for echo in echoes
        for paragraph in [echo, *_PARAGRAPH_SPLIT_RE.split(echo)]
        if paragraph.strip()
    }
    kept = [
        paragraph
        for paragraph in _PARAGRAPH_SPLIT_RE.split(text)
        if _normalize(paragraph) not in echo_paragraphs
    ]
    return "\n\n".join(kept)


def _remove_call_markers(text: str, _ctx: CleanupContext) -> str:
    return text.replace(_CALL_MARKER, "\n")


def _dedupe_consecutive_lines(text: str, _ctx: CleanupContext) -> str:
    kept: list[str] = []
    previous = ""
    for line in text.split("\n"):
        if line.strip() and line == previous:
            continue
        kept.append(line)
        if line.strip():
            previous = line
    return "\n".join(kept)


def _dedupe_paragraphs(text: str, _ctx: CleanupContext) -> str:
    seen: set[str] = set()
    kept: list[str] = []
    for paragraph in _PARAGRAPH_SPLIT_RE.split(text):
        normalized = _normalize(paragraph)
        if not normalized:
            continue
        if normalized in seen:
            continue
        seen.add(normalized)
        kept.append(paragraph.strip("\n"))
    return "\n\n".join(kept)


def _dedupe_sentences(text: str, _ctx: CleanupContext) -> str:
    """Drop sentences already said earlier in the response (single-line paragraphs only)."""
    seen: set[str] = set()
    kept_paragraphs: list[str] = []
    for paragraph in _PARAGRAPH_SPLIT_RE.split(text):
        if "\n" in paragraph.strip() or _FENCE_TOKEN_RE.search(paragraph):
            kept_paragraphs.append(paragraph)
            continue
        kept: list[str] = []
        for sentence in _SENTENCE_SPLIT_RE.split(paragraph.strip()):
            normalized = _normalize(sentence)
            if len(normalized) >= _MIN_DEDUP_SENTENCE_LENGTH:
                if normalized in seen:
                    continue
                seen.add(normalized)
            kept.append(sentence)
        if kept:
            kept_paragraphs.append(" ".join(kept))
    return "\n\n".join(kept_paragraphs)


def _collapse_blank_lines(text: str, _ctx: CleanupContext) -> str:
    lines = [line.rstrip() for line in text.split("\n")]
    collapsed = re.sub(r"\n{3,}", "\n\n", "\n".join(lines))
    return collapsed.strip()


DEFAULT_CLEANUP_RULES: tuple[CleanupRule, ...] = (
    _regex_rule("tool_result_blocks", r"<tool_result>.*?</tool_result>", "\n", re.DOTALL | re.IGNORECASE),
    _regex_rule("tool_results_sections", r"\[Tool Results\][\s\S]*?(?=\n\n[A-Za-z]|\Z)", "", re.IGNORECASE),
    _regex_rule("tool_execution_echoes", r"^[\"']*\[Tool Execution:[\s\S]*?(?=\n\s*\n|\Z)", "", re.MULTILINE),
    _regex_rule(
        "tool_result_headers",
        r"^\[(?:Tool: [\w.\-]+|[\w.\-]+ (?:result|completed[^\]\n]*))\]\n[\s\S]*?(?=\n\s*\n|\Z)",
        "",
        re.MULTILINE,
    ),
    CleanupRule("echoed_tool_outputs", _remove_echoed_outputs),
    CleanupRule("announcement_filler", _remove_filler_lines),
    CleanupRule("call_markers", _remove_call_markers),
    CleanupRule("duplicate_lines", _dedupe_consecutive_lines),
    CleanupRule("duplicate_paragraphs", _dedupe_paragraphs),
    CleanupRule("duplicate_sentences", _dedupe_sentences),
    CleanupRule("blank_lines", _collapse_blank_lines),
)


def _mask_fences(text: str) -> tuple[str, list[str]]:
    fences: list[str] = []

    def _mask(match: re.Match[str]) -> str:
        fences.append(match.group(0))
        return _FENCE_TOKEN.format(len(fences) - 1)

    return re.sub(r"```[\s\S]*?```", _mask, text), fences


def _unmask_fences(text: str, fences: list[str]) -> str:
    return _FENCE_TOKEN_RE.sub(lambda m: fences[int(m.group(1))], text)


def _blank_foreign_fences(text: str) -> str:
    """Replace fences in non-structured languages with spaces; offsets are kept."""

    def _blank(match: re.Match[str]) -> str:
        if match.group("lang").lower() in FENCE_LANGUAGES:
            return match.group(0)
        return re.sub(r"[^\n]", " ", match.group(0))

    return _FENCE_RE.sub(_blank, text)


def _fence_spans(text: str) -> list[tuple[int, int]]:
    return [(match.start(), match.end()) for match in re.finditer(r"```[\s\S]*?```", text)]


def _strip_reasoning(text: str, tags: Iterable[str]) -> str:
    for tag in tags:
        text = re.sub(rf"<{tag}[^>]*?/>", "", text, flags=re.IGNORECASE)
        text = re.sub(rf"<{tag}(?:\s[^>]*)?>.*?</{tag}\s*>", "", text, flags=re.IGNORECASE | re.DOTALL)
    return text


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class ResponseParser:
    """Parse complete responses into a :class:`ParseOutcome`.

    Parsing is a pure function of its inputs: the same text, identity,
    echo candidates and a fresh id factory always give the same outcome.
    """

    def __init__(
        self,
        strategies: Iterable[ExtractionStrategy] | None = None,
        cleanup_rules: Iterable[CleanupRule] | None = None,
    ):
        self.strategies = tuple(strategies) if strategies is not None else DEFAULT_STRATEGIES
        self.cleanup_rules = tuple(cleanup_rules) if cleanup_rules is not None else DEFAULT_CLEANUP_RULES

    def parse(
        self,
        text: str,
        identity: ModelIdentity | str | None = None,
        *,
        id_factory: IdFactory | None = None,
        echo_candidates: Iterable[str] = (),
    ) -> ParseOutcome:
        """Parse one complete response.

        Args:
            text: Raw response text
            identity: Model identity (or model name) selecting the profile
            id_factory: Correlation id source; defaults to call_1, call_2, ...
            echo_candidates: Tool outputs whose repetition should be dropped

        Returns:
            ParseOutcome with narrative, invocations and errors
        """
        if not text or not text.strip():
            return ParseOutcome(
                narrative="",
                errors=[ParseError(ErrorKind.INCOMPLETE_RESPONSE, "Empty response")],
                complete=False,
            )

        profile = resolve_profile(identity)
        next_id = id_factory or sequential_id_factory()
        work = _strip_reasoning(text, profile.reasoning_tags)

        invocations: list[ToolInvocation] = []
        errors: list[ParseError] = []
        consumed: list[_Candidate] = []
        complete = True

        searchable = _blank_foreign_fences(work)
        for strategy in self.strategies:
            source = searchable if strategy.skips_foreign_fences else work
            tier_invocations, tier_errors, tier_consumed = self._run_strategy(strategy, source, profile, next_id)
            if tier_consumed:
                invocations, errors, consumed = tier_invocations, tier_errors, tier_consumed
                log.debug(
                    "Extraction strategy matched",
                    strategy=strategy.source_format.value,
                    profile=profile.name,
                    invocations=len(invocations),
                    errors=len(errors),
                )
                break

        if any(not candidate.terminated for candidate in consumed):
            complete = False
            errors.append(ParseError(
                ErrorKind.INCOMPLETE_RESPONSE,
                "Response ended inside a tool call payload",
            ))

        narrative = self._clean_narrative(
            work,
            consumed,
            CleanupContext(echo_candidates=tuple(echo_candidates)),
        )
        return ParseOutcome(
            narrative=narrative,
            invocations=invocations,
            errors=errors,
            complete=complete,
        )

    def _run_strategy(
        self,
        strategy: ExtractionStrategy,
        text: str,
        profile: ModelProfile,
        next_id: IdFactory,
    ) -> tuple[list[ToolInvocation], list[ParseError], list[_Candidate]]:
        invocations: list[ToolInvocation] = []
        errors: list[ParseError] = []
        consumed: list[_Candidate] = []

        for candidate in strategy.find(text, profile):
            try:
                value = loads_lenient(candidate.payload)
            except InvalidStructuredDataError as e:
                errors.append(ParseError(
                    ErrorKind.INVALID_STRUCTURED_DATA,
                    str(e),
                    snippet=_snippet(candidate.payload),
                ))
                consumed.append(candidate)
                continue

            found = False
            for item in _payload_items(value):
                fields = invocation_fields(item)
                if fields is None:
                    continue
                name, arguments = fields
                invocations.append(ToolInvocation(
                    id=next_id(),
                    name=name,
                    arguments=arguments,
                    source_format=candidate.source_format,
                    complete=candidate.terminated,
                ))
                found = True
            if found:
                consumed.append(candidate)

        return invocations, errors, consumed

    def _clean_narrative(self, text: str, consumed: list[_Candidate], ctx: CleanupContext) -> str:
        fences = _fence_spans(text)
        pieces: list[str] = []
        pos = 0
        for candidate in sorted(consumed, key=lambda c: c.start):
            pieces.append(text[pos:candidate.start])
            inside_fence = any(start < candidate.start and candidate.end < end for start, end in fences)
            # Fenced text is masked during cleanup, so markers never go there.
            pieces.append("" if inside_fence else _CALL_MARKER)
            pos = candidate.end
        pieces.append(text[pos:])

        masked, masked_fences = _mask_fences("".join(pieces))
        for rule in self.cleanup_rules:
            masked = rule.apply(masked, ctx)
        return _unmask_fences(masked, masked_fences)

    @staticmethod
    def contains_fake_tool_results(text: str) -> bool:
        """Whether the model wrote out tool results it never received."""
        lowered = (text or "").lower()
        return "[tool results]" in lowered or "tool execution result" in lowered

    @staticmethod
    def format_tool_results(
        invocations: list[ToolInvocation],
        results: list[str],
        identity: ModelIdentity | str | None = None,
    ) -> str:
        """Render tool results as plain text for models without a tool role."""
        style = resolve_profile(identity).result_style
        formatted: list[str] = []
        for invocation, result in zip(invocations, results):
            if style == "bracketed_tool":
                formatted.append(f"[Tool: {invocation.name}]\n{result}")
            elif style == "bracketed_result":
                formatted.append(f"[{invocation.name} result]\n{result}")
            elif style == "tool_result_tag":
                formatted.append(f"<tool_result>\nTool: {invocation.name}\n{result}\n</tool_result>")
            else:
                formatted.append(f"Tool: {invocation.name}\nResult: {result}")
        separator = "\n" if style == "tool_result_tag" else "\n\n"
        return separator.join(formatted)
