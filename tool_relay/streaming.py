"""Reassemble tool invocations from streamed response fragments."""

from dataclasses import dataclass, field
from typing import AsyncIterator, Iterable

from tool_relay.exceptions import ErrorKind, InvalidStructuredDataError
from tool_relay.llm import InvocationFormat, ResponseFragment, ToolInvocation
from tool_relay.logging import get_logger
from tool_relay.parsing import IdFactory, ParseError, sequential_id_factory
from tool_relay.repair import is_complete_json, loads_lenient

log = get_logger(__name__)


@dataclass
class _AccumulatingCall:
    name: str = ""
    arguments: list[str] = field(default_factory=list)

    @property
    def argument_text(self) -> str:
        return "".join(self.arguments)


@dataclass
class AccumulatorStats:
    """Diagnostic counters; never consulted for correctness."""

    fragments: int = 0
    # Calls whose argument text arrived balanced and parsed.
    complete: int = 0
    incomplete: int = 0
    # Unbalanced argument text that repair still turned into an object.
    repaired: int = 0


class StreamingAccumulator:
    """Fold an ordered fragment stream into finished invocations.

    Argument text is appended verbatim and only parsed once the stream
    finishes, so a call spread over any number of fragments comes out the
    same as one delivered whole.
    """

    def __init__(self, id_factory: IdFactory | None = None):
        self._id_factory = id_factory or sequential_id_factory()
        self._calls: dict[int, _AccumulatingCall] = {}
        self._text: list[str] = []
        self._finished = False
        self._invocations: list[ToolInvocation] = []
        self.errors: list[ParseError] = []
        self.stats = AccumulatorStats()

    @property
    def text(self) -> str:
        """Narrative text collected so far."""
        return "".join(self._text)

    @property
    def finished(self) -> bool:
        return self._finished

    def add(self, fragment: ResponseFragment) -> list[ToolInvocation] | None:
        """Apply one fragment; returns the invocations once the stream finishes."""
        if self._finished:
            log.debug("Fragment after finish ignored", index=fragment.index)
            return None

        self.stats.fragments += 1
        if fragment.text:
            self._text.append(fragment.text)
        if fragment.name or fragment.arguments:
            call = self._calls.setdefault(fragment.index, _AccumulatingCall())
            if fragment.name:
                call.name += fragment.name
            if fragment.arguments:
                call.arguments.append(fragment.arguments)

        if fragment.finished:
            return self.finish()
        return None

    def feed(self, fragments: Iterable[ResponseFragment]) -> list[ToolInvocation]:
        """Fold a whole fragment sequence, finishing at the end if it never did."""
        for fragment in fragments:
            self.add(fragment)
        return self.finish()

    async def consume(self, stream: AsyncIterator[ResponseFragment]) -> list[ToolInvocation]:
        """Fold an async fragment stream."""
        async for fragment in stream:
            self.add(fragment)
            if self._finished:
                break
        if not self._finished:
            log.warning("Stream ended without a finished fragment", pending=len(self._calls))
        return self.finish()

    def finish(self) -> list[ToolInvocation]:
        """Finalize accumulated calls. A second call returns the same list."""
        if self._finished:
            return self._invocations

        for index in sorted(self._calls):
            call = self._calls[index]
            name = call.name.strip()
            if not name:
                log.debug("Dropping nameless streamed call", index=index)
                continue

            raw = call.argument_text
            complete = True
            balanced = not raw.strip() or is_complete_json(raw)
            arguments: dict = {}
            if raw.strip():
                try:
                    parsed = loads_lenient(raw)
                except InvalidStructuredDataError as e:
                    parsed = None
                    complete = False
                    self.errors.append(ParseError(
                        ErrorKind.INVALID_STRUCTURED_DATA,
                        f"Arguments for '{name}' could not be repaired: {e}",
                        snippet=raw[:200],
                    ))
                if isinstance(parsed, dict):
                    arguments = parsed
                elif parsed is not None:
                    complete = False
                    self.errors.append(ParseError(
                        ErrorKind.INVALID_STRUCTURED_DATA,
                        f"Arguments for '{name}' are not an object",
                        snippet=raw[:200],
                    ))

            if complete and balanced:
                self.stats.complete += 1
            else:
                self.stats.incomplete += 1
                if complete:
                    self.stats.repaired += 1
                    log.debug("Repaired unbalanced streamed arguments", tool=name, index=index)
            self._invocations.append(ToolInvocation(
                id=self._id_factory(),
                name=name,
                arguments=arguments,
                source_format=InvocationFormat.NATIVE,
                complete=complete,
            ))

        self._finished = True
        log.debug(
            "Stream finished",
            fragments=self.stats.fragments,
            invocations=len(self._invocations),
            incomplete=self.stats.incomplete,
        )
        return self._invocations

    def reset(self) -> None:
        """Clear all state for the next response."""
        self._calls.clear()
        self._text.clear()
        self._finished = False
        self._invocations = []
        self.errors = []
        self.stats = AccumulatorStats()
