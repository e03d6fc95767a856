"""Per-turn state: created when a user turn starts, discarded when it ends."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tool_relay.budget import OutputBudgetTracker
from tool_relay.exceptions import ErrorKind
from tool_relay.llm import ToolInvocation
from tool_relay.parsing import IdFactory


class TurnPhase(str, Enum):
    BUILDING_REQUEST = "building_request"
    AWAITING_MODEL = "awaiting_model"
    HAS_TOOL_CALLS = "has_tool_calls"
    HAS_NARRATIVE_ONLY = "has_narrative_only"
    FORCING_TEXT_ONLY = "forcing_text_only"
    TERMINAL = "terminal"


class TerminalReason(str, Enum):
    NARRATIVE = "narrative"
    ITERATION_LIMIT = "iteration_limit"
    FORCED_TEXT = "forced_text"
    CANCELLED = "cancelled"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass
class TurnState:
    iterations: int = 0
    consecutive_tool_only: int = 0
    phase: TurnPhase = TurnPhase.BUILDING_REQUEST
    terminal_reason: TerminalReason | None = None


@dataclass
class TurnError:
    """Something that went wrong during a turn without ending it."""

    kind: ErrorKind
    message: str
    call_id: str | None = None


@dataclass
class ToolExecutionResult:
    """Outcome of one invocation as it entered the conversation."""

    invocation_id: str
    tool_name: str
    success: bool
    content: str
    original_size: int = 0
    truncated: bool = False


@dataclass
class TurnResult:
    """What a finished turn hands back to the caller."""

    narrative: str
    success: bool
    terminal_reason: TerminalReason
    iterations: int
    invocations: list[ToolInvocation] = field(default_factory=list)
    tool_results: list[ToolExecutionResult] = field(default_factory=list)
    errors: list[TurnError] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class TurnContext:
    """Mutable state for one turn."""

    budget: OutputBudgetTracker
    id_source: IdFactory
    state: TurnState = field(default_factory=TurnState)
    invocations: list[ToolInvocation] = field(default_factory=list)
    tool_results: list[ToolExecutionResult] = field(default_factory=list)
    errors: list[TurnError] = field(default_factory=list)
    seen_ids: set[str] = field(default_factory=set)
    usage: dict[str, int] = field(
        default_factory=lambda: {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    )
    best_narrative: str = ""

    def next_call_id(self) -> str:
        """Fresh correlation id, never one already used this turn."""
        call_id = self.id_source()
        while call_id in self.seen_ids:
            call_id = self.id_source()
        self.seen_ids.add(call_id)
        return call_id

    def add_error(self, kind: ErrorKind, message: str, call_id: str | None = None) -> None:
        self.errors.append(TurnError(kind=kind, message=message, call_id=call_id))

    def accumulate_usage(self, usage: dict[str, Any] | None) -> None:
        """Add usage values into turn totals."""
        if not usage:
            return
        prompt = int(usage.get("prompt_tokens", 0))
        completion = int(usage.get("completion_tokens", 0))
        total = int(usage.get("total_tokens", prompt + completion))
        self.usage["prompt_tokens"] += prompt
        self.usage["completion_tokens"] += completion
        self.usage["total_tokens"] += total

    @property
    def echo_candidates(self) -> list[str]:
        return [result.content for result in self.tool_results if result.content]
