"""Bounded turn loop that interleaves model calls with tool executions."""

import asyncio
import re

from tool_relay.budget import OutputBudgetTracker
from tool_relay.config import Config, get_config
from tool_relay.exceptions import ErrorKind, LLMError
from tool_relay.history import ConversationHistory
from tool_relay.llm import LLMProvider, get_provider
from tool_relay.logging import get_logger
from tool_relay.orchestrator_model_mixin import OrchestratorModelMixin
from tool_relay.orchestrator_tool_mixin import OrchestratorToolMixin
from tool_relay.parsing import ResponseParser, sequential_id_factory
from tool_relay.render import RenderSink, notify
from tool_relay.tools import ToolRegistry, get_tool_registry
from tool_relay.turn import (
    TerminalReason,
    TurnContext,
    TurnPhase,
    TurnResult,
)
from tool_relay.validation import InvocationValidator

log = get_logger(__name__)

_GREETINGS = {"hello", "hi", "hey"}
_GREETING_PREFIXES = ("hello", "hi ", "hey ")
_MAX_GREETING_LENGTH = 40


def is_greeting(text: str) -> bool:
    """Short social greeting such as "hi" or "hello there"."""
    cleaned = re.sub(r"[!.?,\s]+$", "", (text or "").strip().lower())
    if not cleaned or len(cleaned) > _MAX_GREETING_LENGTH:
        return False
    return cleaned in _GREETINGS or cleaned.startswith(_GREETING_PREFIXES)


class TurnOrchestrator(OrchestratorModelMixin, OrchestratorToolMixin):
    """Drive one user turn to a final narrative.

    Each iteration sends the history to the model, executes any tool
    invocations it asks for and feeds the results back.  The loop stops on
    a narrative-only reply, at the iteration ceiling, after a forced
    text-only iteration, on cancellation or on transport failure.
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        tools: ToolRegistry | None = None,
        history: ConversationHistory | None = None,
        config: Config | None = None,
        render_sink: RenderSink | None = None,
        parser: ResponseParser | None = None,
        validator: InvocationValidator | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            provider: LLM provider; defaults to the global provider
            tools: Tool registry; defaults to the global registry
            history: Conversation history to append to
            config: Configuration; defaults to the global config
            render_sink: Optional observer for narrative and tool progress
            parser: Response parser override
            validator: Invocation validator override
        """
        self.config = config or get_config()
        self.provider = provider or get_provider()
        self.tools = tools or get_tool_registry()
        self.history = history if history is not None else ConversationHistory()
        self.render_sink = render_sink
        self.parser = parser or ResponseParser()
        self.validator = validator or InvocationValidator()
        self.budget = OutputBudgetTracker(self.config.budget)
        self._call_ids = sequential_id_factory()
        self._turn_lock = asyncio.Lock()

    async def run_turn(self, user_input: str, cancel_event: asyncio.Event | None = None) -> TurnResult:
        """Process one user message. Turns on the same orchestrator run one at a time."""
        async with self._turn_lock:
            return await self._run_turn(user_input, cancel_event)

    async def _run_turn(self, user_input: str, cancel_event: asyncio.Event | None) -> TurnResult:
        settings = self.config.orchestrator
        self.budget.reset()
        ctx = TurnContext(budget=self.budget, id_source=self._call_ids)
        state = ctx.state

        if settings.system_prompt and not self.history.entries:
            self.history.append("system", settings.system_prompt)
        self.history.append("user", user_input)
        log.info("Turn started", model=self.provider.model, history=len(self.history))

        reason: TerminalReason
        while True:
            if cancel_event is not None and cancel_event.is_set():
                reason = TerminalReason.CANCELLED
                break
            if state.iterations >= settings.max_iterations:
                log.warning("Iteration ceiling reached", iterations=state.iterations)
                ctx.add_error(
                    ErrorKind.ITERATION_LIMIT_EXCEEDED,
                    f"Stopped after {state.iterations} iterations",
                )
                reason = TerminalReason.ITERATION_LIMIT
                break

            forcing = state.consecutive_tool_only >= settings.max_consecutive_tool_only
            if forcing:
                state.phase = TurnPhase.FORCING_TEXT_ONLY
                log.info("Forcing text-only response", consecutive_tool_only=state.consecutive_tool_only)
                self.history.append("user", settings.forced_text_prompt)
            else:
                state.phase = TurnPhase.BUILDING_REQUEST
            request = self._build_request(include_tools=not forcing)

            state.phase = TurnPhase.AWAITING_MODEL
            try:
                outcome = await self._request_model(request, ctx)
            except LLMError as e:
                log.error("Model call failed", error=str(e), iteration=state.iterations)
                ctx.add_error(ErrorKind.TRANSPORT_REJECTED, str(e))
                reason = TerminalReason.TRANSPORT_FAILURE
                break
            state.iterations += 1

            narrative = outcome.narrative
            if narrative:
                ctx.best_narrative = narrative
                notify(self.render_sink, "on_narrative", narrative)

            if forcing:
                # Invocations in the forced reply are never executed.
                if narrative:
                    self.history.append("assistant", narrative)
                reason = TerminalReason.FORCED_TEXT
                break

            if outcome.invocations:
                state.phase = TurnPhase.HAS_TOOL_CALLS
                self.history.append(
                    "assistant",
                    narrative or settings.empty_tool_message_placeholder,
                    invocations=outcome.invocations,
                )
                ctx.invocations.extend(outcome.invocations)

                results = await self._run_invocations(outcome.invocations, ctx, cancel_event)
                for result in results:
                    self.history.append(
                        "tool",
                        result.content,
                        tool_call_id=result.invocation_id,
                        tool_name=result.tool_name,
                    )
                ctx.tool_results.extend(results)

                if narrative:
                    state.consecutive_tool_only = 0
                else:
                    state.consecutive_tool_only += 1
                continue

            state.phase = TurnPhase.HAS_NARRATIVE_ONLY
            if narrative:
                self.history.append("assistant", narrative)
            reason = TerminalReason.NARRATIVE
            break

        state.phase = TurnPhase.TERMINAL
        state.terminal_reason = reason
        return self._finish_turn(user_input, ctx, reason)

    def _finish_turn(self, user_input: str, ctx: TurnContext, reason: TerminalReason) -> TurnResult:
        settings = self.config.orchestrator
        narrative = ctx.best_narrative
        fallback = ""

        if not narrative and is_greeting(user_input):
            fallback = settings.greeting_reply
        elif not narrative and settings.summarize_tool_results_on_empty and ctx.tool_results:
            fallback = self._summarize_tool_results(ctx.tool_results)

        if fallback:
            narrative = fallback
            self.history.append("assistant", narrative)
            notify(self.render_sink, "on_narrative", narrative)

        success = bool(narrative)
        if not success and reason == TerminalReason.CANCELLED:
            ctx.add_error(ErrorKind.INCOMPLETE_RESPONSE, "Turn cancelled before any response")

        log.info(
            "Turn finished",
            reason=reason.value,
            iterations=ctx.state.iterations,
            invocations=len(ctx.invocations),
            success=success,
            budget=ctx.budget.stats()["consumed"],
        )
        return TurnResult(
            narrative=narrative,
            success=success,
            terminal_reason=reason,
            iterations=ctx.state.iterations,
            invocations=list(ctx.invocations),
            tool_results=list(ctx.tool_results),
            errors=list(ctx.errors),
            usage=dict(ctx.usage),
        )
