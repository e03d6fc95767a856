"""Model request/response helpers for TurnOrchestrator."""

from dataclasses import replace

from tool_relay.exceptions import ErrorKind, TransportRejectedError
from tool_relay.llm import Message, ModelRequest, ToolInvocation
from tool_relay.logging import get_logger
from tool_relay.parsing import ParseOutcome, ResponseParser, sequential_id_factory
from tool_relay.streaming import StreamingAccumulator
from tool_relay.turn import TurnContext

log = get_logger(__name__)


class OrchestratorModelMixin:
    """Build requests, call the provider and turn replies into parse outcomes."""

    def _build_request(self, include_tools: bool = True) -> ModelRequest:
        """Request from the full history; tool schemas only when allowed."""
        messages = self.history.to_messages()
        if not getattr(self.provider, "supports_tool_role", True):
            messages = self._fold_tool_messages(messages)
        tools = self.tools.get_definitions() if include_tools else None
        return ModelRequest(
            messages=messages,
            tools=tools or None,
            identity=self.provider.identity,
        )

    def _fold_tool_messages(self, messages: list[Message]) -> list[Message]:
        """Replace tool-role runs with one user message in the model's result format."""
        folded: list[Message] = []
        pending: list[Message] = []
        calls: dict[str, ToolInvocation] = {}

        def _flush() -> None:
            if not pending:
                return
            invocations = [
                calls.get(msg.tool_call_id or "")
                or ToolInvocation(id=msg.tool_call_id or "", name=msg.tool_name or "tool")
                for msg in pending
            ]
            folded.append(Message(
                role="user",
                content=ResponseParser.format_tool_results(
                    invocations,
                    [msg.content for msg in pending],
                    self.provider.identity,
                ),
            ))
            pending.clear()

        for msg in messages:
            if msg.role == "tool":
                pending.append(msg)
                continue
            _flush()
            for invocation in msg.invocations:
                calls[invocation.id] = invocation
            folded.append(msg)
        _flush()
        return folded

    async def _request_model(self, request: ModelRequest, ctx: TurnContext) -> ParseOutcome:
        """Call the model; a rejected request with tool schemas is retried once without them."""
        try:
            return await self._complete_once(request, ctx)
        except TransportRejectedError as e:
            if not request.tools:
                raise
            log.warning(
                "Provider rejected request with tool schemas; retrying without tools",
                status_code=e.status_code,
                error=str(e),
            )
            ctx.add_error(ErrorKind.TRANSPORT_REJECTED, str(e))
            return await self._complete_once(replace(request, tools=None), ctx)

    async def _complete_once(self, request: ModelRequest, ctx: TurnContext) -> ParseOutcome:
        if self.config.model.streaming:
            return await self._complete_streaming(request, ctx)

        response = await self.provider.complete(request)
        ctx.accumulate_usage(response.usage)
        self._warn_on_fake_tool_results(response.content)

        if response.invocations:
            invocations = [self._claim_native_id(invocation, ctx) for invocation in response.invocations]
            outcome = self._parse_text(response.content, ctx, narrative_only=True)
            outcome.invocations = invocations
            outcome.complete = outcome.complete and response.complete
            return outcome

        outcome = self._parse_text(response.content, ctx)
        if not response.complete:
            outcome.complete = False
        return outcome

    async def _complete_streaming(self, request: ModelRequest, ctx: TurnContext) -> ParseOutcome:
        """Fold the fragment stream, then run the streamed text through the parser."""
        accumulator = StreamingAccumulator(id_factory=ctx.next_call_id)
        invocations = await accumulator.consume(self.provider.complete_streaming(request))
        for error in accumulator.errors:
            ctx.add_error(error.kind, error.message)
        text = accumulator.text
        self._warn_on_fake_tool_results(text)

        if invocations:
            outcome = self._parse_text(text, ctx, narrative_only=True)
            outcome.invocations = list(invocations)
            for invocation in invocations:
                ctx.seen_ids.add(invocation.id)
            return outcome
        return self._parse_text(text, ctx)

    def _parse_text(self, text: str, ctx: TurnContext, narrative_only: bool = False) -> ParseOutcome:
        # Narrative-only parses must not consume turn ids.
        id_factory = sequential_id_factory(prefix="unused_") if narrative_only else ctx.next_call_id
        outcome = self.parser.parse(
            text,
            self.provider.identity,
            id_factory=id_factory,
            echo_candidates=ctx.echo_candidates,
        )
        for error in outcome.errors:
            # An empty text part next to native calls is normal.
            if narrative_only and error.kind == ErrorKind.INCOMPLETE_RESPONSE:
                continue
            ctx.add_error(error.kind, error.message)
        if narrative_only:
            outcome.invocations = []
            outcome.errors = []
            outcome.complete = True
        else:
            for invocation in outcome.invocations:
                ctx.seen_ids.add(invocation.id)
        return outcome

    @staticmethod
    def _claim_native_id(invocation: ToolInvocation, ctx: TurnContext) -> ToolInvocation:
        """Keep the provider's id unless it is empty or already used this turn."""
        if not invocation.id or invocation.id in ctx.seen_ids:
            invocation = replace(invocation, id=ctx.next_call_id())
        ctx.seen_ids.add(invocation.id)
        return invocation

    def _warn_on_fake_tool_results(self, text: str) -> None:
        if ResponseParser.contains_fake_tool_results(text):
            log.warning("Model wrote tool results it did not receive", model=self.provider.model)
