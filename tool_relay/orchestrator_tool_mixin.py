"""Tool validation/execution helpers for TurnOrchestrator."""

import asyncio

from tool_relay.exceptions import ErrorKind, ToolError
from tool_relay.llm import ToolInvocation
from tool_relay.logging import get_logger
from tool_relay.render import notify
from tool_relay.tools import ToolResult
from tool_relay.turn import ToolExecutionResult, TurnContext

log = get_logger(__name__)

_SUMMARY_RESULT_COUNT = 5
_SUMMARY_LINE_CHARS = 100


class OrchestratorToolMixin:
    """Validate, execute and budget the invocations of one iteration."""

    async def _run_invocations(
        self,
        invocations: list[ToolInvocation],
        ctx: TurnContext,
        cancel_event: asyncio.Event | None = None,
    ) -> list[ToolExecutionResult]:
        """Execute sibling invocations concurrently; results come back in invocation order."""
        raw_results = await asyncio.gather(
            *(self._execute_invocation(invocation, ctx, cancel_event) for invocation in invocations)
        )

        # Budget is applied in invocation order so truncation is deterministic.
        results = []
        for invocation, result in zip(invocations, raw_results):
            text = result.text
            limit = ctx.budget.get_adjusted_limit(invocation.name)
            clipped = ctx.budget.truncate_output(invocation.name, text, limit)
            ctx.budget.record_output(invocation.name, len(clipped))
            if not result.success:
                ctx.add_error(ErrorKind.TOOL_EXECUTION_FAILURE, result.error or "", call_id=invocation.id)

            execution = ToolExecutionResult(
                invocation_id=invocation.id,
                tool_name=invocation.name,
                success=result.success,
                content=clipped,
                original_size=len(text),
                truncated=len(clipped) < len(text),
            )
            results.append(execution)
            notify(self.render_sink, "on_tool_complete", invocation.id, invocation.name, result.success, clipped)
        return results

    async def _execute_invocation(
        self,
        invocation: ToolInvocation,
        ctx: TurnContext,
        cancel_event: asyncio.Event | None,
    ) -> ToolResult:
        """Run one invocation; every failure comes back as an error-shaped result."""
        if cancel_event is not None and cancel_event.is_set():
            return ToolResult(success=False, error="Cancelled before execution")

        if not invocation.complete:
            return ToolResult(
                success=False,
                error=f"Tool call '{invocation.name}' was incomplete and could not be read",
            )

        if not self.tools.has_tool(invocation.name):
            return ToolResult(success=False, error=f"Tool not found: {invocation.name}")

        outcome = self.validator.validate(invocation, self.tools.get_schema(invocation.name))
        if not outcome.ok:
            for issue in outcome.errors:
                ctx.add_error(issue.kind, issue.message, call_id=invocation.id)
            return ToolResult(
                success=False,
                error=f"Invalid arguments for {invocation.name}: {outcome.error_message()}",
            )

        arguments = invocation.effective_arguments
        notify(self.render_sink, "on_tool_start", invocation.id, invocation.name, arguments)
        log.info("Executing tool", tool=invocation.name, call_id=invocation.id, repaired=outcome.repaired)
        try:
            return await self.tools.execute(invocation.name, arguments, abort_event=cancel_event)
        except ToolError as e:
            log.error("Tool execution failed", tool=invocation.name, call_id=invocation.id, error=str(e))
            return ToolResult(success=False, error=str(e))

    @staticmethod
    def _summarize_tool_results(results: list[ToolExecutionResult]) -> str:
        """Short plain-text summary of the last few tool results."""
        if not results:
            return ""
        lines = ["I've completed the following operations:"]
        for result in results[-_SUMMARY_RESULT_COUNT:]:
            first_line = next((line.strip() for line in result.content.splitlines() if line.strip()), "")
            if len(first_line) > _SUMMARY_LINE_CHARS:
                first_line = first_line[:_SUMMARY_LINE_CHARS].rstrip() + "..."
            status = "done" if result.success else "failed"
            lines.append(f"- {result.tool_name} ({status}): {first_line}" if first_line else f"- {result.tool_name} ({status})")
        return "\n".join(lines)
