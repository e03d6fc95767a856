"""Observational render sink for narrative and tool progress."""

from typing import Any, Callable

from tool_relay.logging import get_logger

log = get_logger(__name__)


class RenderSink:
    """Receives display events; the default implementation ignores them."""

    def on_narrative(self, text: str) -> None:
        pass

    def on_tool_start(self, call_id: str, tool_name: str, arguments: dict[str, Any]) -> None:
        pass

    def on_tool_complete(self, call_id: str, tool_name: str, success: bool, output: str) -> None:
        pass


class CallbackRenderSink(RenderSink):
    """Forward events to plain callables, for hosts that prefer callbacks."""

    def __init__(
        self,
        narrative_callback: Callable[[str], None] | None = None,
        status_callback: Callable[[str], None] | None = None,
        tool_output_callback: Callable[[str, dict[str, Any], str], None] | None = None,
    ):
        self.narrative_callback = narrative_callback
        self.status_callback = status_callback
        self.tool_output_callback = tool_output_callback

    def on_narrative(self, text: str) -> None:
        if self.narrative_callback:
            self.narrative_callback(text)

    def on_tool_start(self, call_id: str, tool_name: str, arguments: dict[str, Any]) -> None:
        if self.status_callback:
            self.status_callback(f"Running {tool_name}")

    def on_tool_complete(self, call_id: str, tool_name: str, success: bool, output: str) -> None:
        if self.tool_output_callback:
            self.tool_output_callback(tool_name, {"call_id": call_id, "success": success}, output)


def notify(sink: RenderSink | None, event: str, *args: Any) -> None:
    """Call ``sink.<event>(*args)``; failures are logged and never propagate."""
    if sink is None:
        return
    try:
        getattr(sink, event)(*args)
    except Exception as e:
        log.warning("Render sink callback failed", sink_event=event, error=str(e))
