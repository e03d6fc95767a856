"""Tool Relay - response interpretation and tool-calling turn loop for LLM assistants."""

__version__ = "0.1.0"

from tool_relay.config import Config
from tool_relay.orchestrator import TurnOrchestrator
from tool_relay.parsing import ResponseParser
from tool_relay.turn import TurnResult

__all__ = ["Config", "ResponseParser", "TurnOrchestrator", "TurnResult", "__version__"]
