"""Custom exceptions and error kinds for Tool Relay."""

from enum import Enum


class ErrorKind(str, Enum):
    """Error categories surfaced on parse outcomes, validations and turn results."""

    INCOMPLETE_RESPONSE = "IncompleteResponse"
    INVALID_STRUCTURED_DATA = "InvalidStructuredData"
    MISSING_REQUIRED_PARAMETER = "MissingRequiredParameter"
    UNRESOLVABLE_PARAMETER_TYPE = "UnresolvableParameterType"
    TOOL_EXECUTION_FAILURE = "ToolExecutionFailure"
    TRANSPORT_REJECTED = "TransportRejected"
    ITERATION_LIMIT_EXCEEDED = "IterationLimitExceeded"


class ToolRelayError(Exception):
    """Base exception for Tool Relay."""

    pass


class ConfigurationError(ToolRelayError):
    """Configuration-related errors."""

    pass


class LLMError(ToolRelayError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransportRejectedError(LLMAPIError):
    """Provider refused the request as sent (commonly: it cannot take tool schemas)."""

    pass


class InvalidStructuredDataError(ToolRelayError):
    """Structured payload could not be parsed, even after repair."""

    def __init__(self, message: str, snippet: str = ""):
        super().__init__(message)
        self.snippet = snippet


class ToolError(ToolRelayError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class HistoryError(ToolRelayError):
    """Conversation history invariant violated."""

    pass
