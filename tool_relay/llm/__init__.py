"""Model-facing data types and providers."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

import httpx

from tool_relay.exceptions import LLMAPIError, LLMError, TransportRejectedError
from tool_relay.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

# Status codes meaning "the request as sent is unacceptable" rather than an outage.
_REJECTION_STATUS_CODES = {400, 422}


class InvocationFormat(str, Enum):
    """Where an invocation was found."""

    TAGGED = "tagged"
    FENCED = "fenced"
    INLINE = "inline"
    NATIVE = "native"


@dataclass
class ToolInvocation:
    """A model-requested call into a tool."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    source_format: InvocationFormat = InvocationFormat.NATIVE
    complete: bool = True
    repaired_arguments: dict[str, Any] | None = None

    @property
    def effective_arguments(self) -> dict[str, Any]:
        """Arguments to execute with: the repaired map when one was attached."""
        if self.repaired_arguments is not None:
            return self.repaired_arguments
        return self.arguments


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    invocations: list[ToolInvocation] = field(default_factory=list)


@dataclass(frozen=True)
class ModelIdentity:
    """Provider and model name; selects parsing strategy priority."""

    provider: str = ""
    model: str = ""


@dataclass
class ModelRequest:
    """One request to the model."""

    messages: list[Message]
    tools: list[dict[str, Any]] | None = None
    identity: ModelIdentity = field(default_factory=ModelIdentity)


@dataclass
class ModelResponse:
    """Response from the model."""

    content: str
    invocations: list[ToolInvocation] = field(default_factory=list)
    complete: bool = True
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ResponseFragment:
    """One streamed unit. ``finished`` marks the end of the response."""

    index: int = 0
    text: str | None = None
    name: str | None = None
    arguments: str | None = None
    finished: bool = False


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    provider: str = ""
    model: str = ""
    # False for providers that only accept system/user/assistant messages.
    supports_tool_role: bool = True

    @property
    def identity(self) -> ModelIdentity:
        return ModelIdentity(provider=self.provider, model=self.model)

    @abstractmethod
    async def complete(self, request: ModelRequest) -> ModelResponse:
        pass

    @abstractmethod
    def complete_streaming(self, request: ModelRequest) -> AsyncIterator[ResponseFragment]:
        pass


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    provider = "ollama"

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = client or httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.invocations:
                entry["tool_calls"] = [
                    {"function": {"name": inv.name, "arguments": inv.arguments}}
                    for inv in msg.invocations
                ]
            elif msg.role == "tool" and msg.tool_name:
                entry["tool_name"] = msg.tool_name
            result.append(entry)
        return result

    @staticmethod
    def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert tool definitions to Ollama format."""
        result = []
        for tool in tools:
            name = tool.get("name")
            if not name:
                continue
            result.append({
                "type": "function",
                "function": {
                    "name": name,
                    "description": tool.get("description", "") or "",
                    "parameters": tool.get("parameters", {}) or {},
                },
            })
        return result

    def _build_body(self, request: ModelRequest, stream: bool) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": 65536,
            "temperature": self.temperature,
        }
        if self.max_tokens:
            options["num_predict"] = self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(request.messages),
            "stream": stream,
            "options": options,
        }
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _raise_for_status(status_code: int, error_text: str) -> None:
        message = f"Ollama API error {status_code}: {error_text}"
        if status_code in _REJECTION_STATUS_CODES:
            raise TransportRejectedError(message, status_code=status_code)
        raise LLMAPIError(message, status_code=status_code)

    async def complete(self, request: ModelRequest) -> ModelResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(request, stream=False)

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())
            log.debug("Ollama response status", status=response.status_code)

            if not response.is_success:
                self._raise_for_status(response.status_code, response.text)

            data = response.json()
            message = data.get("message", {}) or {}

            invocations = []
            for idx, tc in enumerate(message.get("tool_calls") or []):
                function = tc.get("function", {}) or {}
                arguments = function.get("arguments", {})
                invocations.append(ToolInvocation(
                    id=str(tc.get("id") or f"ollama_call_{idx}"),
                    name=str(function.get("name", "")),
                    arguments=arguments if isinstance(arguments, dict) else {},
                    complete=isinstance(arguments, dict),
                ))

            usage = {
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
                "total_tokens": data.get("prompt_eval_count", 0) + data.get("eval_count", 0),
            }

            return ModelResponse(
                content=message.get("content", "") or "",
                invocations=invocations,
                complete=bool(data.get("done", True)),
                model=self.model,
                usage=usage,
            )

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}")

    async def complete_streaming(self, request: ModelRequest) -> AsyncIterator[ResponseFragment]:
        """Stream a completion as ordered fragments ending with a finished fragment."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(request, stream=True)

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    self._raise_for_status(response.status_code, error_text)

                next_index = 0
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        log.debug("Skipping undecodable stream line", line=line[:200])
                        continue

                    message = chunk.get("message", {}) or {}
                    if message.get("content"):
                        yield ResponseFragment(text=message["content"])
                    # Ollama delivers each tool call whole, so one fragment carries it.
                    for tc in message.get("tool_calls") or []:
                        function = tc.get("function", {}) or {}
                        arguments = function.get("arguments", {})
                        yield ResponseFragment(
                            index=next_index,
                            name=str(function.get("name", "")),
                            arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
                        )
                        next_index += 1
                    if chunk.get("done"):
                        yield ResponseFragment(finished=True)
                        return

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}")

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (only "ollama" ships here)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or pass a provider instance.")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from tool_relay.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            api_key=cfg.model.api_key or None,
        )
    return _provider


def set_provider(provider: LLMProvider) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
