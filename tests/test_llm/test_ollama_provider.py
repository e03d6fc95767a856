import json

import httpx
import pytest

from tool_relay.exceptions import LLMAPIError, TransportRejectedError
from tool_relay.llm import (
    Message,
    ModelRequest,
    OllamaProvider,
    ToolInvocation,
    create_provider,
)


def _provider(handler) -> OllamaProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaProvider(model="qwen2.5:7b", base_url="http://ollama.test", client=client)


def test_create_provider_supports_ollama():
    provider = create_provider(provider="ollama", model="llama3.2", base_url="http://localhost:11434")

    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.identity.provider == "ollama"


def test_create_provider_rejects_unsupported_provider():
    with pytest.raises(ValueError):
        create_provider(provider="cohere", model="command-r")


@pytest.mark.asyncio
async def test_complete_parses_native_tool_calls():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={
            "message": {
                "content": "",
                "tool_calls": [{"function": {"name": "read_file", "arguments": {"file_path": "a"}}}],
            },
            "done": True,
            "prompt_eval_count": 10,
            "eval_count": 5,
        })

    provider = _provider(handler)
    request = ModelRequest(
        messages=[
            Message(role="user", content="read a"),
            Message(role="assistant", content="", invocations=[ToolInvocation(id="c0", name="x")]),
            Message(role="tool", content="ok", tool_call_id="c0", tool_name="x"),
        ],
        tools=[{"name": "read_file", "description": "Read", "parameters": {"type": "object"}}],
    )

    response = await provider.complete(request)

    assert response.invocations[0].name == "read_file"
    assert response.invocations[0].arguments == {"file_path": "a"}
    assert response.usage["total_tokens"] == 15
    assert seen["tools"][0]["function"]["name"] == "read_file"
    assert seen["messages"][1]["tool_calls"][0]["function"]["name"] == "x"
    assert seen["messages"][2]["tool_name"] == "x"


@pytest.mark.asyncio
async def test_bad_request_is_transport_rejection():
    provider = _provider(lambda request: httpx.Response(400, text="model does not support tools"))

    with pytest.raises(TransportRejectedError) as exc_info:
        await provider.complete(ModelRequest(messages=[Message(role="user", content="hi")]))
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_server_error_is_api_error():
    provider = _provider(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(LLMAPIError) as exc_info:
        await provider.complete(ModelRequest(messages=[Message(role="user", content="hi")]))
    assert not isinstance(exc_info.value, TransportRejectedError)


@pytest.mark.asyncio
async def test_streaming_yields_fragments_and_finish():
    lines = [
        {"message": {"content": "Hel"}, "done": False},
        {"message": {"content": "lo"}, "done": False},
        {"message": {"content": "", "tool_calls": [{"function": {"name": "a", "arguments": {"x": 1}}}]}, "done": False},
        {"message": {"content": ""}, "done": True},
    ]
    body = "\n".join(json.dumps(line) for line in lines) + "\n"
    provider = _provider(lambda request: httpx.Response(200, text=body))

    fragments = [
        fragment
        async for fragment in provider.complete_streaming(
            ModelRequest(messages=[Message(role="user", content="hi")])
        )
    ]

    assert "".join(f.text or "" for f in fragments) == "Hello"
    assert [(f.name, json.loads(f.arguments)) for f in fragments if f.name] == [("a", {"x": 1})]
    assert fragments[-1].finished is True
