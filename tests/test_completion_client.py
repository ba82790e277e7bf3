import json

import httpx
import pytest

from config import AppConfig, CompletionOptions
from main import CompletionClient, CompletionError


def _client(handler, **overrides):
    config = AppConfig(api_key="sk-test", **overrides)
    return CompletionClient(config, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_posts_chat_completion_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "hello"}}]})

    messages = [{"role": "user", "content": "hi"}]
    answer = await _client(handler).create_chat_completion(messages)

    assert answer == "hello"
    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"] == {"model": "gpt-4", "messages": messages, "temperature": 0.8, "max_tokens": 1000}


@pytest.mark.asyncio
async def test_options_override_defaults():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    client = _client(handler, model="gpt-4o-mini", api_endpoint="https://llm.example/v1/chat/completions")
    await client.create_chat_completion([], CompletionOptions(max_tokens=42, temperature=0.1))

    assert bodies[0]["max_tokens"] == 42
    assert bodies[0]["temperature"] == 0.1
    assert bodies[0]["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_api_error_carries_payload():
    error_body = {"error": {"message": "Incorrect API key provided", "type": "invalid_request_error"}}

    def handler(request):
        return httpx.Response(401, json=error_body)

    with pytest.raises(CompletionError) as exc_info:
        await _client(handler).create_chat_completion([{"role": "user", "content": "hi"}])

    assert exc_info.value.payload == error_body


@pytest.mark.asyncio
async def test_transport_error_is_reported():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CompletionError) as exc_info:
        await _client(handler).create_chat_completion([])

    assert exc_info.value.payload is None


@pytest.mark.asyncio
async def test_malformed_response_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    with pytest.raises(CompletionError):
        await _client(handler).create_chat_completion([])


@pytest.mark.asyncio
async def test_non_json_response_is_an_error():
    def handler(request):
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(CompletionError):
        await _client(handler).create_chat_completion([])
