import json

import httpx
import pytest

from querypilot.ai_feature.llm import (
    AnthropicModelClient,
    ModelClientError,
    ModelToolRequest,
    TranscriptTurn,
    to_anthropic_messages,
)


def client_with(handler) -> AnthropicModelClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicModelClient(
        api_key="sk-test",
        model="claude-test",
        api_url="https://api.example.com/v1/messages",
        http_client=http,
    )


def test_tool_results_become_user_blocks_and_merge():
    transcript = [
        TranscriptTurn(role="user", content="count users"),
        TranscriptTurn(
            role="assistant",
            content="Checking the schema.",
            tool_requests=[
                ModelToolRequest(id="toolu_1", name="get_table_schema", arguments={}),
                ModelToolRequest(id="toolu_2", name="validate_query", arguments={"sql": "SELECT 1"}),
            ],
        ),
        TranscriptTurn(role="tool", content='{"success": true}', tool_call_id="toolu_1"),
        TranscriptTurn(role="tool", content='{"success": false}', tool_call_id="toolu_2", is_error=True),
    ]

    messages = to_anthropic_messages(transcript)

    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert [block["type"] for block in messages[1]["content"]] == ["text", "tool_use", "tool_use"]
    results = messages[2]["content"]
    assert [block["tool_use_id"] for block in results] == ["toolu_1", "toolu_2"]
    assert results[1]["is_error"] is True


def test_assistant_turn_without_text_has_only_tool_use():
    transcript = [
        TranscriptTurn(
            role="assistant",
            tool_requests=[ModelToolRequest(id="toolu_1", name="get_table_schema")],
        )
    ]

    assert to_anthropic_messages(transcript)[0]["content"] == [
        {"type": "tool_use", "id": "toolu_1", "name": "get_table_schema", "input": {}}
    ]


@pytest.mark.asyncio
async def test_next_turn_parses_text_and_tool_use():
    seen = {}

    def handler(request: httpx.Request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "text", "text": "Let me look."},
                    {"type": "tool_use", "id": "toolu_1", "name": "get_table_schema", "input": {"filter": "user"}},
                ],
                "stop_reason": "tool_use",
            },
        )

    client = client_with(handler)
    tools = [{"name": "get_table_schema", "description": "d", "input_schema": {"type": "object"}}]

    turn = await client.next_turn("system prompt", [TranscriptTurn(role="user", content="hi")], tools)

    assert turn.text == "Let me look."
    assert turn.stop_reason == "tool_use"
    assert turn.tool_requests[0].arguments == {"filter": "user"}
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["body"]["model"] == "claude-test"
    assert seen["body"]["system"] == "system prompt"
    assert seen["body"]["tools"] == tools


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, message_start, retryable",
    [
        (401, "Invalid API key", False),
        (429, "Rate limit exceeded", True),
        (529, "Anthropic API is overloaded", True),
        (400, "Model API error: bad request", False),
    ],
)
async def test_http_errors_become_friendly_messages(status_code, message_start, retryable):
    def handler(request):
        return httpx.Response(status_code, json={"error": {"type": "x", "message": "bad request"}})

    client = client_with(handler)

    with pytest.raises(ModelClientError) as caught:
        await client.next_turn("s", [TranscriptTurn(role="user", content="hi")], [])

    assert caught.value.message.startswith(message_start)
    assert caught.value.is_retryable is retryable


@pytest.mark.asyncio
async def test_transport_failure_raises_model_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = client_with(handler)

    with pytest.raises(ModelClientError) as caught:
        await client.next_turn("s", [TranscriptTurn(role="user", content="hi")], [])

    assert caught.value.error_code == "unavailable"


@pytest.mark.asyncio
async def test_aclose_leaves_borrowed_client_open():
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    client = AnthropicModelClient(api_key="k", http_client=http)

    await client.aclose()

    assert http.is_closed is False
    await http.aclose()
