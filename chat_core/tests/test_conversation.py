import asyncio
import json

import pytest
from pydantic import BaseModel

from chat_core.config.model_config import ModelConfiguration
from chat_core.domain.events import Content, Done, StreamError
from chat_core.domain.exceptions import BackendError, ChatError, ParsingError, ValidationError
from chat_core.domain.models import ChatMessage, FunctionCall
from chat_core.functions.definitions import FunctionDescriptor
from chat_core.infrastructure.storage.history_store import HistoryStore
from chat_core.providers.chatgpt_client import ChatGPT


STREAM_OK = [
    b'data: {"choices":[{"index":0,"delta":{"role":"assistant"}}]}\n\ndata: {"choi',
    b'ces":[{"index":0,"delta":{"content":"Hel"}}]}\n\n',
    b'data: {"choices":[{"index":0,"delta":{"content":"lo"}}]}\n\ndata: {"choices":[{"index":0,"delta":{}}]}\n\n',
    b"data: [DONE]\n\n",
]


def completion(content="ok", function_call=None):
    message = {"role": "assistant", "content": content}
    if function_call:
        message["content"] = None
        message["function_call"] = function_call
    return 200, {
        "id": "chatcmpl-1",
        "created": 1700000000,
        "model": "gpt-3.5-turbo",
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
    }


class FakeTransport:
    """内存传输：按顺序返回预置响应，并记录请求载荷。"""

    def __init__(self, responses=None, streams=None):
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.payloads = []

    async def post_json(self, url, payload):
        self.payloads.append(payload)
        return self.responses.pop(0)

    async def stream(self, url, payload):
        self.payloads.append(payload)
        for chunk in self.streams.pop(0):
            yield chunk


def make_client(tmp_path, **kw):
    transport = FakeTransport(**kw)
    client = ChatGPT(config=ModelConfiguration(), transport=transport, store=HistoryStore(root=tmp_path))
    return client, transport


async def _collect(agen):
    result = []
    async for event in agen:
        result.append(event)
    return result


def test_new_conversation_starts_with_system_message(tmp_path):
    client, _ = make_client(tmp_path)
    conv = client.new_conversation_directed("be brief")
    assert conv.history == (ChatMessage(role="system", content="be brief"),)
    assert client.new_conversation().history[0].role == "system"


@pytest.mark.asyncio
async def test_send_appends_user_and_assistant(tmp_path):
    client, transport = make_client(tmp_path, responses=[completion("hello")])
    conv = client.new_conversation_directed("sys")
    resp = await conv.send("hi")
    assert resp.message().content == "hello"
    assert resp.usage.total_tokens == 4
    assert [m.role for m in conv.history] == ["system", "user", "assistant"]
    assert conv.last_message.content == "hello"
    sent = transport.payloads[0]
    assert sent["stream"] is False
    assert [m["role"] for m in sent["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_send_backend_error_leaves_history_unchanged(tmp_path):
    error = (401, {"error": {"message": "Incorrect API key", "type": "invalid_request_error"}})
    client, _ = make_client(tmp_path, responses=[error])
    conv = client.new_conversation_directed("sys")
    before = len(conv.history)
    with pytest.raises(BackendError) as exc_info:
        await conv.send("hi")
    assert exc_info.value.message == "Incorrect API key"
    assert exc_info.value.error_type == "invalid_request_error"
    assert len(conv.history) == before


@pytest.mark.asyncio
async def test_send_malformed_completion_is_typed_error(tmp_path):
    body = {"choices": [{"index": None, "message": {"role": "assistant", "content": "x"}}], "usage": {}}
    client, _ = make_client(tmp_path, responses=[(200, body)])
    conv = client.new_conversation_directed("sys")
    with pytest.raises(ChatError):
        await conv.send("hi")
    assert len(conv.history) == 1


@pytest.mark.asyncio
async def test_send_streaming_appends_turn_on_done(tmp_path):
    client, transport = make_client(tmp_path, streams=[STREAM_OK])
    conv = client.new_conversation_directed("sys")
    events = await _collect(conv.send_streaming("hi"))
    assert [e for e in events if isinstance(e, Content)] == [
        Content(delta="Hel", response_index=0),
        Content(delta="lo", response_index=0),
    ]
    assert events[-1] == Done()
    assert conv.history[-2:] == (
        ChatMessage(role="user", content="hi"),
        ChatMessage(role="assistant", content="Hello"),
    )
    assert transport.payloads[0]["stream"] is True


@pytest.mark.asyncio
async def test_send_streaming_history_updated_before_done_is_seen(tmp_path):
    client, _ = make_client(tmp_path, streams=[STREAM_OK])
    conv = client.new_conversation_directed("sys")
    async for event in conv.send_streaming("hi"):
        if isinstance(event, Done):
            assert conv.last_message.content == "Hello"


@pytest.mark.asyncio
async def test_send_streaming_empty_stream_keeps_history(tmp_path):
    client, _ = make_client(tmp_path, streams=[[]])
    conv = client.new_conversation_directed("sys")
    events = await _collect(conv.send_streaming("hi"))
    assert events == []
    assert len(conv.history) == 1


@pytest.mark.asyncio
async def test_send_streaming_abandoned_keeps_history(tmp_path):
    client, _ = make_client(tmp_path, streams=[STREAM_OK])
    conv = client.new_conversation_directed("sys")
    agen = conv.send_streaming("hi")
    await agen.__anext__()
    await agen.aclose()
    assert len(conv.history) == 1


@pytest.mark.asyncio
async def test_send_streaming_with_error_discards_turn(tmp_path):
    chunks = [b"data: {broken}\n\n", b'data: {"choices":[{"index":0,"delta":{"content":"x"}}]}\n\n', b"data: [DONE]\n\n"]
    client, _ = make_client(tmp_path, streams=[chunks])
    conv = client.new_conversation_directed("sys")
    events = await _collect(conv.send_streaming("hi"))
    assert isinstance(events[0], StreamError)
    assert events[-1] == Done()
    assert len(conv.history) == 1


class WeatherArgs(BaseModel):
    city: str


WEATHER = FunctionDescriptor(name="get_weather", description="Current weather", parameters=WeatherArgs)


@pytest.mark.asyncio
async def test_send_with_functions_surfaces_function_call(tmp_path):
    call = {"name": "get_weather", "arguments": '{"city": "Paris"}'}
    client, transport = make_client(tmp_path, responses=[completion(function_call=call)])
    conv = client.new_conversation_directed("sys")
    resp = await conv.send_with_functions("weather?", [WEATHER])
    reply = resp.message()
    assert reply.function_call == FunctionCall(name="get_weather", arguments='{"city": "Paris"}')
    assert reply.content == ""
    assert transport.payloads[0]["functions"][0]["name"] == "get_weather"
    assert transport.payloads[0]["functions"][0]["parameters"]["properties"]["city"]["type"] == "string"
    assert conv.last_message == reply


@pytest.mark.asyncio
async def test_send_with_functions_invokes_registered_handler(tmp_path):
    call = {"name": "get_weather", "arguments": '{"city": "Paris"}'}
    client, transport = make_client(
        tmp_path,
        responses=[completion(function_call=call), completion("It is sunny in Paris")],
    )
    conv = client.new_conversation_directed("sys")
    seen = []

    async def handler(args):
        seen.append(args.city)
        return {"city": args.city, "sky": "sunny"}

    conv.add_function(WEATHER, handler)
    resp = await conv.send_with_functions("weather?")
    assert resp.message().content == "It is sunny in Paris"
    assert seen == ["Paris"]
    roles = [m.role for m in conv.history]
    assert roles == ["system", "user", "assistant", "function", "assistant"]
    function_msg = conv.history[3]
    assert json.loads(function_msg.content) == {"city": "Paris", "sky": "sunny"}
    second = transport.payloads[1]["messages"]
    assert second[-1] == {"role": "function", "content": function_msg.content, "name": "get_weather"}


@pytest.mark.asyncio
async def test_send_with_functions_bad_arguments_keep_history(tmp_path):
    call = {"name": "get_weather", "arguments": '{"town": 1}'}
    client, _ = make_client(tmp_path, responses=[completion(function_call=call)])
    conv = client.new_conversation_directed("sys")
    conv.add_function(WEATHER, lambda args: "never")
    with pytest.raises(ParsingError):
        await conv.send_with_functions("weather?")
    assert len(conv.history) == 1


@pytest.mark.asyncio
async def test_send_with_functions_requires_descriptors(tmp_path):
    client, _ = make_client(tmp_path)
    conv = client.new_conversation_directed("sys")
    with pytest.raises(ValidationError):
        await conv.send_with_functions("weather?")


@pytest.mark.asyncio
async def test_always_send_functions_routes_send(tmp_path):
    client, transport = make_client(tmp_path, responses=[completion("plain")])
    conv = client.new_conversation_directed("sys")
    conv.add_function(WEATHER, lambda args: "sunny")
    conv.always_send_functions = True
    await conv.send("hello")
    assert "functions" in transport.payloads[0]


@pytest.mark.asyncio
async def test_concurrent_sends_append_whole_turns(tmp_path):
    client, _ = make_client(tmp_path, responses=[completion("a"), completion("b")])
    conv = client.new_conversation_directed("sys")
    await asyncio.gather(conv.send("q1"), conv.send("q2"))
    history = conv.history[1:]
    assert len(history) == 4
    assert [m.role for m in history] == ["user", "assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_history_persists_and_restores(tmp_path):
    client, _ = make_client(tmp_path, responses=[completion("hello")])
    conv = client.new_conversation_directed("sys")
    await conv.send("hi")
    conv.save_history_json("conv.json")
    conv.save_history_binary("conv.bin")
    assert client.restore_conversation_json("conv.json").history == conv.history
    assert client.restore_conversation_binary("conv.bin").history == conv.history
