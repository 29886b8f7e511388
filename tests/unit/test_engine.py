#!/usr/bin/env python3
"""LiteLLMEngine streaming and tool loop, with litellm calls replaced"""

import asyncio
import copy
from types import SimpleNamespace

import litellm
import pytest

from llm_gateway.engine import EngineNotConfiguredError, InferenceAborted, LiteLLMEngine, ToolFunction


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class ScriptedLiteLLM:
    """Each round: a list of streamed text pieces plus the tool calls the rebuilt message carries"""

    def __init__(self, rounds):
        self.rounds = list(rounds)
        self.requests = []
        self._current = None

    async def acompletion(self, **params):
        self.requests.append({**params, "messages": copy.deepcopy(params["messages"])})
        self._current = self.rounds.pop(0)
        pieces, _ = self._current

        async def stream():
            for piece in pieces:
                yield _chunk(piece)

        return stream()

    def stream_chunk_builder(self, chunks, messages=None):
        _, tool_calls = self._current
        content = "".join(c.choices[0].delta.content for c in chunks)
        message = SimpleNamespace(content=content, tool_calls=tool_calls)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture
def scripted(monkeypatch):
    def install(rounds):
        fake = ScriptedLiteLLM(rounds)
        monkeypatch.setattr(litellm, "acompletion", fake.acompletion)
        monkeypatch.setattr(litellm, "stream_chunk_builder", fake.stream_chunk_builder)
        return fake
    return install


async def test_streams_text_to_callback(scripted):
    fake = scripted([(["Hel", "lo"], None)])
    engine = LiteLLMEngine("gpt-4o-mini", api_base="http://llm.local")
    chunks = []

    async def on_chunk(chunk):
        chunks.append(chunk)

    text = await engine.infer("hi", temperature=0.3, stop_text=["END"], on_text_chunk=on_chunk)

    assert text == "Hello"
    assert chunks == ["Hel", "lo"]
    request = fake.requests[0]
    assert request["stream"] is True
    assert request["temperature"] == 0.3
    assert request["stop"] == ["END"]
    assert request["api_base"] == "http://llm.local"
    assert "tools" not in request


async def test_runs_requested_tools_and_continues(scripted):
    fake = scripted([
        ([""], [_tool_call("call-1", "search", '{"q": "otters"}')]),
        (["Otters are great"], None),
    ])
    received = []

    async def search(arguments):
        received.append(arguments)
        return "otters: 13 species"

    functions = {"search": ToolFunction("search", "Search the web", search)}
    engine = LiteLLMEngine("gpt-4o-mini")

    text = await engine.infer("tell me about otters", functions=functions)

    assert text == "Otters are great"
    assert received == [{"q": "otters"}]
    assert fake.requests[0]["tools"][0]["function"]["name"] == "search"
    follow_up = fake.requests[1]["messages"]
    assert follow_up[-1] == {"role": "tool", "tool_call_id": "call-1", "content": "otters: 13 species"}
    assert follow_up[-2]["tool_calls"][0]["function"]["name"] == "search"


async def test_unknown_or_failing_tools_report_errors_to_model(scripted):
    fake = scripted([
        ([""], [_tool_call("c1", "missing", "{}"), _tool_call("c2", "flaky", "{}")]),
        (["done"], None),
    ])

    async def flaky(arguments):
        raise RuntimeError("upstream 502")

    engine = LiteLLMEngine("gpt-4o-mini")
    await engine.infer("go", functions={"flaky": ToolFunction("flaky", "", flaky)})

    tool_messages = [m for m in fake.requests[1]["messages"] if m["role"] == "tool"]
    assert tool_messages[0]["content"] == "Error: Tool missing not found"
    assert tool_messages[1]["content"] == "Error: upstream 502"


async def test_cancel_event_aborts_stream(scripted):
    scripted([(["one", "two"], None)])
    engine = LiteLLMEngine("gpt-4o-mini")
    cancel = asyncio.Event()

    async def on_chunk(chunk):
        cancel.set()

    with pytest.raises(InferenceAborted):
        await engine.infer("hi", on_text_chunk=on_chunk, cancel_event=cancel)


async def test_shutdown_interrupts_a_stalled_stream(monkeypatch):
    first_chunk = asyncio.Event()

    async def acompletion(**params):
        async def stream():
            yield _chunk("thinking")
            first_chunk.set()
            await asyncio.sleep(5)
            yield _chunk("too late")
        return stream()

    monkeypatch.setattr(litellm, "acompletion", acompletion)
    engine = LiteLLMEngine("gpt-4o-mini")
    cancel = asyncio.Event()
    seen = []

    async def on_chunk(chunk):
        seen.append(chunk)

    running = asyncio.ensure_future(engine.infer("hi", on_text_chunk=on_chunk, cancel_event=cancel))
    await asyncio.wait_for(first_chunk.wait(), timeout=2)
    cancel.set()

    with pytest.raises(InferenceAborted):
        await asyncio.wait_for(running, timeout=1)
    assert seen == ["thinking"]


async def test_close_interrupts_a_pending_completion(monkeypatch):
    called = asyncio.Event()

    async def acompletion(**params):
        called.set()
        await asyncio.sleep(5)

    monkeypatch.setattr(litellm, "acompletion", acompletion)
    engine = LiteLLMEngine("gpt-4o-mini")

    running = asyncio.ensure_future(engine.infer("hi", cancel_event=asyncio.Event()))
    await asyncio.wait_for(called.wait(), timeout=2)
    await engine.close()

    with pytest.raises(InferenceAborted):
        await asyncio.wait_for(running, timeout=1)


async def test_cancelled_empty_stream_still_aborts(monkeypatch):
    cancel = asyncio.Event()

    async def acompletion(**params):
        async def stream():
            cancel.set()
            return
            yield
        return stream()

    monkeypatch.setattr(litellm, "acompletion", acompletion)
    engine = LiteLLMEngine("gpt-4o-mini")

    with pytest.raises(InferenceAborted):
        await engine.infer("hi", cancel_event=cancel)


async def test_closed_engine_refuses_work():
    engine = LiteLLMEngine("gpt-4o-mini", embedding_model="text-embedding-3-small")
    await engine.close()

    with pytest.raises(InferenceAborted):
        await engine.infer("hi")
    with pytest.raises(InferenceAborted):
        await engine.embed("hi")


async def test_embed(monkeypatch):
    async def aembedding(model, input, **kwargs):
        assert model == "text-embedding-3-small"
        assert input == ["hello"]
        return SimpleNamespace(data=[{"embedding": [0.1, 0.2]}])

    monkeypatch.setattr(litellm, "aembedding", aembedding)
    engine = LiteLLMEngine("gpt-4o-mini", embedding_model="text-embedding-3-small")

    assert await engine.embed("hello") == [0.1, 0.2]


async def test_embed_without_model():
    with pytest.raises(EngineNotConfiguredError):
        await LiteLLMEngine("gpt-4o-mini").embed("hello")
