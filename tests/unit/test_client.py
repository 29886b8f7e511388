#!/usr/bin/env python3
"""GatewayClient against a mocked gateway"""

import json

import httpx
import pytest

from llm_gateway.client import GatewayClient, GatewayClientError, strip_reasoning


def _streaming(*pieces: bytes, status: int = 200):
    async def body():
        for piece in pieces:
            yield piece

    return httpx.Response(status, headers={"Content-Type": "text/event-stream"}, content=body())


def _client(handler, token="token-alice-0001"):
    return GatewayClient("http://gateway.test", bearer_token=token, transport=httpx.MockTransport(handler))


async def test_infer_collects_chunks_until_eof():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return _streaming(b"data:Hello[BREAK]", b"world\n\ndata:!\n\n", b"data:[EOF]\n\ndata:ignored\n\n")

    chunks = []

    async def on_chunk(chunk):
        chunks.append(chunk)

    async with _client(handler) as client:
        text = await client.infer("hi", temperature=0.5, stop_text=["END"], on_text_chunk=on_chunk)

    assert text == "Hello\nworld!"
    assert chunks == ["Hello\nworld", "!"]
    assert seen["auth"] == "Bearer token-alice-0001"
    assert seen["body"] == {"prompt": "hi", "temperature": 0.5, "stopText": ["END"]}


async def test_infer_strips_reasoning_prefix():
    def handler(request):
        return _streaming(b"data:<think>pondering[BREAK]more</think>\n\ndata:Answer\n\ndata:[EOF]\n\n")

    async with _client(handler) as client:
        assert await client.infer("q") == "Answer"


async def test_infer_raises_on_error_frame():
    def handler(request):
        return _streaming(b"data:partial\n\n", b"event: error\ndata:model crashed\n\n")

    async with _client(handler) as client:
        with pytest.raises(GatewayClientError, match="model crashed"):
            await client.infer("q")


async def test_infer_raises_on_http_error():
    def handler(request):
        return httpx.Response(401, json={"error": "Unauthorized"})

    async with _client(handler, token="wrong") as client:
        with pytest.raises(GatewayClientError) as exc_info:
            await client.infer("q")

    assert exc_info.value.status == 401
    assert str(exc_info.value) == "Unauthorized"


async def test_embed():
    def handler(request):
        assert request.url.path == "/embedding"
        return httpx.Response(200, json={"embedding": [0.5, 0.25]})

    async with _client(handler) as client:
        assert await client.embed("text") == [0.5, 0.25]


async def test_embed_error():
    def handler(request):
        return httpx.Response(500, json={"error": "embedding timed out after 60.0s"})

    async with _client(handler) as client:
        with pytest.raises(GatewayClientError, match="timed out"):
            await client.embed("text")


async def test_ping():
    async with _client(lambda request: httpx.Response(200, json={"status": "ok"})) as client:
        assert await client.ping() is True

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(unreachable) as client:
        assert await client.ping() is False


def test_strip_reasoning_leaves_plain_text_alone():
    assert strip_reasoning("no thoughts here") == "no thoughts here"
    assert strip_reasoning("<think>x</think>\n\nanswer") == "answer"
