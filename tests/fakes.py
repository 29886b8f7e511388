#!/usr/bin/env python3
"""Fakes and builders shared by the gateway tests"""

import asyncio
from typing import Any, Dict, List, Optional

from mcp.types import CallToolResult, ListToolsResult, TextContent, Tool

from llm_gateway.engine import EmbeddingEngine, InferenceAborted, InferenceEngine
from llm_gateway.transport import UnauthorizedError
from llm_gateway.users import DownstreamServerConfig, User


def server_config(client_id: str = "client-a", server_url: str = "https://tools-a.example.com/mcp") -> DownstreamServerConfig:
    return DownstreamServerConfig(
        client_name=f"{client_id} gateway",
        server_url=server_url,
        auth_server_url="https://auth.example.com",
        redirect_uris=["http://localhost:9999/callback"],
        scope="tools:read tools:call",
        client_id=client_id,
        client_secret=f"{client_id}-secret",
    )


def make_user(user_id: str = "alice", token: str = "token-alice-0001", servers: int = 1) -> User:
    clients = [
        server_config(f"{user_id}-client-{i}", f"https://tools-{i}.example.com/mcp")
        for i in range(servers)
    ]
    return User(user_id=user_id, bearer_token=token, mcp_clients=clients)


def make_tool(name: str, description: str = "") -> Tool:
    return Tool(name=name, description=description or f"{name} tool", inputSchema={"type": "object", "properties": {}})


def text_result(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


class FakeSession:
    """Stands in for mcp.ClientSession once a transport is connected"""

    def __init__(self, tools: Optional[List[Tool]] = None, results: Optional[Dict[str, Any]] = None):
        self.tools = tools or []
        self.results = results or {}
        self.calls: List[tuple] = []

    async def list_tools(self) -> ListToolsResult:
        return ListToolsResult(tools=list(self.tools))

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> CallToolResult:
        self.calls.append((name, arguments))
        result = self.results.get(name, text_result(f"{name} ok"))
        if isinstance(result, Exception):
            raise result
        return result


class FakeTransport:
    """Scripted StreamableHttpTransport.

    `script` is consumed one entry per connect(): "unauthorized" raises
    UnauthorizedError, an Exception instance is raised as-is, anything else
    (or an exhausted script) connects.
    """

    def __init__(self, oauth, session: Optional[FakeSession] = None, script: Optional[list] = None, log: Optional[list] = None):
        self.oauth = oauth
        self.server_url = oauth.server_url
        self._session = session or FakeSession()
        self.script = list(script or [])
        self.log = log if log is not None else []
        self.session: Optional[FakeSession] = None
        self.auth_codes: List[str] = []
        self.closed = 0

    async def connect(self):
        self.log.append(("connect", self.server_url))
        step = self.script.pop(0) if self.script else None
        if step == "unauthorized":
            raise UnauthorizedError(f"Authorization required for {self.server_url}")
        if isinstance(step, Exception):
            raise step
        self.session = self._session
        return self.session

    async def finish_auth(self, code: str) -> None:
        self.log.append(("finish_auth", self.server_url, code))
        self.auth_codes.append(code)

    async def close(self) -> None:
        self.closed += 1
        self.session = None


class FakeRendezvous:
    def __init__(self, code: str = "auth-code-123", log: Optional[list] = None):
        self.code = code
        self.log = log if log is not None else []
        self.closed = 0

    async def wait_for_authorization_code(self, timeout: Optional[float] = None) -> str:
        self.log.append(("wait", self.code))
        return self.code

    async def close(self) -> None:
        self.closed += 1
        self.log.append(("rendezvous_closed",))


class FakeEngine(InferenceEngine, EmbeddingEngine):
    """Replays canned chunks; optionally calls one bound function first"""

    def __init__(self, chunks: Optional[List[str]] = None, call: Optional[tuple] = None,
                 error: Optional[Exception] = None, embedding: Optional[List[float]] = None,
                 embed_delay: float = 0.0, block_until_cancelled: bool = False,
                 ignore_cancel: bool = False):
        self.chunks = chunks if chunks is not None else ["Hello", " world"]
        self.call = call
        self.error = error
        self.embedding = embedding if embedding is not None else [0.1, 0.2, 0.3]
        self.embed_delay = embed_delay
        self.block_until_cancelled = block_until_cancelled
        self.ignore_cancel = ignore_cancel
        self.cancelled = False
        self.requests: List[dict] = []
        self.started = asyncio.Event()
        self.closed = 0

    async def infer(self, prompt, *, temperature=None, stop_text=None, on_text_chunk=None,
                    functions=None, cancel_event=None) -> str:
        self.requests.append({
            "prompt": prompt,
            "temperature": temperature,
            "stop_text": stop_text,
            "functions": functions,
        })
        text = ""
        if self.call is not None:
            name, arguments = self.call
            tool_output = await functions[name](arguments)
            self.chunks = self.chunks + [tool_output]
        for chunk in self.chunks:
            text += chunk
            if on_text_chunk is not None:
                await on_text_chunk(chunk)
        self.started.set()
        if self.ignore_cancel:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.block_until_cancelled:
            await cancel_event.wait()
            raise InferenceAborted("closing! no more inference allowed")
        if self.error is not None:
            raise self.error
        return text

    async def embed(self, text: str) -> List[float]:
        if self.embed_delay:
            await asyncio.sleep(self.embed_delay)
        if self.error is not None:
            raise self.error
        return self.embedding

    async def close(self) -> None:
        self.closed += 1

