#!/usr/bin/env python3
"""
Inference Gateway - HTTP front door

Authenticates callers by bearer token, binds each caller's MCP tools into the
inference call and streams output back as data: frames.

Routes:
    GET  /           liveness, no auth
    POST /infer      {prompt, temperature?, stopText?, tools?} -> text/event-stream
    POST /embedding  {text} -> {embedding: [...]}
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

import httpx
from aiohttp import web
from mcp.types import CallToolResult, TextContent, Tool

from .config import GatewayConfig
from .engine import EmbeddingEngine, InferenceEngine, ToolFunction
from .http_tools import HttpToolSchema, ToolSchemaError, build_http_tool_functions, parse_tool_schemas
from .streaming import data_frame, eof_frame, error_frame
from .tool_manager import ToolConnectionManager
from .users import User

logger = logging.getLogger(__name__)

PROTECTED_PATHS = {"/infer", "/embedding"}
EMPTY_TOOL_RESULT = "The tool returned no content."

ManagerFactory = Callable[[User, asyncio.Event], ToolConnectionManager]


class RequestValidationError(ValueError):
    """Request body failed validation; message goes back to the caller as a 400"""


@dataclass
class InferRequest:
    prompt: str
    temperature: Optional[float] = None
    stop_text: Optional[List[str]] = None
    tools: List[HttpToolSchema] = field(default_factory=list)


@dataclass
class UserRuntimeEntry:
    """Everything the gateway holds for one bearer token"""
    user: User
    manager: ToolConnectionManager
    functions: Dict[str, ToolFunction] = field(default_factory=dict)


def _mask_token(token: Optional[str]) -> str:
    if not token:
        return "<none>"
    return f"{token[:4]}..." if len(token) > 8 else "***"


def _validate_options(body: Dict[str, Any]) -> Dict[str, Any]:
    temperature = body.get("temperature")
    if temperature is not None:
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)) or not 0 <= temperature <= 2:
            raise RequestValidationError("temperature must be a number between 0 and 2")

    stop_text = body.get("stopText")
    if stop_text is not None:
        if not isinstance(stop_text, list) or len(stop_text) == 0 or not all(isinstance(s, str) for s in stop_text):
            raise RequestValidationError("stopText must be a non-empty array")

    return {"temperature": temperature, "stop_text": stop_text}


def validate_infer_request(body: Any) -> InferRequest:
    if not isinstance(body, dict):
        raise RequestValidationError("request body must be a JSON object")
    prompt = body.get("prompt")
    if not prompt or not isinstance(prompt, str):
        raise RequestValidationError("prompt required")
    options = _validate_options(body)

    tools: List[HttpToolSchema] = []
    if body.get("tools") is not None:
        try:
            tools = parse_tool_schemas(body["tools"])
        except ToolSchemaError as e:
            raise RequestValidationError(str(e)) from e
    return InferRequest(prompt=prompt, tools=tools, **options)


def _bearer_token(header: str) -> Optional[str]:
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def validate_embedding_request(body: Any) -> str:
    if not isinstance(body, dict):
        raise RequestValidationError("request body must be a JSON object")
    text = body.get("text")
    if not text or not isinstance(text, str):
        raise RequestValidationError("text required")
    _validate_options(body)
    return text


def format_tool_result(result: CallToolResult) -> str:
    """Flatten an MCP tool result into the text handed back to the model"""
    parts = []
    for item in result.content or []:
        if isinstance(item, TextContent):
            parts.append(item.text)
        else:
            parts.append(json.dumps(item.model_dump(mode="json", exclude_none=True)))
    text = "\n".join(p for p in parts if p)

    structured = getattr(result, "structuredContent", None)
    if not text and structured:
        text = json.dumps(structured)
    if not text:
        text = EMPTY_TOOL_RESULT
    if result.isError:
        text = f"Error: {text}"
    return text


def compile_tool_functions(manager: ToolConnectionManager, tools: List[Tool]) -> Dict[str, ToolFunction]:
    """Turn discovered MCP tools into model-callable functions routed via the manager"""
    routes = manager.routing_table
    functions: Dict[str, ToolFunction] = {}
    for tool in tools:
        if tool.name in functions or tool.name not in routes:
            continue

        async def handler(arguments: Dict[str, Any], _name: str = tool.name) -> str:
            result = await manager.call_tool(_name, arguments)
            return format_tool_result(result)

        functions[tool.name] = ToolFunction(
            name=tool.name,
            description=tool.description or "",
            handler=handler,
            parameters=tool.inputSchema or {"type": "object", "properties": {}},
        )
    return functions


class InferenceGateway:
    """aiohttp application serving /infer and /embedding for token-authenticated users"""

    def __init__(
        self,
        config: GatewayConfig,
        users: List[User],
        engine: InferenceEngine,
        embedding_engine: Optional[EmbeddingEngine] = None,
        manager_factory: Optional[ManagerFactory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._users = users
        self._engine = engine
        self._embedding_engine = embedding_engine
        self._manager_factory = manager_factory or self._default_manager_factory
        # shared by request-supplied HTTP tools
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=config.http_tool_timeout)

        self.shutdown_event = asyncio.Event()
        self._entries: Dict[str, UserRuntimeEntry] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._runner: Optional[web.AppRunner] = None
        self._closing = False
        self._closed = False

        self.app = self._create_app()

    def _default_manager_factory(self, user: User, shutdown_event: asyncio.Event) -> ToolConnectionManager:
        return ToolConnectionManager(
            user,
            shutdown_event,
            callback_port=self.config.callback_port,
            mcp_timeout=self.config.mcp_timeout,
            callback_timeout=self.config.callback_timeout,
        )

    @property
    def entries(self) -> Dict[str, UserRuntimeEntry]:
        return self._entries

    # ----- startup -----

    async def init(self) -> 'InferenceGateway':
        """Build the token table: connect each user's MCP servers and compile their tools"""
        for user in self._users:
            if user.bearer_token in self._entries:
                logger.error(f"[gateway] Duplicate bearer token for user {user.user_id}, skipping")
                continue
            try:
                entry = await self._build_entry(user)
            except Exception as e:
                logger.error(f"[gateway] Startup failed for user {user.user_id}: {e}", exc_info=True)
                continue
            self._entries[user.bearer_token] = entry
            logger.info(f"[gateway] user {user.user_id} ready with {len(entry.functions)} tool(s)")
        return self

    async def _build_entry(self, user: User) -> UserRuntimeEntry:
        manager = self._manager_factory(user, self.shutdown_event)
        try:
            await manager.connect_all()
            result = await manager.list_all_tools()
        except BaseException:
            await manager.close()
            raise
        return UserRuntimeEntry(user=user, manager=manager, functions=compile_tool_functions(manager, result.tools))

    def _create_app(self) -> web.Application:
        app = web.Application(middlewares=[self._request_logger, self._auth_middleware])
        app.router.add_get('/', self.root_handler)
        app.router.add_post('/infer', self.infer_handler)
        app.router.add_post('/embedding', self.embedding_handler)
        app['gateway'] = self
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info(f"[gateway] started on http://{self.config.host}:{self.config.port}")

    async def serve_forever(self) -> None:
        await self.shutdown_event.wait()
        await self.close()

    def request_shutdown(self) -> None:
        if not self.shutdown_event.is_set():
            logger.info("[gateway] shutdown requested")
            self.shutdown_event.set()

    # ----- middleware -----

    @web.middleware
    async def _request_logger(self, request: web.Request, handler):
        start = time.perf_counter()
        try:
            resp = await handler(request)
        except Exception as e:
            logger.info(f"HTTP {request.method} {request.path} status=ERR error={type(e).__name__} ms={(time.perf_counter()-start)*1000:.1f}")
            raise
        logger.info(f"HTTP {request.method} {request.path} status={resp.status} ms={(time.perf_counter()-start)*1000:.1f}")
        return resp

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.path not in PROTECTED_PATHS:
            return await handler(request)

        token = _bearer_token(request.headers.get("Authorization", ""))
        entry = self._entries.get(token) if token else None
        if entry is None:
            logger.warning(f"[gateway] Unauthorized request to {request.path} (token {_mask_token(token)})")
            return web.json_response({"error": "Unauthorized"}, status=401)
        if self._closing or self._closed:
            return web.json_response({"error": "Server is shutting down"}, status=503)

        request["user_entry"] = entry
        return await handler(request)

    # ----- handlers -----

    async def root_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def infer_handler(self, request: web.Request) -> web.StreamResponse:
        entry: UserRuntimeEntry = request["user_entry"]
        logger.info(f"[gateway] /infer called by {entry.user.user_id}")

        try:
            body = await request.json()
            params = validate_infer_request(body)
        except json.JSONDecodeError:
            return web.json_response({"error": "invalid JSON body"}, status=400)
        except RequestValidationError as e:
            return web.json_response({"error": str(e)}, status=400)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)
        logger.debug(f"[gateway] infer request: temperature={params.temperature}, stopText={params.stop_text}, prompt={params.prompt!r}")

        async def on_text_chunk(chunk: str) -> None:
            await response.write(data_frame(chunk))

        task = asyncio.current_task()
        self._in_flight.add(task)
        try:
            result = await self._engine.infer(
                params.prompt,
                temperature=params.temperature,
                stop_text=params.stop_text,
                on_text_chunk=on_text_chunk,
                functions=self._bind_functions(entry, params.tools),
                cancel_event=self.shutdown_event,
            )
            await response.write(eof_frame())
            logger.debug(f"[gateway] infer result: {result!r}")
        except ConnectionResetError:
            logger.info(f"[gateway] client of {entry.user.user_id} disconnected mid-stream")
        except Exception as e:
            logger.error(f"[gateway] infer error: {e}", exc_info=True)
            try:
                await response.write(error_frame(str(e)))
            except ConnectionResetError:
                logger.info(f"[gateway] client of {entry.user.user_id} gone before error frame")
        finally:
            self._in_flight.discard(task)
        return response

    def _bind_functions(self, entry: UserRuntimeEntry, tools: List[HttpToolSchema]) -> Optional[Dict[str, ToolFunction]]:
        """The caller's MCP functions plus this request's HTTP tools; MCP names win on a clash"""
        if not self.config.tools_enabled:
            return None
        functions = dict(entry.functions)
        for name, fn in build_http_tool_functions(tools, self._http_client).items():
            if name in functions:
                logger.warning(f"[gateway] Request tool {name} shadowed by an MCP tool of {entry.user.user_id}")
                continue
            functions[name] = fn
        return functions

    async def embedding_handler(self, request: web.Request) -> web.Response:
        entry: UserRuntimeEntry = request["user_entry"]
        logger.info(f"[gateway] /embedding called by {entry.user.user_id}")

        try:
            body = await request.json()
            text = validate_embedding_request(body)
        except json.JSONDecodeError:
            return web.json_response({"error": "invalid JSON body"}, status=400)
        except RequestValidationError as e:
            return web.json_response({"error": str(e)}, status=400)

        if self._embedding_engine is None:
            return web.json_response({"error": "embedding engine not configured"}, status=500)

        try:
            embedding = await asyncio.wait_for(self._embedding_engine.embed(text), timeout=self.config.embed_timeout)
        except asyncio.TimeoutError:
            logger.error(f"[gateway] embedding timed out after {self.config.embed_timeout}s")
            return web.json_response({"error": f"embedding timed out after {self.config.embed_timeout}s"}, status=500)
        except Exception as e:
            logger.error(f"[gateway] embedding error: {e}", exc_info=True)
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"embedding": list(embedding)})

    # ----- shutdown -----

    async def _drain_in_flight(self) -> None:
        """Give aborted /infer streams time to send their error frame, then cancel the rest"""
        pending = {t for t in self._in_flight if not t.done()}
        if not pending:
            return
        logger.info(f"[gateway] waiting for {len(pending)} in-flight inference request(s)")
        _, stragglers = await asyncio.wait(pending, timeout=self.config.shutdown_grace)
        for task in stragglers:
            logger.warning("[gateway] cancelling inference request that ignored shutdown")
            task.cancel()
        if stragglers:
            await asyncio.wait(stragglers, timeout=self.config.shutdown_grace)

    async def close(self) -> None:
        """Abort in-flight inference, close every user's MCP connections, stop the listener.

        Repeated calls, including ones made while a close is running, are no-ops.
        """
        if self._closing or self._closed:
            return
        self._closing = True
        logger.info("[gateway] closing ...")
        self.shutdown_event.set()

        try:
            await self._engine.close()
            if self._embedding_engine is not None and self._embedding_engine is not self._engine:
                await self._embedding_engine.close()

            await self._drain_in_flight()

            managers = [e.manager for e in self._entries.values()]
            results = await asyncio.gather(*(m.close() for m in managers), return_exceptions=True)
            for manager, result in zip(managers, results):
                if isinstance(result, BaseException):
                    logger.warning(f"[gateway] Error closing tools for {manager.user_id}: {result!r}")
            if self._owns_http_client:
                await self._http_client.aclose()
        finally:
            if self._runner is not None:
                # stops accepting connections, then waits for in-flight handlers to drain
                await self._runner.cleanup()
                self._runner = None
            self._entries.clear()
            self._closed = True
            self._closing = False
        logger.info("[gateway] closed")
