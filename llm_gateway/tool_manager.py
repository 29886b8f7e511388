#!/usr/bin/env python3
"""
Per-user MCP tool connection manager.

Owns one OAuthSession + transport + protocol session per downstream server of
a single user. Connects them one at a time (they share the callback port),
discovers their tools and routes tool calls by name to the owning session.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mcp import ClientSession
from mcp.types import CallToolResult, ListToolsResult, Tool

from .oauth_callback import DEFAULT_CALLBACK_PORT, CallbackRendezvous
from .oauth_session import OAuthSession
from .transport import StreamableHttpTransport, UnauthorizedError
from .users import DownstreamServerConfig, User

logger = logging.getLogger(__name__)

TransportFactory = Callable[[OAuthSession], StreamableHttpTransport]
RendezvousFactory = Callable[[int], Awaitable[CallbackRendezvous]]


class ToolManagerError(Exception):
    """Tool discovery or dispatch failed for a server"""


class ToolManagerConfigError(ToolManagerError):
    """User configuration cannot produce a manager"""


class ToolNotFoundError(ToolManagerError):
    """No connected server exposes the requested tool"""


@dataclass
class ServerConnection:
    config: DownstreamServerConfig
    oauth: OAuthSession
    transport: StreamableHttpTransport

    @property
    def server_id(self) -> str:
        return self.config.client_id


@dataclass
class ToolRoute:
    """Routing table entry: which protocol session serves a tool name"""
    name: str
    server_id: str
    session: ClientSession


class ToolConnectionManager:
    """MCP connections, tool discovery and tool routing for one user"""

    def __init__(
        self,
        user: User,
        shutdown_event: asyncio.Event,
        callback_port: Optional[int] = None,
        mcp_timeout: float = 30.0,
        callback_timeout: Optional[float] = None,
        transport_factory: Optional[TransportFactory] = None,
        rendezvous_factory: Optional[RendezvousFactory] = None,
    ):
        if len(user.mcp_clients) == 0:
            raise ToolManagerConfigError("No MCP clients found")

        self.user_id = user.user_id
        self.callback_port = DEFAULT_CALLBACK_PORT if callback_port is None else callback_port
        self._shutdown_event = shutdown_event
        self._callback_timeout = callback_timeout
        self._rendezvous_factory = rendezvous_factory or CallbackRendezvous.create_and_start
        if transport_factory is None:
            def transport_factory(oauth: OAuthSession) -> StreamableHttpTransport:
                return StreamableHttpTransport(oauth, timeout=mcp_timeout)

        self._connections: Dict[str, ServerConnection] = {}
        self._routes: Dict[str, ToolRoute] = {}
        self._active_rendezvous: Optional[CallbackRendezvous] = None
        self._watcher: Optional[asyncio.Task] = None
        self._closed = False
        self._close_done = asyncio.Event()

        callback_url = self.callback_url
        for config in user.mcp_clients:
            if config.client_id in self._connections:
                raise ToolManagerConfigError(f"Duplicate MCP client id: {config.client_id}")
            # the config object is shared with the loaded user record; append only once
            if callback_url not in config.redirect_uris:
                config.redirect_uris.append(callback_url)
            oauth = OAuthSession(config, shutdown_event, redirect_url=callback_url)
            self._connections[config.client_id] = ServerConnection(config, oauth, transport_factory(oauth))

        self._watch_shutdown()

    @property
    def callback_url(self) -> str:
        return f"http://localhost:{self.callback_port}/callback"

    @property
    def server_ids(self) -> List[str]:
        return list(self._connections)

    @property
    def routing_table(self) -> Dict[str, ToolRoute]:
        return dict(self._routes)

    def connection(self, server_id: str) -> Optional[ServerConnection]:
        return self._connections.get(server_id)

    # ----- connecting -----

    async def connect_all(self) -> None:
        """Connect every configured server in order; the first hard failure aborts the rest"""
        self._watch_shutdown()
        for conn in list(self._connections.values()):
            if self._closed:
                raise ToolManagerError(f"Manager for user {self.user_id} is closed")
            await self._connect(conn)

    async def _connect(self, conn: ServerConnection) -> None:
        rendezvous = await self._rendezvous_factory(self.callback_port)
        self._active_rendezvous = rendezvous
        try:
            await self._establish_connection(conn, rendezvous)
        finally:
            self._active_rendezvous = None
            await rendezvous.close()
        logger.info(f"[mcp] connected to {conn.config.server_url}")

    async def _establish_connection(self, conn: ServerConnection, rendezvous: CallbackRendezvous) -> None:
        logger.debug(f"[mcp] establishing connection to {conn.config.server_url}")
        while True:
            try:
                await conn.transport.connect()
                logger.debug(f"[mcp] successfully connected to {conn.server_id}")
                return
            except UnauthorizedError:
                logger.info(f"[mcp] OAuth required for {conn.server_id} - waiting for authorization...")
                code = await rendezvous.wait_for_authorization_code(timeout=self._callback_timeout)
                await conn.transport.finish_auth(code)
                logger.debug(f"[mcp] Reconnecting to {conn.server_id} with authenticated transport...")
            except Exception as e:
                logger.warning(f"[mcp] Connection to {conn.server_id} failed with non-auth error: {e}")
                raise

    # ----- tools -----

    async def list_tools(self, server_id: str) -> ListToolsResult:
        conn = self._connections.get(server_id)
        if conn is None:
            raise ToolManagerError(f"Client {server_id} not found")
        session = conn.transport.session
        if session is None:
            raise ToolManagerError(f"Client {server_id} is not connected")
        try:
            return await session.list_tools()
        except Exception as e:
            logger.warning(f"[mcp] Failed to fetch tools from {server_id}: {e}")
            raise ToolManagerError(f"Failed to list tools for {server_id}: {e}") from e

    async def list_all_tools(self) -> ListToolsResult:
        """List every server's tools and rebuild the routing table.

        On a name collision the first server to register the name keeps it and
        later duplicates are dropped.
        """
        tools: List[Tool] = []
        routes: Dict[str, ToolRoute] = {}
        for server_id, conn in self._connections.items():
            result = await self.list_tools(server_id)
            tools.extend(result.tools)
            for tool in result.tools:
                if tool.name in routes:
                    logger.debug(f"[mcp] Tool {tool.name} from {server_id} shadowed by {routes[tool.name].server_id}")
                    continue
                routes[tool.name] = ToolRoute(tool.name, server_id, conn.transport.session)

        self._routes = routes
        logger.info(f"[mcp] user {self.user_id}: {len(routes)} routable tool(s) from {len(self._connections)} server(s)")
        return ListToolsResult(tools=tools)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> CallToolResult:
        route = self._routes.get(name)
        if route is None:
            raise ToolNotFoundError(f"Tool {name} not found")

        arguments = arguments or {}
        try:
            return await route.session.call_tool(name, arguments)
        except Exception as e:
            logger.warning(
                f"[mcp] Failed to call tool '{name}' on {route.server_id}, "
                f"args: {json.dumps(arguments, default=str)}: {e}"
            )
            raise

    # ----- teardown -----

    def _watch_shutdown(self) -> None:
        if self._watcher is not None or self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._watcher = loop.create_task(self._close_on_shutdown())

    async def _close_on_shutdown(self) -> None:
        await self._shutdown_event.wait()
        await self.close()

    async def close(self) -> None:
        """Close every transport and OAuth session; safe to call repeatedly.

        A call made while another close is running waits for that one to finish.
        """
        if self._closed:
            await self._close_done.wait()
            return
        self._closed = True
        logger.info(f"[mcp] closing clients for user {self.user_id}...")

        try:
            if self._active_rendezvous is not None:
                await self._active_rendezvous.close()

            results = await asyncio.gather(
                *(conn.transport.close() for conn in self._connections.values()),
                return_exceptions=True,
            )
            for conn, result in zip(self._connections.values(), results):
                if isinstance(result, BaseException):
                    logger.warning(f"[mcp] Error closing transport for {conn.server_id}: {result!r}")
        finally:
            for conn in self._connections.values():
                conn.oauth.close()
            self._routes.clear()
            self._close_done.set()

        watcher = self._watcher
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
