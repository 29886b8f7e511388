#!/usr/bin/env python3
"""
Streamable HTTP transport for one OAuth-protected MCP server.

Wraps the MCP SDK's streamablehttp_client + ClientSession and turns missing or
rejected credentials into UnauthorizedError so the caller can run the
authorization-code dance and retry.

The SDK contexts are anyio task groups, which must be entered and exited by
the same task. Each connection therefore gets an owner task that opens the
contexts, parks until close() asks it to stop, then exits them itself.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Optional

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from .oauth_session import OAuthSession

logger = logging.getLogger(__name__)


class UnauthorizedError(Exception):
    """The server needs (new) OAuth credentials before it will talk to us"""


def is_unauthorized_failure(exc: BaseException) -> bool:
    """True if exc, or anything grouped inside it, is a 401 rejection"""
    if isinstance(exc, UnauthorizedError):
        return True
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 401:
        return True
    return any(is_unauthorized_failure(inner) for inner in getattr(exc, "exceptions", ()))


def _unwrap_single(exc: Exception) -> Exception:
    inner = getattr(exc, "exceptions", None)
    while inner and len(inner) == 1 and isinstance(inner[0], Exception):
        exc = inner[0]
        inner = getattr(exc, "exceptions", None)
    return exc


class StreamableHttpTransport:
    """One MCP protocol session over streamable HTTP, authenticated by an OAuthSession"""

    def __init__(self, oauth: OAuthSession, timeout: float = 30.0):
        self.oauth = oauth
        self.server_url = oauth.server_url
        self.timeout = timeout
        self.session: Optional[ClientSession] = None
        self._owner: Optional[asyncio.Task] = None
        self._close_requested: Optional[asyncio.Event] = None

    async def connect(self) -> ClientSession:
        """Open the stream and run the MCP initialize handshake.

        Without tokens no request is sent: a new authorization attempt is
        started and UnauthorizedError raised straight away. A 401 during the
        handshake invalidates the tokens, starts a new authorization and also
        raises UnauthorizedError.
        """
        if self.session is not None:
            return self.session

        if self.oauth.tokens() is None:
            await self.oauth.start_authorization()
            raise UnauthorizedError(f"Authorization required for {self.server_url}")

        self.oauth.unauthorized.clear()
        ready = asyncio.get_running_loop().create_future()
        close_requested = asyncio.Event()
        owner = asyncio.ensure_future(self._own_connection(ready, close_requested))
        try:
            session = await asyncio.shield(ready)
        except UnauthorizedError:
            logger.info(f"[mcp] {self.server_url} rejected our token, starting a new authorization")
            self.oauth.invalidate_tokens()
            await self.oauth.start_authorization()
            raise
        except asyncio.CancelledError:
            close_requested.set()
            owner.cancel()
            await asyncio.gather(owner, return_exceptions=True)
            raise

        self._owner = owner
        self._close_requested = close_requested
        self.session = session
        return session

    async def _own_connection(self, ready: asyncio.Future, close_requested: asyncio.Event) -> None:
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream, _ = await stack.enter_async_context(
                    streamablehttp_client(self.server_url, auth=self.oauth, timeout=self.timeout)
                )
                session = await stack.enter_async_context(
                    ClientSession(read_stream, write_stream, read_timeout_seconds=timedelta(seconds=self.timeout))
                )
                await self._initialize(session)
                if not ready.done():
                    ready.set_result(session)
                await close_requested.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            if not ready.done():
                if self.oauth.unauthorized.is_set() or is_unauthorized_failure(e):
                    ready.set_exception(UnauthorizedError(f"Token rejected by {self.server_url}"))
                else:
                    ready.set_exception(_unwrap_single(e))
            elif close_requested.is_set():
                logger.debug(f"[mcp] Connection cleanup error for {self.server_url} (ignored): {e}")
            else:
                logger.warning(f"[mcp] Connection to {self.server_url} lost: {_unwrap_single(e)}")
        finally:
            if self._owner is asyncio.current_task():
                self._owner = None
                self._close_requested = None
                self.session = None

    async def _initialize(self, session: ClientSession) -> None:
        # A 401 never reaches the pending initialize request, so race it against the auth signal
        init_task = asyncio.ensure_future(session.initialize())
        denied_task = asyncio.ensure_future(self.oauth.unauthorized.wait())
        try:
            done, _ = await asyncio.wait({init_task, denied_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (init_task, denied_task):
                if not task.done():
                    task.cancel()

        if denied_task not in done:
            init_task.result()
            return
        raise UnauthorizedError(f"Token rejected by {self.server_url}")

    async def finish_auth(self, authorization_code: str) -> None:
        await self.oauth.exchange_authorization_code(authorization_code)

    async def close(self) -> None:
        """Ask the owner task to exit the SDK contexts and wait for it"""
        owner = self._owner
        close_requested = self._close_requested
        self._owner = None
        self._close_requested = None
        self.session = None
        if owner is None:
            return
        close_requested.set()
        try:
            await owner
        except Exception as e:
            logger.debug(f"[mcp] Connection cleanup error for {self.server_url} (ignored): {e}")
