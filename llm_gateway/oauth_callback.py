#!/usr/bin/env python3
"""
OAuth callback rendezvous.

A short-lived local aiohttp listener that catches the authorization server's
redirect and hands the code (or error) to exactly one waiting connect attempt.
One instance per authorization attempt; it is not a queue.
"""

import asyncio
import logging
from typing import Optional

from aiohttp import web

from .oauth_session import AuthorizationError

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_PORT = 8090


class RendezvousBusyError(Exception):
    """A second waiter tried to register while one is outstanding"""


class CallbackRendezvous:
    """Capture point for a single OAuth authorization-code redirect"""

    def __init__(self, callback_port: int = DEFAULT_CALLBACK_PORT, host: str = "localhost"):
        self.host = host
        self.callback_port = callback_port
        self._code: Optional[str] = None
        self._error: Optional[str] = None
        self._waiter: Optional[asyncio.Future] = None
        self._runner: Optional[web.AppRunner] = None
        self._closed = False

        self.app = web.Application()
        self.app.router.add_get('/', self._root_handler)
        self.app.router.add_get('/callback', self._callback_handler)
        self.app.router.add_route('*', '/{tail:.*}', self._not_found_handler)

    @classmethod
    async def create_and_start(cls, callback_port: int = DEFAULT_CALLBACK_PORT) -> 'CallbackRendezvous':
        rendezvous = cls(callback_port)
        await rendezvous.start()
        return rendezvous

    async def start(self) -> None:
        runner = web.AppRunner(self.app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.callback_port)
        await site.start()
        self._runner = runner

        # port 0 means "pick one"; report what the OS actually bound
        if self.callback_port == 0 and runner.addresses:
            self.callback_port = runner.addresses[0][1]
        logger.info(f"[oauth] Callback server started on http://{self.host}:{self.callback_port}")

    @property
    def callback_url(self) -> str:
        return f"http://localhost:{self.callback_port}/callback"

    @property
    def resolved(self) -> bool:
        return self._code is not None or self._error is not None

    # ----- routes -----

    async def _root_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"message": "OAuth Callback Server is running"})

    async def _callback_handler(self, request: web.Request) -> web.Response:
        error = request.query.get('error') or None
        code = request.query.get('code') or None

        if error:
            message = f"Authorization failed: {error}"
            logger.error(f"[oauth] {message}")
            response = web.json_response({"error": message}, status=400)
        elif code:
            logger.info(f"[oauth] Authorization code received: {code[:10]}...")
            response = web.json_response({"message": "Authorization successful"})
        else:
            error = "No authorization code provided"
            logger.error(f"[oauth] {error}")
            response = web.json_response({"error": error}, status=400)

        self._capture(code if not error else None, error)
        return response

    async def _not_found_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"error": "Not found"}, status=404)

    # ----- waiting -----

    async def wait_for_authorization_code(self, timeout: Optional[float] = None) -> str:
        """Return the captured code, waiting for the redirect if needed.

        Raises AuthorizationError for a captured error, RendezvousBusyError if
        another waiter is already registered, asyncio.TimeoutError on timeout.
        """
        if self._code is not None:
            return self._code
        if self._error is not None:
            raise AuthorizationError(self._error)
        if self._closed:
            raise AuthorizationError("callback server closed")
        if self._waiter is not None and not self._waiter.done():
            raise RendezvousBusyError("An authorization wait is already in progress")

        self._waiter = asyncio.get_running_loop().create_future()
        try:
            return await asyncio.wait_for(asyncio.shield(self._waiter), timeout=timeout)
        finally:
            if self._waiter is not None and not self._waiter.done():
                self._waiter.cancel()
            self._waiter = None

    def _capture(self, code: Optional[str], error: Optional[str]) -> None:
        if self.resolved:
            logger.warning("[oauth] Ignoring repeated callback, outcome already captured")
            return
        self._code = code
        self._error = error
        waiter = self._waiter
        if waiter is None or waiter.done():
            return
        if code:
            waiter.set_result(code)
        else:
            waiter.set_exception(AuthorizationError(error or "No authorization code nor error received"))

    async def close(self) -> None:
        """Release the listener; safe to call repeatedly or before any callback"""
        if self._closed:
            return
        self._closed = True
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(AuthorizationError("callback server closed"))
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info(f"[oauth] Callback server closed on http://{self.host}:{self.callback_port}")
