#!/usr/bin/env python3
"""
Async client for a running gateway: liveness, streaming inference, embeddings.
"""

import logging
import re
from typing import Awaitable, Callable, List, Optional

import httpx

from .streaming import FrameDecoder

logger = logging.getLogger(__name__)

THINK_PREFIX = re.compile(r"^\s*<think>.*?</think>\s*", re.DOTALL)


class GatewayClientError(Exception):
    """Gateway returned an error status or an error frame"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def strip_reasoning(text: str) -> str:
    """Drop a leading <think>...</think> block some models emit before the answer"""
    return THINK_PREFIX.sub("", text, count=1)


class GatewayClient:
    def __init__(
        self,
        base_url: str,
        bearer_token: Optional[str] = None,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {bearer_token}"} if bearer_token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> 'GatewayClient':
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def ping(self) -> bool:
        try:
            resp = await self._client.get("/")
        except httpx.HTTPError as e:
            logger.debug(f"[client] gateway unreachable: {e}")
            return False
        return resp.status_code == 200

    async def infer(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        stop_text: Optional[List[str]] = None,
        on_text_chunk: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> str:
        """Stream an inference and return the full text with any reasoning prefix removed"""
        body = {"prompt": prompt}
        if temperature is not None:
            body["temperature"] = temperature
        if stop_text is not None:
            body["stopText"] = stop_text

        decoder = FrameDecoder()
        parts: List[str] = []
        async with self._client.stream("POST", "/infer", json=body) as resp:
            if resp.status_code != 200:
                await resp.aread()
                raise GatewayClientError(_error_message(resp), status=resp.status_code)

            done = False
            async for text in resp.aiter_text():
                for frame in decoder.feed(text):
                    if frame.is_error:
                        raise GatewayClientError(frame.data)
                    if frame.is_eof:
                        done = True
                        break
                    parts.append(frame.data)
                    if on_text_chunk is not None:
                        await on_text_chunk(frame.data)
                if done:
                    break

            if not done:
                for frame in decoder.flush():
                    if frame.is_error:
                        raise GatewayClientError(frame.data)
                    if not frame.is_eof:
                        parts.append(frame.data)
                logger.warning("[client] stream ended without EOF marker")

        return strip_reasoning("".join(parts))

    async def embed(self, text: str) -> List[float]:
        resp = await self._client.post("/embedding", json={"text": text})
        if resp.status_code != 200:
            raise GatewayClientError(_error_message(resp), status=resp.status_code)
        return resp.json()["embedding"]

    async def close(self) -> None:
        await self._client.aclose()


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("error") or resp.text
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
