#!/usr/bin/env python3
"""
Inference engine contracts and the LiteLLM-backed implementation.

The gateway only needs two things from an engine: run a prompt while
streaming text chunks (optionally letting the model call named functions),
and embed a piece of text.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import litellm

logger = logging.getLogger(__name__)

TextChunkCallback = Callable[[str], Awaitable[None]]
ToolHandler = Callable[[Dict[str, Any]], Awaitable[str]]


class InferenceAborted(Exception):
    """Inference stopped because the gateway is shutting down"""


class EngineNotConfiguredError(Exception):
    """The requested capability has no backing model in this deployment"""


@dataclass
class ToolFunction:
    """A callable the model may invoke during inference"""
    name: str
    description: str
    handler: ToolHandler
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    async def __call__(self, arguments: Dict[str, Any]) -> str:
        return await self.handler(arguments)

    def to_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class InferenceEngine:
    """Run a prompt and stream text chunks back through on_text_chunk"""

    async def infer(
        self,
        prompt: str,
        *,
        temperature: Optional[float] = None,
        stop_text: Optional[List[str]] = None,
        on_text_chunk: Optional[TextChunkCallback] = None,
        functions: Optional[Dict[str, ToolFunction]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class EmbeddingEngine:
    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LiteLLMEngine(InferenceEngine, EmbeddingEngine):
    """Streaming chat completion + embeddings through LiteLLM.

    Tool calls requested by the model are executed with the bound
    ToolFunctions and fed back, up to max_tool_rounds completions per prompt.
    """

    def __init__(
        self,
        model: str,
        embedding_model: Optional[str] = None,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        max_tool_rounds: int = 8,
    ):
        self.model = model
        self.embedding_model = embedding_model
        self.api_base = api_base
        self.api_key = api_key
        self.max_tool_rounds = max_tool_rounds
        self._closing = False
        self._closed_event = asyncio.Event()

    def _provider_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.api_base:
            params["api_base"] = self.api_base
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    def _check_cancelled(self, cancel_event: Optional[asyncio.Event]) -> None:
        if self._closing or (cancel_event is not None and cancel_event.is_set()):
            raise InferenceAborted("closing! no more inference allowed")

    async def _until_cancelled(self, awaitable, cancel_event: Optional[asyncio.Event]) -> Any:
        """Await the model unless shutdown arrives first; then abandon it and raise InferenceAborted"""
        work = asyncio.ensure_future(awaitable)
        stops = [asyncio.ensure_future(self._closed_event.wait())]
        if cancel_event is not None:
            stops.append(asyncio.ensure_future(cancel_event.wait()))
        try:
            await asyncio.wait([work, *stops], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in stops:
                task.cancel()
            if not work.done():
                work.cancel()
        self._check_cancelled(cancel_event)
        return work.result()

    async def infer(
        self,
        prompt: str,
        *,
        temperature: Optional[float] = None,
        stop_text: Optional[List[str]] = None,
        on_text_chunk: Optional[TextChunkCallback] = None,
        functions: Optional[Dict[str, ToolFunction]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        self._check_cancelled(cancel_event)
        functions = functions or {}
        messages: List[Dict[str, Any]] = [{"role": "user", "content": prompt}]
        tools = [fn.to_openai_tool() for fn in functions.values()] or None
        full_text = ""

        for round_no in range(self.max_tool_rounds):
            params: Dict[str, Any] = {
                "model": self.model,
                "messages": messages,
                "stream": True,
                **self._provider_params(),
            }
            if temperature is not None:
                params["temperature"] = temperature
            if stop_text:
                params["stop"] = stop_text
            if tools:
                params["tools"] = tools

            stream = await self._until_cancelled(litellm.acompletion(**params), cancel_event)
            chunks = []
            iterator = stream.__aiter__()
            while True:
                try:
                    chunk = await self._until_cancelled(iterator.__anext__(), cancel_event)
                except StopAsyncIteration:
                    break
                chunks.append(chunk)
                if not chunk.choices:
                    continue
                content = getattr(chunk.choices[0].delta, "content", None)
                if content:
                    full_text += content
                    if on_text_chunk is not None:
                        await on_text_chunk(content)

            self._check_cancelled(cancel_event)
            if not chunks:
                break
            message = litellm.stream_chunk_builder(chunks, messages=messages).choices[0].message
            tool_calls = getattr(message, "tool_calls", None) or []
            if not tool_calls:
                return full_text

            logger.debug(f"[llm] round {round_no}: model requested {len(tool_calls)} tool call(s)")
            messages.append({
                "role": "assistant",
                "content": message.content,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.function.name, "arguments": tc.function.arguments},
                    }
                    for tc in tool_calls
                ],
            })
            for tc in tool_calls:
                self._check_cancelled(cancel_event)
                result = await self._run_tool(functions, tc.function.name, tc.function.arguments)
                messages.append({"role": "tool", "tool_call_id": tc.id, "content": result})
        else:
            logger.warning(f"[llm] Stopped after {self.max_tool_rounds} tool rounds")

        return full_text

    async def _run_tool(self, functions: Dict[str, ToolFunction], name: str, raw_arguments: Optional[str]) -> str:
        fn = functions.get(name)
        if fn is None:
            logger.warning(f"[llm] Model called unknown tool {name}")
            return f"Error: Tool {name} not found"
        try:
            arguments = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError as e:
            return f"Error: invalid JSON arguments for {name}: {e}"
        try:
            return await fn(arguments)
        except Exception as e:
            logger.warning(f"[llm] Tool {name} failed: {e}")
            return f"Error: {e}"

    async def embed(self, text: str) -> List[float]:
        if self._closing:
            raise InferenceAborted("closing! no more inference allowed")
        if not self.embedding_model:
            raise EngineNotConfiguredError("No embedding model configured")
        response = await litellm.aembedding(model=self.embedding_model, input=[text], **self._provider_params())
        item = response.data[0]
        vector = item["embedding"] if isinstance(item, dict) else item.embedding
        return list(vector)

    async def close(self) -> None:
        self._closing = True
        self._closed_event.set()
        logger.info(f"[llm] closed model: {self.model}")
