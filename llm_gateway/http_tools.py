#!/usr/bin/env python3
"""
Caller-supplied HTTP tools.

An /infer request may carry a "tools" array. Each entry describes a plain
HTTP endpoint the model may call during that request only: GET sends no
body, POST sends the model's arguments as JSON. Either way the JSON reply
(or the error) goes back to the model as text.
"""

import json
import logging
from typing import Any, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError

from .engine import ToolFunction

logger = logging.getLogger(__name__)


class ToolSchemaError(ValueError):
    """A request-supplied tool definition is malformed"""


class HttpToolSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    description: str = ""
    parameters: Optional[Dict[str, Any]] = None
    http_method: Literal["GET", "POST"] = Field(alias="httpMethod")
    bearer_token: Optional[str] = Field(default=None, alias="bearerToken")
    url: HttpUrl


def parse_tool_schemas(raw: Any) -> List[HttpToolSchema]:
    if not isinstance(raw, list):
        raise ToolSchemaError("tools must be an array")
    schemas = []
    for index, item in enumerate(raw):
        try:
            schemas.append(HttpToolSchema.model_validate(item))
        except ValidationError as e:
            first = e.errors()[0]
            location = "".join(f".{part}" for part in first["loc"])
            raise ToolSchemaError(f"tools[{index}]{location}: {first['msg']}") from e
    return schemas


def _reply_text(resp: httpx.Response) -> str:
    try:
        return json.dumps(resp.json())
    except ValueError:
        return resp.text


def _make_handler(schema: HttpToolSchema, client: httpx.AsyncClient):
    headers = {"Content-Type": "application/json"}
    if schema.bearer_token:
        headers["Authorization"] = f"Bearer {schema.bearer_token}"
    url = str(schema.url)

    async def handler(arguments: Dict[str, Any]) -> str:
        try:
            if schema.http_method == "GET":
                resp = await client.get(url, headers=headers)
            else:
                resp = await client.post(url, headers=headers, json=arguments)
        except httpx.HTTPError as e:
            logger.warning(f"[tools] HTTP tool {schema.name} failed: {e}")
            return json.dumps({"error": str(e) or type(e).__name__})
        logger.debug(f"[tools] HTTP tool {schema.name} -> {resp.status_code}")
        return _reply_text(resp)

    return handler


def build_http_tool_functions(schemas: List[HttpToolSchema], client: httpx.AsyncClient) -> Dict[str, ToolFunction]:
    """Bind each schema to the shared client; a repeated name keeps its first definition"""
    functions: Dict[str, ToolFunction] = {}
    for schema in schemas:
        if schema.name in functions:
            logger.debug(f"[tools] Duplicate request tool {schema.name} ignored")
            continue
        functions[schema.name] = ToolFunction(
            name=schema.name,
            description=schema.description,
            handler=_make_handler(schema, client),
            parameters=schema.parameters or {"type": "object", "properties": {}},
        )
    return functions
