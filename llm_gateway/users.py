#!/usr/bin/env python3
"""
User Configuration Module
Loads per-user JSON records (bearer token + downstream MCP servers)
"""

import json
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class UserConfigError(Exception):
    """Raised when user files are missing, unreadable or malformed"""


class DownstreamServerConfig(BaseModel):
    """One OAuth-protected MCP tool server a user can reach"""
    client_name: str
    server_url: str
    auth_server_url: str
    redirect_uris: List[str]
    scope: str
    client_id: str
    client_secret: str


class User(BaseModel):
    """Gateway identity: bearer token plus the user's downstream servers"""
    user_id: str
    bearer_token: str
    mcp_clients: List[DownstreamServerConfig] = []


def load_users(users_dir: Optional[str] = None) -> List[User]:
    """Read and validate every *.json user file in users_dir.

    Raises UserConfigError naming the offending file on invalid JSON or schema
    mismatch, and when the directory itself does not exist.
    """
    directory = Path(users_dir) if users_dir else Path.cwd() / "data" / "users"
    logger.debug(f"[users] Reading user files from: {directory}")

    if not directory.is_dir():
        raise UserConfigError(
            f"Users directory not found: {directory}. "
            "Please create the directory and add user JSON files."
        )

    json_files = sorted(p for p in directory.iterdir() if p.suffix == ".json")
    if not json_files:
        logger.warning("[users] No JSON files found in users directory")
        return []

    users: List[User] = []
    for path in json_files:
        try:
            with open(path, "r") as f:
                data = json.load(f)
            user = User.model_validate(data)
        except json.JSONDecodeError as e:
            raise UserConfigError(f"Invalid JSON in file {path.name}: {e}") from e
        except ValidationError as e:
            messages = ", ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise UserConfigError(f"Schema validation failed for {path.name}: {messages}") from e
        except OSError as e:
            raise UserConfigError(f"Failed to process file {path.name}: {e}") from e

        users.append(user)
        logger.debug(f"[users] Successfully validated user: {user.user_id}")

    logger.info(f"[users] Successfully loaded {len(users)} user(s)")
    return users
