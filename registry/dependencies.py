"""
FastAPI dependencies: component lookup and admin authentication.

Components are built once in ``create_app`` and stored on ``app.state``;
routes reach them only through these functions.
"""

import json
import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import Request

from registry.devices import DeviceRegistry
from registry.errors import InvalidArgument, ServiceUnavailable, Unauthorized
from registry.identity import DeviceIdentityStore
from registry.protocol import PollHandler
from registry.queue import CommandQueue

logger = logging.getLogger("registry.auth")


def get_identity(request: Request) -> DeviceIdentityStore:
    return request.app.state.identity


def get_devices(request: Request) -> DeviceRegistry:
    return request.app.state.devices


def get_queue(request: Request) -> CommandQueue:
    return request.app.state.queue


def get_poll_handler(request: Request) -> PollHandler:
    return request.app.state.poll_handler


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


async def read_json_object(request: Request) -> Dict[str, Any]:
    """Parse the request body as a JSON object or raise InvalidArgument."""
    body = await request.body()
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except ValueError:
        raise InvalidArgument("Invalid JSON payload")
    if not isinstance(payload, dict):
        raise InvalidArgument("JSON body must be an object")
    return payload


async def require_admin(request: Request) -> str:
    """Require ``Authorization: Bearer <ADMIN_TOKEN>``."""
    expected = request.app.state.settings.admin_token
    if not expected:
        raise ServiceUnavailable("ADMIN_TOKEN is not configured")

    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise Unauthorized("Missing bearer token")
    token = auth.split(" ", 1)[1].strip()
    if not token or not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected admin token from %s", client_ip(request))
        raise Unauthorized("Invalid admin token")
    return "admin"
