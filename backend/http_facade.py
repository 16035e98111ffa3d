"""
HTTP Facade

Starlette application exposing the relay to callers that do not speak the
WebSocket protocol:

- GET  /health    - liveness probe
- GET  /status    - whether any plugin is connected, and which
- POST /command   - run one command on a plugin and return its result
- GET  /templates - static template catalog
- GET  /templates/{template_id} - one full template
"""

import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from portfolio_templates import get_template_by_id, get_template_list
from relay_core import CommandError, CommandTimeoutError, RelayCore, TransportError

logger = logging.getLogger(__name__)


class CommandRequest(BaseModel):
    """Body of POST /command."""

    model_config = ConfigDict(populate_by_name=True)

    command: str = Field(min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)
    connection_id: Optional[int] = Field(default=None, alias="connectionId")
    timeout: Optional[float] = Field(default=None, gt=0)


def _error(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse({"error": message, "code": code}, status_code=status_code)


def create_app(relay: RelayCore, *, operation_timeout: Optional[float] = None) -> Starlette:
    """Create the facade application bound to one relay.

    Args:
        relay: The relay whose connections back every command
        operation_timeout: Default timeout in seconds for POST /command
            (default: the relay's command_timeout)

    Returns:
        Configured Starlette application
    """

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    async def status(request: Request) -> JSONResponse:
        active = relay.has_active_connections()
        return JSONResponse({
            "status": "connected" if active else "disconnected",
            "connections": relay.active_connection_ids(),
            "message": "Connected to Figma" if active else "No active Figma connections",
        })

    async def command(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error(400, "Invalid command format", "invalid_request")

        try:
            payload = CommandRequest.model_validate(body)
        except ValidationError as e:
            return _error(400, f"Invalid command format: {e.errors()[0]['msg']}", "invalid_request")

        connection_id = payload.connection_id
        if connection_id is None:
            connection_id = relay.first_connection_id()
        if connection_id is None:
            return _error(503, "No active Figma connections", "no_connections")

        timeout = payload.timeout or operation_timeout
        logger.info(f"Executing command: {payload.command} on connection {connection_id}")
        logger.debug(json.dumps(payload.params, indent=2))

        try:
            result = await relay.execute_command(payload.command, payload.params, connection_id, timeout)
        except TransportError as e:
            return _error(503, str(e), "transport_error")
        except CommandTimeoutError as e:
            logger.error(f"API error: {e}")
            return _error(500, str(e), "timeout")
        except CommandError as e:
            logger.error(f"API error: {e}")
            return JSONResponse(
                {"error": str(e), "code": "command_error", "details": e.details},
                status_code=500,
            )

        return JSONResponse({"success": True, "result": result})

    async def templates(request: Request) -> JSONResponse:
        return JSONResponse({"templates": get_template_list()})

    async def template(request: Request) -> JSONResponse:
        found = get_template_by_id(request.path_params["template_id"])
        if found is None:
            return _error(404, "Template not found", "not_found")
        return JSONResponse(found)

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/status", status, methods=["GET"]),
        Route("/command", command, methods=["POST"]),
        Route("/templates", templates, methods=["GET"]),
        Route("/templates/{template_id}", template, methods=["GET"]),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    return Starlette(routes=routes, middleware=middleware)
