"""
api/routes/mcp.py -- The authenticated MCP endpoint.

Routes:
  POST /mcp -- JSON-RPC 2.0 over HTTP

Authentication happens entirely in the get_mcp_context dependency (API key or
OAuth access token); the handler only ever sees a resolved AuthContext.

Tool dispatch is pluggable: app.state.mcp_handler is any callable
(message, context) -> response dict. The built-in handler answers the
protocol-level methods (initialize, ping) and reports every other method as
not found; the tool server replaces it at startup.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from auth.dependencies import get_mcp_context
from auth.models import AuthContext

logger = logging.getLogger("skillmap.api.mcp")

SERVER_NAME = "team-skillmap"
SERVER_VERSION = "1.0.0"
PROTOCOL_VERSION = "2024-11-05"

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601

McpHandler = Callable[[dict, AuthContext], Awaitable[dict]]

router = APIRouter()


def rpc_result(request_id: Any, result: dict) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def rpc_error(request_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


async def builtin_handler(message: dict, context: AuthContext) -> dict:
    """Answer initialize and ping; everything else is METHOD_NOT_FOUND."""
    request_id = message.get("id")
    method = message.get("method")
    if method == "initialize":
        return rpc_result(
            request_id,
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        )
    if method == "ping":
        return rpc_result(request_id, {})
    return rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")


@router.post("/mcp")
async def mcp(request: Request, context: AuthContext = Depends(get_mcp_context)) -> JSONResponse:
    """Validate the JSON-RPC envelope and hand the message to the tool handler."""
    try:
        message = json.loads(await request.body())
    except ValueError as exc:
        return JSONResponse(rpc_error(None, PARSE_ERROR, f"Parse error: {exc}"))

    request_id: Optional[Any] = message.get("id") if isinstance(message, dict) else None
    if not isinstance(message, dict) or message.get("jsonrpc") != "2.0" or not isinstance(message.get("method"), str):
        return JSONResponse(rpc_error(request_id, INVALID_REQUEST, "Invalid Request"))

    handler: McpHandler = getattr(request.app.state, "mcp_handler", builtin_handler)
    logger.info("MCP %s from user %s via %s", message["method"], context.user_id, context.method)
    return JSONResponse(await handler(message, context))
