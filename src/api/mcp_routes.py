"""JSON-RPC tool endpoint so agent runtimes can place and follow calls."""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from api.dependencies import get_call_controller
from calls.controller import CallController
from calls.errors import CallServiceError, UnknownFunction

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["mcp"])

PROTOCOL_VERSION = "2024-11-05"
SERVER_INFO = {"name": "call-bridge-mcp", "version": "0.1.0"}

METHOD_NOT_FOUND = -32601
SERVER_ERROR = -32000


class JsonRpcRequest(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: str | int | None = None
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class CallArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str = Field(description="Phone number to call (E.164 format)")
    from_: str = Field(alias="from", description="Phone number to call from (E.164 format)")
    goal: str = Field(description="The objective of the call")
    context: dict[str, Any] | None = Field(default=None, description="Additional context for the call")
    instructions: str | None = Field(default=None, description="Specific instructions for the AI agent")
    timeout_sec: int = Field(default=180, gt=0, alias="timeoutSec", description="Maximum call duration in seconds")


class CallIdArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    call_id: str = Field(alias="callId", description="Call ID")


def _tool(name: str, description: str, args_model: type[BaseModel]) -> dict[str, Any]:
    schema = args_model.model_json_schema(by_alias=True)
    schema.pop("title", None)
    return {"name": name, "description": description, "inputSchema": schema}


TOOLS = [
    _tool("telephony.call", "Place an outbound phone call using OpenAI Realtime and Twilio", CallArgs),
    _tool("telephony.status", "Check the status of an ongoing or completed call", CallIdArgs),
    _tool("telephony.cancel", "Cancel an ongoing call", CallIdArgs),
    _tool("telephony.transcript", "Get the transcript of a completed call", CallIdArgs),
]


async def _call_tool(controller: CallController, name: str, arguments: dict[str, Any]) -> Any:
    if name == "telephony.call":
        args = CallArgs.model_validate(arguments)
        call_id = await controller.place_call(
            to=args.to,
            from_=args.from_,
            goal=args.goal,
            context=args.context,
            instructions=args.instructions,
            timeout_seconds=args.timeout_sec,
        )
        return {"callId": call_id}
    if name == "telephony.status":
        args = CallIdArgs.model_validate(arguments)
        status = await controller.get_status(args.call_id)
        return status or {"state": "unknown", "error": "Call not found"}
    if name == "telephony.cancel":
        args = CallIdArgs.model_validate(arguments)
        result = await controller.cancel_call(args.call_id)
        return {"success": result.success, "message": result.message}
    if name == "telephony.transcript":
        args = CallIdArgs.model_validate(arguments)
        transcript = await controller.get_transcript(args.call_id)
        return transcript or {"error": "Call not found"}
    raise UnknownFunction(f"Unknown tool: {name}")


@router.post("/mcp")
async def mcp_endpoint(
    request: JsonRpcRequest,
    controller: CallController = Depends(get_call_controller),
) -> dict[str, Any]:
    response: dict[str, Any] = {"jsonrpc": "2.0", "id": request.id}

    try:
        if request.method == "initialize":
            response["result"] = {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": SERVER_INFO,
            }
        elif request.method == "tools/list":
            response["result"] = {"tools": TOOLS}
        elif request.method == "tools/call":
            payload = await _call_tool(
                controller,
                str(request.params.get("name") or ""),
                request.params.get("arguments") or {},
            )
            response["result"] = {"content": [{"type": "text", "text": json.dumps(payload)}]}
        else:
            response["error"] = {"code": METHOD_NOT_FOUND, "message": "Method not found"}
    except ValidationError as exc:
        response["error"] = {
            "code": SERVER_ERROR,
            "message": "Invalid tool arguments",
            "data": exc.errors(include_url=False, include_context=False),
        }
    except CallServiceError as exc:
        LOGGER.warning("MCP %s failed: %s", request.method, exc.detail)
        response["error"] = {"code": SERVER_ERROR, "message": exc.detail}

    return response
