from __future__ import annotations

import json

CALL_ARGUMENTS = {
    "to": "+15551230000",
    "from": "+15550000001",
    "goal": "confirm appointment",
    "timeoutSec": 60,
}


def _rpc(client, method: str, params: dict | None = None, request_id: int = 1) -> dict:
    resp = client.post(
        "/mcp",
        json={"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}},
    )
    assert resp.status_code == 200
    return resp.json()


def _tool(client, name: str, arguments: dict) -> dict:
    body = _rpc(client, "tools/call", {"name": name, "arguments": arguments})
    assert "error" not in body, body
    (content,) = body["result"]["content"]
    assert content["type"] == "text"
    return json.loads(content["text"])


def test_initialize_reports_tool_capability(client):
    body = _rpc(client, "initialize", request_id=7)

    assert body["id"] == 7
    assert body["result"]["capabilities"] == {"tools": {}}
    assert body["result"]["serverInfo"]["name"] == "call-bridge-mcp"


def test_tools_list_describes_telephony_tools(client):
    tools = _rpc(client, "tools/list")["result"]["tools"]

    by_name = {tool["name"]: tool for tool in tools}
    assert set(by_name) == {
        "telephony.call",
        "telephony.status",
        "telephony.cancel",
        "telephony.transcript",
    }
    call_schema = by_name["telephony.call"]["inputSchema"]
    assert set(call_schema["required"]) == {"to", "from", "goal"}
    assert "timeoutSec" in call_schema["properties"]
    assert by_name["telephony.status"]["inputSchema"]["required"] == ["callId"]


def test_call_status_cancel_and_transcript_tools(client, provider):
    call_id = _tool(client, "telephony.call", CALL_ARGUMENTS)["callId"]

    status = _tool(client, "telephony.status", {"callId": call_id})
    canceled = _tool(client, "telephony.cancel", {"callId": call_id})
    transcript = _tool(client, "telephony.transcript", {"callId": call_id})

    assert status["state"] == "dialing"
    assert provider.originated[0]["timeout_seconds"] == 60
    assert canceled == {"success": True, "message": "Call canceled successfully"}
    assert transcript["state"] == "canceled"
    assert transcript["error"] == "No transcript available yet"


def test_status_of_unknown_call(client):
    assert _tool(client, "telephony.status", {"callId": "missing"}) == {
        "state": "unknown",
        "error": "Call not found",
    }


def test_invalid_tool_arguments_are_a_server_error(client):
    body = _rpc(client, "tools/call", {"name": "telephony.call", "arguments": {"to": "+1555"}})

    assert body["error"]["code"] == -32000
    assert body["error"]["message"] == "Invalid tool arguments"
    missing = {error["loc"][0] for error in body["error"]["data"]}
    assert missing == {"from", "goal"}


def test_unknown_tool_and_method(client):
    tool = _rpc(client, "tools/call", {"name": "telephony.fax", "arguments": {}})
    method = _rpc(client, "resources/list")

    assert tool["error"] == {"code": -32000, "message": "Unknown tool: telephony.fax"}
    assert method["error"] == {"code": -32601, "message": "Method not found"}
