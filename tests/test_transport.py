import json

import httpx
import pytest

from conftest import body, jsonrpc_handler
from cirra_mcp_client.errors import (
    EmptyStreamResponseError,
    McpRpcError,
    SessionInitializationError,
    TransportError,
)
from cirra_mcp_client.tokens import CredentialRecord, EnvCredentialSource, TokenManager
from cirra_mcp_client.transport import McpSession, SessionState, parse_sse_events, select_jsonrpc_response

NOW = 1_700_000_000_000


def make_session(config, stub, expires_at=None):
    record = CredentialRecord(client_id="abc", access_token="AT1", refresh_token="RT1", expires_at=expires_at)
    client = stub.client()
    tokens = TokenManager(record, EnvCredentialSource("UNUSED", {}), config, client, clock=lambda: NOW)
    return McpSession(config, tokens, client)


def test_sse_selects_the_jsonrpc_response_frame():
    text = (
        "event: message\n"
        'data: {"jsonrpc": "2.0", "method": "notifications/progress", "params": {}}\n'
        "\n"
        "data: not json at all\n"
        "\n"
        ': keep-alive\n'
        'data: {"jsonrpc": "2.0", "id": 3, "result": {"ok": true}}\n'
        "\n"
        'data: {"something": "else"}\n'
    )
    assert select_jsonrpc_response(text) == {"jsonrpc": "2.0", "id": 3, "result": {"ok": True}}


def test_sse_without_response_frame():
    text = 'data: {"jsonrpc": "2.0", "method": "ping"}\n\ndata: {"id": 1}\n\n'
    with pytest.raises(EmptyStreamResponseError):
        select_jsonrpc_response(text)


def test_sse_multiline_data_is_joined():
    assert parse_sse_events('data: {"a":\ndata: 1}\n\n') == ['{"a":\n1}']


def test_initialize_then_call_carries_session_and_ids(config, stub):
    stub.route(
        "POST",
        "/mcp",
        jsonrpc_handler({"tools/call": {"result": {"content": [{"type": "text", "text": "hit1"}]}}}),
    )
    session = make_session(config, stub)

    session.initialize()
    result = session.call_tool("search", {"query": "AI agents"})

    assert result == {"content": [{"type": "text", "text": "hit1"}]}
    assert session.state is SessionState.INITIALIZED
    init, notified, call = stub.sent("/mcp")

    assert "mcp-session-id" not in init.headers
    assert init.headers["authorization"] == "Bearer AT1"
    assert init.headers["accept"] == "application/json, text/event-stream"
    assert init.headers["content-type"] == "application/json"
    init_body = body(init)
    assert init_body["id"] == 1
    assert init_body["params"]["protocolVersion"] == "2024-11-05"
    assert init_body["params"]["clientInfo"]["name"] == "openclaw-mcp-client"
    assert init_body["params"]["capabilities"]["roots"] == {"listChanged": False}

    assert body(notified)["method"] == "notifications/initialized"
    assert "id" not in body(notified)
    assert notified.headers["mcp-session-id"] == "sess-1"

    call_body = body(call)
    assert call_body["id"] == 2
    assert call_body["params"] == {"name": "search", "arguments": {"query": "AI agents"}}
    assert call.headers["mcp-session-id"] == "sess-1"


def test_sse_responses_are_decoded(config, stub):
    stub.route("POST", "/mcp", jsonrpc_handler({"tools/list": {"result": {"tools": []}}}, sse=True))
    session = make_session(config, stub)

    assert session.list_tools() == {"tools": []}


def test_initialize_error_field(config, stub):
    stub.route("POST", "/mcp", jsonrpc_handler({"initialize": {"error": {"code": -32600, "message": "nope"}}}))
    session = make_session(config, stub)

    with pytest.raises(SessionInitializationError, match="nope"):
        session.initialize()
    assert len(stub.sent("/mcp")) == 1


def test_rpc_error_is_raised(config, stub):
    stub.route("POST", "/mcp", jsonrpc_handler({"tools/call": {"error": {"code": -32602, "message": "bad args"}}}))
    session = make_session(config, stub)

    with pytest.raises(McpRpcError) as info:
        session.call_tool("search", {})
    assert info.value.code == -32602


def test_non_2xx_is_fatal_even_with_jsonrpc_body(config, stub):
    payload = {"jsonrpc": "2.0", "id": 1, "result": {}}
    stub.route("POST", "/mcp", lambda request: httpx.Response(401, json=payload))
    session = make_session(config, stub)

    with pytest.raises(TransportError) as info:
        session.initialize()
    assert info.value.status == 401
    assert json.loads(info.value.body) == payload


def test_notification_error_field_is_ignored(config, stub):
    def handler(request):
        message = body(request)
        if "id" not in message:
            return httpx.Response(200, json={"jsonrpc": "2.0", "error": {"code": 1, "message": "ignored"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": {}})

    stub.route("POST", "/mcp", handler)
    session = make_session(config, stub)

    session.initialize()
    assert session.state is SessionState.INITIALIZED


def test_expired_token_refreshes_once_before_call(config, stub):
    stub.route("POST", "/token", lambda request: httpx.Response(200, json={"access_token": "AT2", "expires_in": 3600}))
    stub.route("POST", "/mcp", jsonrpc_handler({}))
    session = make_session(config, stub, expires_at=NOW + 30_000)

    session.initialize()
    session.list_tools()

    assert len(stub.sent("/token")) == 1
    paths = [r.url.path for r in stub.requests]
    assert paths[0] == "/token"
    assert all(r.headers["authorization"] == "Bearer AT2" for r in stub.sent("/mcp"))


def test_valid_token_is_not_refreshed(config, stub):
    stub.route("POST", "/mcp", jsonrpc_handler({}))
    session = make_session(config, stub, expires_at=NOW + 120_000)

    session.initialize()
    session.list_tools()

    assert stub.sent("/token") == []


@pytest.mark.parametrize("separator", ["\u2028", "\u2029", "\u0085", "\x0c", "\x1e"])
def test_sse_frame_keeps_unicode_line_separators(separator):
    payload = {"jsonrpc": "2.0", "id": 1, "result": {"content": [{"type": "text", "text": f"a{separator}b"}]}}
    text = "data: " + json.dumps(payload, ensure_ascii=False) + "\n\n"

    assert select_jsonrpc_response(text) == payload


def test_sse_accepts_crlf_and_cr_line_endings():
    assert parse_sse_events('data: {"a": 1}\r\n\r\ndata: 2\r\rdata: 3\n') == ['{"a": 1}', "2", "3"]
