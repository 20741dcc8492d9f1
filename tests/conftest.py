import json
import socket
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from cirra_mcp_client.config import CirraConfig

BASE_URL = "https://mcp.test"


class StubServer:
    """Routes httpx requests to per-path handlers and records what was sent."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def route(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method, path)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, text="no stub route")
        return handler(request)

    def sent(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


def form(request: httpx.Request) -> Dict[str, str]:
    from urllib.parse import parse_qsl

    return dict(parse_qsl(request.content.decode()))


def body(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content)


def jsonrpc_handler(results: Dict[str, Any], session_id: Optional[str] = "sess-1", sse: bool = False):
    """Answer MCP messages by method name; notifications get 202."""

    def handler(request: httpx.Request) -> httpx.Response:
        message = body(request)
        headers = {"Mcp-Session-Id": session_id} if session_id else {}
        if "id" not in message:
            return httpx.Response(202, headers=headers)
        payload = {"jsonrpc": "2.0", "id": message["id"]}
        payload.update(results.get(message["method"], {"result": {}}))
        if sse:
            headers["Content-Type"] = "text/event-stream"
            return httpx.Response(200, headers=headers, text=f"event: message\ndata: {json.dumps(payload)}\n\n")
        return httpx.Response(200, headers=headers, json=payload)

    return handler


@pytest.fixture
def stub() -> StubServer:
    return StubServer()


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("localhost", 0))
        return s.getsockname()[1]


@pytest.fixture
def config(tmp_path: Path, free_port: int) -> CirraConfig:
    return CirraConfig(
        base_url=BASE_URL,
        callback_port=free_port,
        token_path=tmp_path / "mcporter" / "cirra-tokens.json",
        authorization_timeout=10,
    )


@pytest.fixture
def write_tokens(config: CirraConfig) -> Callable[..., Path]:
    """Write a token file at the configured path."""

    def writer(**overrides: Any) -> Path:
        data = {
            "server": "cirra",
            "url": BASE_URL,
            "client_id": "abc",
            "access_token": "AT1",
            "refresh_token": "RT1",
            "token_type": "Bearer",
            "expires_at": None,
            "scope": "mcp",
        }
        data.update(overrides)
        config.token_path.parent.mkdir(parents=True, exist_ok=True)
        config.token_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return config.token_path

    return writer
