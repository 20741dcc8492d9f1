"""
MCP JSON-RPC over streamable HTTP.

One POST per message. The server answers either with a plain JSON-RPC
object or with a Server-Sent-Events body carrying it, depending on the
``Content-Type`` it picks.
"""

from __future__ import annotations

import re
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from mcp import types

from .config import CirraConfig
from .errors import (
    EmptyStreamResponseError,
    McpRpcError,
    SessionInitializationError,
    TransportError,
)
from .tokens import TokenManager

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
ACCEPT = "application/json, text/event-stream"
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def parse_sse_events(text: str) -> List[str]:
    """Split an SSE body into the data payload of each event."""
    events: List[str] = []
    data_lines: List[str] = []
    for line in _LINE_BREAK.split(text):
        if not line:
            if data_lines:
                events.append("\n".join(data_lines))
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name != "data":
            continue
        data_lines.append(value[1:] if value.startswith(" ") else value)
    if data_lines:
        events.append("\n".join(data_lines))
    return events


def select_jsonrpc_response(text: str) -> Dict[str, Any]:
    """Return the first SSE event that is a JSON-RPC 2.0 response."""
    for data in parse_sse_events(text):
        if not data.strip():
            continue
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping non-JSON SSE frame: {data[:80]!r}")
            continue
        if isinstance(message, dict) and message.get("jsonrpc") == "2.0" and "id" in message:
            return message
    raise EmptyStreamResponseError()


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"


class McpSession:
    """A single MCP session for the lifetime of one process.

    The session id and request counter are plain attributes; nothing is
    shared between sessions or persisted across runs.
    """

    def __init__(self, config: CirraConfig, tokens: TokenManager, client: httpx.Client) -> None:
        self.config = config
        self.tokens = tokens
        self.client = client
        self.session_id: Optional[str] = None
        self.state = SessionState.UNINITIALIZED
        self.server_info: Optional[Dict[str, Any]] = None
        self._last_id = 0

    def _next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    def _headers(self, with_session: bool) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": ACCEPT,
            "Authorization": f"Bearer {self.tokens.access_token}",
        }
        if with_session and self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    def _post(self, message: Dict[str, Any], with_session: bool = True) -> httpx.Response:
        self.tokens.ensure_fresh()
        try:
            resp = self.client.post(
                self.config.mcp_url,
                headers=self._headers(with_session),
                content=json.dumps(message),
            )
        except httpx.RequestError as e:
            raise TransportError("MCP call failed", None, str(e)) from e

        new_session_id = resp.headers.get(SESSION_HEADER)
        if new_session_id:
            self.session_id = new_session_id

        if not resp.is_success:
            raise TransportError("MCP call failed", resp.status_code, resp.text)
        return resp

    @staticmethod
    def _decode(resp: httpx.Response) -> Dict[str, Any]:
        content_type = resp.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            return select_jsonrpc_response(resp.text)
        try:
            message = resp.json()
        except ValueError as e:
            raise TransportError("MCP response is not JSON", resp.status_code, resp.text) from e
        if not isinstance(message, dict):
            raise TransportError("MCP response is not a JSON-RPC object", resp.status_code, resp.text)
        return message

    def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a JSON-RPC request and return the decoded response object."""
        message = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": params if params is not None else {},
        }
        logger.debug(f"-> {method} id={message['id']}")
        resp = self._post(message, with_session=method != "initialize")
        return self._decode(resp)

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a JSON-RPC notification; whatever the server replies is ignored."""
        message = {"jsonrpc": "2.0", "method": method, "params": params if params is not None else {}}
        logger.debug(f"-> {method} (notification)")
        self._post(message)

    def initialize(self) -> Dict[str, Any]:
        if self.state is SessionState.INITIALIZED:
            return self.server_info or {}

        params = types.InitializeRequestParams(
            protocolVersion=self.config.protocol_version,
            capabilities=types.ClientCapabilities(
                roots=types.RootsCapability(listChanged=False),
                sampling=types.SamplingCapability(),
            ),
            clientInfo=types.Implementation(
                name=self.config.client_info_name,
                version=self.config.client_info_version,
            ),
        )
        response = self.request("initialize", params.model_dump(mode="json", by_alias=True, exclude_none=True))
        if "error" in response:
            error = McpRpcError.from_response(response["error"])
            raise SessionInitializationError(f"Initialize failed: {error.message}")

        self.server_info = response.get("result") or {}
        self.notify("notifications/initialized")
        self.state = SessionState.INITIALIZED
        logger.debug(f"Session initialized sid={self.session_id or 'n/a'}")
        return self.server_info

    def _call(self, method: str, params: Dict[str, Any]) -> Any:
        if self.state is not SessionState.INITIALIZED:
            self.initialize()
        response = self.request(method, params)
        if "error" in response:
            raise McpRpcError.from_response(response["error"])
        return response.get("result")

    def list_tools(self) -> Any:
        return self._call("tools/list", {})

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        return self._call("tools/call", {"name": name, "arguments": arguments or {}})
