#!/usr/bin/env python3
"""
Manual OAuth flow for the Cirra AI MCP server.

Registers a dynamic client, opens the browser for consent, receives the
redirect on a local callback server, exchanges the code for tokens and
saves them to ~/.mcporter/cirra-tokens.json.

Run:
  cirra-oauth
"""

from __future__ import annotations

import sys
import json
import base64
import hashlib
import logging
import secrets
import argparse
import threading
import webbrowser
from dataclasses import dataclass
from html import escape
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from mcp.shared.auth import OAuthClientMetadata

from .config import CirraConfig
from .errors import (
    AuthorizationError,
    AuthorizationTimeoutError,
    CirraError,
    ClientRegistrationError,
    CsrfError,
    TokenExchangeError,
)
from .tokens import CredentialRecord, FileCredentialSource, now_ms

logger = logging.getLogger(__name__)

SUCCESS_PAGE = """
<html>
  <body>
    <h1>Success!</h1>
    <p>You can close this window and return to your terminal.</p>
    <script>setTimeout(() => window.close(), 1000);</script>
  </body>
</html>
"""


@dataclass(frozen=True)
class PkcePair:
    verifier: str
    challenge: str


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_pkce() -> PkcePair:
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return PkcePair(verifier=verifier, challenge=challenge)


def generate_state() -> str:
    return secrets.token_hex(16)


def register_client(client: httpx.Client, config: CirraConfig) -> Dict[str, Any]:
    """Dynamic client registration as a public client (no secret)."""
    metadata = OAuthClientMetadata(
        client_name=config.client_name,
        redirect_uris=[config.redirect_uri],
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        token_endpoint_auth_method="none",
    )
    try:
        resp = client.post(
            config.register_url,
            json=metadata.model_dump(mode="json", exclude_none=True),
        )
    except httpx.RequestError as e:
        raise ClientRegistrationError("Client registration failed", None, str(e)) from e
    if not resp.is_success:
        raise ClientRegistrationError("Client registration failed", resp.status_code, resp.text)

    try:
        data = resp.json()
    except ValueError as e:
        raise ClientRegistrationError("Client registration returned invalid JSON", resp.status_code, resp.text) from e
    if not isinstance(data, dict) or not data.get("client_id"):
        raise ClientRegistrationError("Client registration returned no client_id", resp.status_code, resp.text)
    return data


def build_authorization_url(config: CirraConfig, client_id: str, state: str, challenge: str) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": config.redirect_uri,
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    return f"{config.authorize_url}?{urlencode(params)}"


def exchange_code(
    client: httpx.Client,
    config: CirraConfig,
    code: str,
    client_id: str,
    code_verifier: str,
) -> Dict[str, Any]:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": config.redirect_uri,
        "client_id": client_id,
        "code_verifier": code_verifier,
    }
    try:
        resp = client.post(config.token_url, data=data)
    except httpx.RequestError as e:
        raise TokenExchangeError("Token exchange failed", None, str(e)) from e
    if not resp.is_success:
        raise TokenExchangeError("Token exchange failed", resp.status_code, resp.text)

    try:
        tokens = resp.json()
    except ValueError as e:
        raise TokenExchangeError("Token exchange returned invalid JSON", resp.status_code, resp.text) from e
    if not isinstance(tokens, dict) or not tokens.get("access_token"):
        raise TokenExchangeError("Token exchange returned no access_token", resp.status_code, resp.text)
    return tokens


def _error_page(message: str) -> str:
    return f"<html><body><h1>Error</h1><p>{escape(message)}</p></body></html>"


class _CallbackHandler(BaseHTTPRequestHandler):
    def __init__(self, request, client_address, server, callback: "CallbackServer"):
        self._callback = callback
        super().__init__(request, client_address, server)

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path != "/callback":
            self._respond(404, "Not found", content_type="text/plain")
            return

        status, body = self._callback.handle(parse_qs(parsed.query))
        self._respond(status, body)

    def _respond(self, status: int, body: str, content_type: str = "text/html") -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", f"{content_type}; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):  # noqa: A003
        logger.debug("callback: " + format, *args)


class CallbackServer:
    """Loopback listener that resolves once, on the first /callback hit.

    ``exchange`` turns the authorization code into a token response; it runs
    on the listener thread so the browser sees the real outcome.
    """

    def __init__(
        self,
        expected_state: str,
        exchange: Callable[[str], Dict[str, Any]],
        port: int,
        host: str = "localhost",
    ) -> None:
        self.expected_state = expected_state
        self.exchange = exchange
        self.port = port
        self.host = host
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._tokens: Optional[Dict[str, Any]] = None
        self._error: Optional[BaseException] = None

    def _make_handler(self):
        callback = self

        class Handler(_CallbackHandler):
            def __init__(self, request, client_address, server):
                super().__init__(request, client_address, server, callback)

        return Handler

    def start(self) -> None:
        self._server = HTTPServer((self.host, self.port), self._make_handler())
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        print(f"Callback server listening on port {self.port}")

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=1)
            self._thread = None

    def handle(self, params: Dict[str, list]) -> tuple[int, str]:
        """Resolve the flow from callback query parameters; returns (status, html)."""

        def first(name: str) -> Optional[str]:
            values = params.get(name)
            return values[0] if values else None

        with self._lock:
            if self._done.is_set():
                return 400, _error_page("Authorization already completed")

            error = first("error")
            if error:
                description = first("error_description")
                self._resolve(error=AuthorizationError(error, description))
                return 400, _error_page(f"{error}: {description}")

            if first("state") != self.expected_state:
                self._resolve(error=CsrfError())
                return 400, _error_page("State mismatch - possible CSRF attack")

            code = first("code")
            if not code:
                self._resolve(error=AuthorizationError("invalid_request", "callback did not include a code"))
                return 400, _error_page("Missing authorization code")

            try:
                tokens = self.exchange(code)
            except Exception as e:  # re-raised on the waiting thread by wait()
                self._resolve(error=e)
                return 500, _error_page(str(e))

            self._resolve(tokens=tokens)
            return 200, SUCCESS_PAGE

    def _resolve(self, tokens: Optional[Dict[str, Any]] = None, error: Optional[BaseException] = None) -> None:
        self._tokens = tokens
        self._error = error
        self._done.set()

    def wait(self, timeout: float) -> Dict[str, Any]:
        if not self._done.wait(timeout):
            raise AuthorizationTimeoutError(f"OAuth flow timed out after {timeout:g}s")
        if self._error is not None:
            raise self._error
        if self._tokens is None:
            raise AuthorizationError("invalid_request", "token exchange returned no tokens")
        return self._tokens


def authorize(
    config: CirraConfig,
    client: httpx.Client,
    open_browser: Optional[Callable[[str], Any]] = webbrowser.open,
) -> CredentialRecord:
    """
    Run the full authorization-code + PKCE flow and return fresh credentials.

    Args:
        config: Endpoints, callback port and timeout
        client: HTTP client for /register and /token
        open_browser: Called with the authorization URL; None only prints it

    Returns:
        CredentialRecord; nothing is persisted here
    """
    print("1. Registering OAuth client...")
    registration = register_client(client, config)
    client_id = registration["client_id"]
    print(f"   Client ID: {client_id}\n")

    pkce = generate_pkce()
    state = generate_state()
    auth_url = build_authorization_url(config, client_id, state, pkce.challenge)

    issued: Dict[str, int] = {}

    def exchange(code: str) -> Dict[str, Any]:
        tokens = exchange_code(client, config, code, client_id, pkce.verifier)
        issued["at"] = now_ms()
        return tokens

    server = CallbackServer(state, exchange, port=config.callback_port)
    server.start()
    try:
        print("2. Opening browser for authorization...")
        print(f"   URL: {auth_url}\n")
        if open_browser is not None:
            open_browser(auth_url)

        print("3. Waiting for authorization...")
        tokens = server.wait(config.authorization_timeout)
    finally:
        server.stop()
    print("   Authorization successful!\n")

    return CredentialRecord.from_token_response(tokens, client_id, config, issued.get("at"))


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Authorize this machine against the Cirra AI MCP server")
    p.add_argument(
        "--no-browser",
        action="store_true",
        help="Only print the authorization URL instead of opening a browser",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return p.parse_args(argv)


def main(
    argv: list[str],
    config: Optional[CirraConfig] = None,
    client: Optional[httpx.Client] = None,
    open_browser: Optional[Callable[[str], Any]] = webbrowser.open,
) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(levelname)s] %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    print("Starting OAuth flow for Cirra AI...\n")
    try:
        config = config or CirraConfig.from_env()
        own_client = client is None
        http = client or httpx.Client(timeout=config.http_timeout)
        try:
            record = authorize(config, http, None if args.no_browser else open_browser)
        finally:
            if own_client:
                http.close()

        store = FileCredentialSource(config.token_path)
        store.save(record)
    except KeyboardInterrupt:
        print("\nstop: interrupted by user", file=sys.stderr)
        return 130
    except (CirraError, OSError, ValueError) as e:
        print(f"Authorization failed: {e}", file=sys.stderr)
        return 1

    print(f"4. Tokens saved to {store.path}")
    print(f"\n--- Copy this for {config.env_credentials_var} secret ---")
    print(json.dumps(record.to_dict()))
    print("----------------------------------------------\n")
    print("Done! You can now use the Cirra AI MCP server.")
    return 0


def cli() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
