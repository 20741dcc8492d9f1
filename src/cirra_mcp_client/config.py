"""
Cirra MCP client configuration.

Defaults point at the hosted Cirra AI service. A handful of settings can be
overridden through environment variables so the same scripts work against a
staging server or a custom token location.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_BASE_URL = "https://mcp.cirra.ai"
DEFAULT_CALLBACK_PORT = 8976
DEFAULT_TOKEN_PATH = Path("~/.mcporter/cirra-tokens.json")
ENV_CREDENTIALS_VAR = "CIRRA_OAUTH_CACHE"


@dataclass(slots=True)
class CirraConfig:
    """Connection settings shared by the authorizer and the tool invoker."""

    base_url: str = DEFAULT_BASE_URL
    callback_port: int = DEFAULT_CALLBACK_PORT
    token_path: Path = DEFAULT_TOKEN_PATH
    env_credentials_var: str = ENV_CREDENTIALS_VAR
    server_name: str = "cirra"
    client_name: str = "OpenClaw MCP Client"
    client_info_name: str = "openclaw-mcp-client"
    client_info_version: str = "1.0.0"
    protocol_version: str = "2024-11-05"
    refresh_skew_seconds: int = 60
    authorization_timeout: float = 300.0
    http_timeout: float = 30.0

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        self.token_path = Path(self.token_path).expanduser()

    @property
    def register_url(self) -> str:
        return f"{self.base_url}/register"

    @property
    def authorize_url(self) -> str:
        return f"{self.base_url}/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/token"

    @property
    def mcp_url(self) -> str:
        return f"{self.base_url}/mcp"

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.callback_port}/callback"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CirraConfig":
        """
        Build a config from defaults plus environment overrides.

        Args:
            environ: Mapping to read instead of ``os.environ`` (tests)

        Returns:
            CirraConfig with CIRRA_MCP_BASE_URL, CIRRA_CALLBACK_PORT,
            CIRRA_TOKEN_FILE and CIRRA_HTTP_TIMEOUT applied
        """
        env = os.environ if environ is None else environ
        config = cls()

        overrides = {}
        if base_url := env.get("CIRRA_MCP_BASE_URL"):
            overrides["base_url"] = base_url
        if port := env.get("CIRRA_CALLBACK_PORT"):
            try:
                overrides["callback_port"] = int(port)
            except ValueError:
                raise ValueError(f"CIRRA_CALLBACK_PORT must be an integer, got {port!r}") from None
        if token_file := env.get("CIRRA_TOKEN_FILE"):
            overrides["token_path"] = Path(token_file)
        if timeout := env.get("CIRRA_HTTP_TIMEOUT"):
            try:
                overrides["http_timeout"] = float(timeout)
            except ValueError:
                raise ValueError(f"CIRRA_HTTP_TIMEOUT must be a number, got {timeout!r}") from None

        return replace(config, **overrides) if overrides else config

    def __repr__(self) -> str:
        return f"CirraConfig(base_url={self.base_url}, token_path={self.token_path})"
