"""Exceptions raised by the Cirra OAuth flow and MCP tool invoker.

Every error here is terminal for the running command; nothing is retried.
"""

from __future__ import annotations

from typing import Any, Optional


class CirraError(Exception):
    """Base class for all Cirra client failures."""


class HttpStatusError(CirraError):
    """An HTTP step failed. ``status`` is None when no response arrived."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = "") -> None:
        self.status = status
        self.body = body
        detail = " ".join(str(part) for part in (status, body) if part not in (None, ""))
        super().__init__(f"{message}: {detail}" if detail else message)


class ClientRegistrationError(HttpStatusError):
    pass


class TokenExchangeError(HttpStatusError):
    pass


class TokenRefreshError(HttpStatusError):
    pass


class TransportError(HttpStatusError):
    pass


class AuthorizationError(CirraError):
    """The authorization server redirected back with an ``error`` parameter."""

    def __init__(self, error: str, description: Optional[str] = None) -> None:
        self.error = error
        self.description = description
        super().__init__(f"{error}: {description}" if description else error)


class CsrfError(CirraError):
    def __init__(self, message: str = "State mismatch - possible CSRF attack") -> None:
        super().__init__(message)


class AuthorizationTimeoutError(CirraError):
    pass


class NoCredentialsError(CirraError):
    pass


class SessionInitializationError(CirraError):
    pass


class EmptyStreamResponseError(CirraError):
    def __init__(self, message: str = "No response received from SSE stream") -> None:
        super().__init__(message)


class McpRpcError(CirraError):
    """A JSON-RPC response carried an ``error`` object."""

    def __init__(self, code: Optional[int], message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)

    @classmethod
    def from_response(cls, error: Any) -> "McpRpcError":
        if isinstance(error, dict):
            return cls(error.get("code"), str(error.get("message", "Unknown error")), error.get("data"))
        return cls(None, str(error))
