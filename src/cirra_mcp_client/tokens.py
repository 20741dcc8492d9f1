from __future__ import annotations

import os
import json
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import httpx

from .config import CirraConfig
from .errors import NoCredentialsError, TokenRefreshError

logger = logging.getLogger(__name__)

_RECORD_FIELDS = (
    "server",
    "url",
    "client_id",
    "access_token",
    "refresh_token",
    "token_type",
    "expires_at",
    "scope",
)


def now_ms() -> int:
    return int(time.time() * 1000)


def _expiry_from(tokens: Mapping[str, Any], issued_ms: int) -> Optional[int]:
    expires_in = tokens.get("expires_in")
    if expires_in is None:
        return None
    return issued_ms + int(float(expires_in) * 1000)


@dataclass
class CredentialRecord:
    """Persisted OAuth credentials for the Cirra MCP server.

    ``expires_at`` is an absolute epoch timestamp in milliseconds, computed
    locally when the tokens were issued, or None when the server did not say.
    """

    client_id: Optional[str]
    access_token: str
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[int] = None
    scope: Optional[str] = None
    server: str = "cirra"
    url: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_token_response(
        cls,
        tokens: Mapping[str, Any],
        client_id: str,
        config: CirraConfig,
        issued_ms: Optional[int] = None,
    ) -> "CredentialRecord":
        issued = now_ms() if issued_ms is None else issued_ms
        return cls(
            server=config.server_name,
            url=config.base_url,
            client_id=client_id,
            access_token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            token_type=tokens.get("token_type"),
            expires_at=_expiry_from(tokens, issued),
            scope=tokens.get("scope"),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CredentialRecord":
        if not isinstance(data, Mapping):
            raise ValueError("credential blob must be a JSON object")
        if not data.get("access_token"):
            raise ValueError("credential blob has no access_token")
        expires_at = data.get("expires_at")
        if expires_at is not None and (isinstance(expires_at, bool) or not isinstance(expires_at, (int, float))):
            raise ValueError(f"credential blob has a non-numeric expires_at: {expires_at!r}")
        extra = {k: v for k, v in data.items() if k not in _RECORD_FIELDS}
        return cls(
            server=data.get("server", "cirra"),
            url=data.get("url", ""),
            client_id=data.get("client_id"),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type"),
            expires_at=expires_at,
            scope=data.get("scope"),
            extra=extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in _RECORD_FIELDS}
        data.update(self.extra)
        return data

    def apply_refresh(self, tokens: Mapping[str, Any], issued_ms: Optional[int] = None) -> None:
        """Fold a refresh_token grant response into this record."""
        issued = now_ms() if issued_ms is None else issued_ms
        expires_at = _expiry_from(tokens, issued)
        self.access_token = tokens["access_token"]
        if tokens.get("refresh_token"):
            self.refresh_token = tokens["refresh_token"]
        if tokens.get("token_type"):
            self.token_type = tokens["token_type"]
        if tokens.get("scope"):
            self.scope = tokens["scope"]
        self.expires_at = expires_at


def needs_refresh(record: CredentialRecord, now: int, skew_seconds: int = 60) -> bool:
    """True when the access token expires within ``skew_seconds`` of ``now`` (ms)."""
    if record.expires_at is None:
        return False
    return now >= record.expires_at - skew_seconds * 1000


class CredentialSource(ABC):
    """Where a credential record came from, and where refreshes go back to."""

    description = "credentials"

    @abstractmethod
    def load(self) -> Optional[CredentialRecord]:
        ...

    @abstractmethod
    def save(self, record: CredentialRecord) -> None:
        ...


class EnvCredentialSource(CredentialSource):
    """Read-only credentials injected as a JSON blob in an environment variable."""

    def __init__(self, var_name: str, environ: Optional[Mapping[str, str]] = None) -> None:
        self.var_name = var_name
        self.environ = os.environ if environ is None else environ
        self.description = f"${var_name}"

    def load(self) -> Optional[CredentialRecord]:
        raw = self.environ.get(self.var_name)
        if not raw:
            return None
        try:
            return CredentialRecord.from_dict(json.loads(raw))
        except ValueError as e:
            logger.error(f"Failed to parse {self.var_name}: {e}")
            return None

    def save(self, record: CredentialRecord) -> None:
        # Deployment secret; refreshed tokens live only for this process.
        logger.debug(f"Not persisting refreshed tokens to {self.description}")


class FileCredentialSource(CredentialSource):
    """Credentials stored as pretty-printed JSON on local disk."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self.description = str(self.path)

    def load(self) -> Optional[CredentialRecord]:
        if not self.path.exists():
            logger.debug(f"No token file at {self.path}")
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return CredentialRecord.from_dict(data)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read tokens file {self.path}: {e}")
            return None

    def save(self, record: CredentialRecord) -> None:
        """Write the record atomically: temp file then replace."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.unlink(missing_ok=True)
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o600)
            tmp.replace(self.path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        logger.debug(f"Saved tokens to {self.path}")


def resolve_credentials(
    config: CirraConfig, environ: Optional[Mapping[str, str]] = None
) -> Tuple[CredentialRecord, CredentialSource]:
    """Pick the first usable credential source: environment blob, then token file."""
    sources = (
        EnvCredentialSource(config.env_credentials_var, environ),
        FileCredentialSource(config.token_path),
    )
    for source in sources:
        record = source.load()
        if record is not None:
            logger.debug(f"Loaded credentials from {source.description}")
            return record, source
    raise NoCredentialsError(
        f"No OAuth tokens found in ${config.env_credentials_var} or {config.token_path}"
    )


class TokenManager:
    """Keeps the access token fresh, refreshing at most once per check."""

    def __init__(
        self,
        record: CredentialRecord,
        source: CredentialSource,
        config: CirraConfig,
        client: httpx.Client,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.record = record
        self.source = source
        self.config = config
        self.client = client
        self.clock = clock

    @property
    def access_token(self) -> str:
        return self.record.access_token

    def ensure_fresh(self) -> bool:
        if not needs_refresh(self.record, self.clock(), self.config.refresh_skew_seconds):
            return False
        logger.info("Token expired, refreshing...")
        self.refresh()
        return True

    def refresh(self) -> CredentialRecord:
        rt = self.record.refresh_token
        if not rt:
            raise TokenRefreshError("No refresh token available")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": rt,
            "client_id": self.record.client_id or "",
        }
        try:
            resp = self.client.post(self.config.token_url, data=data)
        except httpx.RequestError as e:
            raise TokenRefreshError("Token refresh failed", None, str(e)) from e
        if not resp.is_success:
            raise TokenRefreshError("Token refresh failed", resp.status_code, resp.text)

        try:
            new_tokens = resp.json()
        except ValueError as e:
            raise TokenRefreshError("Token refresh returned invalid JSON", resp.status_code, resp.text) from e
        if not isinstance(new_tokens, dict) or not new_tokens.get("access_token"):
            raise TokenRefreshError("Token refresh response has no access_token", resp.status_code, resp.text)

        try:
            self.record.apply_refresh(new_tokens, self.clock())
        except (TypeError, ValueError) as e:
            raise TokenRefreshError(f"Token refresh response is malformed ({e})", resp.status_code, resp.text) from e
        self.source.save(self.record)
        logger.info("Token refreshed successfully")
        return self.record
