"""
OAuth Backend
=============
OpenAI-compatible backend whose bearer token comes from stored OAuth
credentials, refreshed when expired.

The interactive browser login that produces the credentials file is handled
elsewhere; this module only reads, refreshes and rewrites it.
"""

import asyncio
import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from llm_governor.backends.openai_compatible import OpenAICompatibleBackend
from llm_governor.errors import AuthenticationError, ErrorEnvelope, NetworkError

logger = structlog.get_logger()

# Refresh slightly before the recorded expiry.
EXPIRY_SKEW_SECONDS = 60
# Tokens issued without a spend limit are valid for a year.
DEFAULT_TOKEN_LIFETIME_SECONDS = 31_536_000


class OAuthCredentials(BaseModel):
    """Contents of the stored credentials file."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at - EXPIRY_SKEW_SECONDS


class OAuthTokenManager:
    """
    Supplies a valid access token, refreshing it through the token endpoint
    when it has expired. Concurrent callers share one refresh.
    """

    def __init__(
        self,
        credentials_path: Path,
        refresh_url: str,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.credentials_path = credentials_path
        self.refresh_url = refresh_url
        self._client = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = http_client is None
        self._clock = clock
        self._credentials: OAuthCredentials | None = None
        self._lock = asyncio.Lock()

    def _load(self) -> OAuthCredentials:
        try:
            data = json.loads(self.credentials_path.read_text(encoding="utf-8"))
            return OAuthCredentials.model_validate(data)
        except FileNotFoundError as e:
            raise AuthenticationError(
                f"No OAuth credentials found at {self.credentials_path}. Please log in first."
            ) from e
        except (OSError, ValueError, ValidationError) as e:
            raise AuthenticationError(f"Stored OAuth credentials are unreadable: {e}") from e

    def _save(self, credentials: OAuthCredentials) -> None:
        try:
            self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
            self.credentials_path.write_text(credentials.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to persist refreshed OAuth credentials", error=str(e))

    async def _refresh(self, credentials: OAuthCredentials) -> OAuthCredentials:
        if not credentials.refresh_token:
            raise AuthenticationError("OAuth access token expired and no refresh token is stored")

        logger.info("Refreshing OAuth access token")
        try:
            response = await self._client.post(
                self.refresh_url,
                json={"refresh_token": credentials.refresh_token},
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Token refresh failed: {e!r}") from e

        if response.status_code >= 400:
            envelope = ErrorEnvelope.from_response(response.status_code, response.text)
            raise AuthenticationError(f"Token refresh failed ({response.status_code}): {envelope.message}")

        try:
            data: dict[str, Any] = response.json()
            if not isinstance(data, dict):
                raise TypeError(f"expected an object, got {type(data).__name__}")
        except (ValueError, TypeError) as e:
            raise AuthenticationError(f"Token refresh response was malformed: {e}") from e

        access_token = data.get("access_token") or data.get("key")
        if not access_token:
            raise AuthenticationError("Token refresh response did not contain an access token")

        expires_in = data.get("expires_in")
        if expires_in is None and not data.get("limit"):
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS

        try:
            refreshed = OAuthCredentials(
                access_token=access_token,
                refresh_token=data.get("refresh_token") or credentials.refresh_token,
                token_type=data.get("token_type") or credentials.token_type,
                expires_at=self._clock() + float(expires_in) if expires_in is not None else None,
            )
        except (ValueError, TypeError) as e:
            raise AuthenticationError(f"Token refresh response was malformed: {e}") from e
        self._save(refreshed)
        return refreshed

    async def get_token(self) -> str:
        """
        Return a usable access token.

        Raises:
            AuthenticationError: No credentials, or refresh was rejected
            NetworkError: The token endpoint could not be reached
        """
        async with self._lock:
            if self._credentials is None:
                self._credentials = self._load()
            if self._credentials.is_expired(self._clock()):
                self._credentials = await self._refresh(self._credentials)
            return self._credentials.access_token

    def invalidate(self) -> None:
        """Forget the cached token so the next call re-reads the file."""
        self._credentials = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class OAuthBackend(OpenAICompatibleBackend):
    """Chat completions authorized with a per-call OAuth bearer token."""

    def __init__(self, base_url: str, token_manager: OAuthTokenManager, **kwargs: Any):
        super().__init__(base_url, api_key=None, **kwargs)
        self.token_manager = token_manager

    async def _request_headers(self) -> dict[str, str]:
        token = await self.token_manager.get_token()
        return {"Authorization": f"Bearer {token}"}

    async def aclose(self) -> None:
        await super().aclose()
        await self.token_manager.aclose()
