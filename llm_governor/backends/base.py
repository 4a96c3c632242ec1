"""
Backend Contract
================
Uniform interface every content backend implements, plus the shared
httpx transport with retries and error-envelope parsing.
"""

import asyncio
import math
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from llm_governor import metrics
from llm_governor.errors import BackendError, ErrorEnvelope, NetworkError
from llm_governor.schemas.generation import (
    EmbeddingRequest,
    GenerationRequest,
    GenerationResponse,
)

logger = structlog.get_logger()

USER_AGENT = "llm-governor/1.0.0"


def estimate_tokens(text: str) -> int:
    """Rough token estimate at four characters per token."""
    return math.ceil(len(text) / 4)


class ContentBackend(ABC):
    """
    Abstract content backend.

    The model is passed on every call because the dispatcher decides it,
    possibly switching to a fallback mid-session.
    """

    name: str = "backend"

    @abstractmethod
    async def generate_content(self, request: GenerationRequest, model: str) -> GenerationResponse:
        """Produce one complete response."""

    @abstractmethod
    def generate_content_stream(
        self,
        request: GenerationRequest,
        model: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[GenerationResponse]:
        """Yield partial responses until the backend finishes or the caller cancels."""

    async def count_tokens(self, request: GenerationRequest, model: str) -> int:
        return estimate_tokens(request.prompt_text())

    @abstractmethod
    async def embed_content(self, request: EmbeddingRequest, model: str) -> list[float]:
        """Return the embedding vector for ``request.input``."""

    async def aclose(self) -> None:
        """Release transport resources."""


class HttpBackend(ContentBackend):
    """
    Backend that talks HTTP through a single ``httpx.AsyncClient``.

    Unary calls retry ``NetworkError`` with exponential backoff. Error bodies
    are parsed into an ``ErrorEnvelope`` here, once, and raised as
    ``BackendError``; raw httpx exceptions never leave this class.
    """

    def __init__(
        self,
        base_url: str,
        *,
        name: str,
        headers: dict[str, str] | None = None,
        timeout: float = 120.0,
        max_retries: int = 3,
        proxy: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_wait: wait_base | None = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=8)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"User-Agent": USER_AGENT, **(headers or {})},
            proxy=proxy,
            transport=transport,
        )

    async def _request_headers(self) -> dict[str, str]:
        """Per-request headers, e.g. credentials."""
        return {}

    async def _send(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        headers = await self._request_headers()
        try:
            response = await self._client.request(method, path, json=payload, headers=headers)
        except httpx.TransportError as e:
            metrics.BACKEND_REQUESTS.labels(backend=self.name, outcome="network_error").inc()
            raise NetworkError(f"{self.name}: {e!r}") from e

        if response.status_code >= 400:
            metrics.BACKEND_REQUESTS.labels(backend=self.name, outcome="error").inc()
            envelope = ErrorEnvelope.from_response(response.status_code, response.text)
            logger.warning(
                "Backend returned error",
                backend=self.name,
                status_code=response.status_code,
                error=envelope.message,
            )
            raise BackendError(envelope, backend=self.name)

        metrics.BACKEND_REQUESTS.labels(backend=self.name, outcome="success").inc()
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(
                ErrorEnvelope(message=f"Invalid JSON from backend: {e}", status_code=response.status_code),
                backend=self.name,
            ) from e

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        """Send a unary request, retrying transport failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._retry_wait,
            retry=retry_if_exception_type(NetworkError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying backend request",
                        backend=self.name,
                        path=path,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._send(method, path, payload)

    @asynccontextmanager
    async def _open_stream(self, path: str, payload: dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """
        Open a streaming POST. Leaving the context closes the response, which
        is how cancellation releases the connection.
        """
        headers = await self._request_headers()
        try:
            async with self._client.stream("POST", path, json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    metrics.BACKEND_REQUESTS.labels(backend=self.name, outcome="error").inc()
                    raise BackendError(
                        ErrorEnvelope.from_response(response.status_code, body),
                        backend=self.name,
                    )
                metrics.BACKEND_REQUESTS.labels(backend=self.name, outcome="success").inc()
                yield response
        except httpx.TransportError as e:
            metrics.BACKEND_REQUESTS.labels(backend=self.name, outcome="network_error").inc()
            raise NetworkError(f"{self.name}: {e!r}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
