"""
Test Configuration
==================
Pytest fixtures for LLM Governor tests.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from llm_governor.backends.base import ContentBackend
from llm_governor.config import Settings
from llm_governor.context import GovernorContext
from llm_governor.schemas.generation import (
    EmbeddingRequest,
    GenerationRequest,
    GenerationResponse,
    Message,
    TokenUsage,
)


class FakeClock:
    """Manually advanced clock with a sleep that advances it."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ClosableStream(httpx.AsyncByteStream):
    """Response body fed one chunk at a time that records when it is closed."""

    def __init__(self, chunks: list[bytes], hold_open: bool = False):
        self.chunks = chunks
        self.hold_open = hold_open
        self.sent = 0
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            self.sent += 1
            yield chunk
        if self.hold_open:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class FakeBackend(ContentBackend):
    """In-memory backend that records calls and can fail on demand."""

    name = "fake"

    def __init__(self, errors: list[Exception] | None = None, text: str = "Hello world"):
        self.errors = list(errors or [])
        self.text = text
        self.calls: list[str] = []
        self.requests: list[GenerationRequest] = []
        self.closed = False

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    async def generate_content(self, request: GenerationRequest, model: str) -> GenerationResponse:
        self.calls.append(model)
        self.requests.append(request)
        self._maybe_fail()
        return GenerationResponse(
            text=self.text,
            usage=TokenUsage(prompt_tokens=10, completion_tokens=5),
            finish_reason="stop",
            model=model,
        )

    async def generate_content_stream(
        self,
        request: GenerationRequest,
        model: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[GenerationResponse]:
        self.calls.append(model)
        self.requests.append(request)
        self._maybe_fail()
        words = self.text.split(" ")
        for i, word in enumerate(words):
            if cancel_event is not None and cancel_event.is_set():
                return
            last = i == len(words) - 1
            yield GenerationResponse(
                text=word if last else word + " ",
                usage=TokenUsage(prompt_tokens=10, completion_tokens=5) if last else TokenUsage(),
                finish_reason="stop" if last else None,
                model=model,
            )

    async def embed_content(self, request: EmbeddingRequest, model: str) -> list[float]:
        self.calls.append(model)
        self._maybe_fail()
        return [0.1, 0.2, 0.3]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start=1000.0)


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Factory for isolated settings rooted in a temporary data dir."""

    def factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "_env_file": None,
            "data_dir": tmp_path / "governor",
            "auth_mode": None,
            "user_tier": None,
            "api_key": "test-key",
            "provider": None,
            "base_url": None,
            "target_model": "openrouter/anthropic/claude-sonnet-4",
            "fallback_model": "google/gemini-2.0-flash-exp:free",
            "temperature": None,
            "max_tokens": None,
            "top_p": None,
            "rate_limit_requests_per_minute": 600,
            "rate_limit_burst": None,
            "cache_enabled": True,
            "pricing_config_path": None,
            "metrics_enabled": False,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture
def make_context(make_settings: Callable[..., Settings]) -> Callable[..., GovernorContext]:
    """Factory for contexts; keyword arguments override settings."""

    def factory(environ: dict[str, str] | None = None, **overrides: Any) -> GovernorContext:
        return GovernorContext.from_settings(make_settings(**overrides), environ=environ or {})

    return factory


@pytest.fixture
def context(make_context: Callable[..., GovernorContext]) -> GovernorContext:
    return make_context()


@pytest.fixture
def closable_stream() -> type[ClosableStream]:
    """Streaming response body class whose close can be asserted."""
    return ClosableStream


@pytest.fixture
def make_backend() -> type[FakeBackend]:
    """The fake backend class, for tests that need failures injected."""
    return FakeBackend


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def chat_request() -> GenerationRequest:
    """Simple single-turn request."""
    return GenerationRequest(messages=[Message(role="user", content="Explain list comprehensions")])
