"""
Dispatcher Tests
================
Tests for governed generation: caching, fallback, error mapping, backend
selection and streaming.
"""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from llm_governor.backends import OAuthBackend, OllamaBackend, OpenAICompatibleBackend
from llm_governor.config import AuthMode
from llm_governor.errors import (
    AuthenticationError,
    BackendError,
    ErrorEnvelope,
    NetworkError,
    ProQuotaExceededError,
    RateLimitError,
    UnsupportedBackendError,
)
from llm_governor.schemas.generation import (
    EmbeddingRequest,
    GenerationRequest,
    Message,
    SamplingParams,
)
from llm_governor.services.dispatcher import Dispatcher

PRIMARY = "anthropic/claude-sonnet-4"
FALLBACK = "google/gemini-2.0-flash-exp:free"


def http_error(status_code: int, message: str) -> BackendError:
    body = json.dumps({"error": {"code": status_code, "message": message}})
    return BackendError(ErrorEnvelope.from_response(status_code, body))


def rate_limited() -> BackendError:
    return http_error(429, "Rate limit exceeded")


def ask(text: str) -> GenerationRequest:
    return GenerationRequest(messages=[Message(role="user", content=text)])


class TestGenerateContent:
    """Tests for unary generation."""

    async def test_identical_requests_hit_cache(self, context, fake_backend, chat_request):
        """Test that repeats are served from cache without backend calls."""
        dispatcher = Dispatcher(context, backend=fake_backend)

        first = await dispatcher.generate_content(chat_request)
        second = await dispatcher.generate_content(chat_request)
        third = await dispatcher.generate_content(chat_request)

        assert fake_backend.calls == [PRIMARY]
        assert not first.cached
        assert second.cached and third.cached
        assert third.text == first.text
        assert context.cache.stats()["hits"] == 2
        assert context.cost_tracker.session_stats().request_count == 1

    async def test_cost_is_tracked(self, context, fake_backend, chat_request):
        dispatcher = Dispatcher(context, backend=fake_backend)

        response = await dispatcher.generate_content(chat_request)

        assert response.model == PRIMARY
        record = context.cost_tracker.session_stats().records[0]
        assert record.model == PRIMARY
        assert record.prompt_tokens == 10
        assert record.completion_tokens == 5
        assert record.cost == Decimal("0.000105")

    async def test_cache_disabled(self, make_context, fake_backend, chat_request):
        context = make_context(cache_enabled=False)
        dispatcher = Dispatcher(context, backend=fake_backend)

        for _ in range(3):
            await dispatcher.generate_content(chat_request)

        assert len(fake_backend.calls) == 3

    async def test_sampling_overrides(self, make_context, fake_backend):
        """Test that settings fill sampling fields the request leaves unset."""
        context = make_context(temperature=0.2, max_tokens=256)
        dispatcher = Dispatcher(context, backend=fake_backend)
        request = ask("hi").model_copy(update={"sampling": SamplingParams(temperature=0.9)})

        await dispatcher.generate_content(request)

        sampling = fake_backend.requests[0].sampling
        assert sampling.temperature == 0.9
        assert sampling.max_tokens == 256

    async def test_request_model_overrides_target(self, context, fake_backend):
        dispatcher = Dispatcher(context, backend=fake_backend)
        request = ask("hi").model_copy(update={"model": "openrouter/openai/gpt-4o"})

        await dispatcher.generate_content(request)

        assert fake_backend.calls == ["openai/gpt-4o"]


class TestFallback:
    """Tests for switching to the fallback model."""

    async def test_rate_limit_switches_model(self, context, make_backend, chat_request):
        """Test one retry on the fallback model and the session-wide switch."""
        notices = []
        backend = make_backend(errors=[rate_limited()])
        dispatcher = Dispatcher(context, backend=backend, on_notice=notices.append)

        response = await dispatcher.generate_content(chat_request)

        assert backend.calls == [PRIMARY, FALLBACK]
        assert response.model == FALLBACK
        assert dispatcher.fallback_active
        assert dispatcher.model == FALLBACK
        assert notices == [f"Switched from {PRIMARY} to {FALLBACK} for the rest of this session (rate limit)."]
        assert dispatcher.notices == notices

        await dispatcher.generate_content(ask("another question"))
        assert backend.calls[-1] == FALLBACK

    async def test_fallback_ignores_request_model(self, context, make_backend):
        backend = make_backend(errors=[rate_limited()])
        dispatcher = Dispatcher(context, backend=backend)
        await dispatcher.generate_content(ask("first"))

        await dispatcher.generate_content(ask("second").model_copy(update={"model": "openai/gpt-4o"}))

        assert backend.calls[-1] == FALLBACK

    async def test_fallback_fails_too(self, context, make_backend, chat_request):
        backend = make_backend(errors=[rate_limited(), rate_limited()])
        dispatcher = Dispatcher(context, backend=backend)

        with pytest.raises(RateLimitError):
            await dispatcher.generate_content(chat_request)

        assert backend.calls == [PRIMARY, FALLBACK]
        assert context.cost_tracker.session_stats().request_count == 0

    async def test_quota_errors_are_typed(self, context, make_backend, chat_request):
        quota = "Quota exceeded for quota metric 'Gemini 2.5 Pro Requests' and limit"
        backend = make_backend(errors=[http_error(429, quota), http_error(429, quota)])
        dispatcher = Dispatcher(context, backend=backend)

        with pytest.raises(ProQuotaExceededError) as exc_info:
            await dispatcher.generate_content(chat_request)

        assert dispatcher.fallback_active
        assert exc_info.value.kind.value == "quota_pro"

    async def test_no_second_switch(self, context, make_backend):
        backend = make_backend(errors=[rate_limited()])
        dispatcher = Dispatcher(context, backend=backend)
        await dispatcher.generate_content(ask("first"))
        backend.errors = [rate_limited()]

        with pytest.raises(RateLimitError):
            await dispatcher.generate_content(ask("second"))

        assert len(dispatcher.notices) == 1

    async def test_in_flight_requests_also_fall_back(self, context, make_backend):
        """Test that requests rate limited after the switch still retry on the fallback."""

        class GatedBackend(make_backend):
            """Holds primary calls until both are in flight, then rate limits each."""

            def __init__(self):
                super().__init__()
                self.both_in_flight = asyncio.Event()

            async def generate_content(self, request, model):
                if model != PRIMARY:
                    return await super().generate_content(request, model)
                self.calls.append(model)
                if self.calls.count(PRIMARY) == 2:
                    self.both_in_flight.set()
                await self.both_in_flight.wait()
                raise rate_limited()

        backend = GatedBackend()
        notices = []
        dispatcher = Dispatcher(context, backend=backend, on_notice=notices.append)

        responses = await asyncio.gather(
            dispatcher.generate_content(ask("first")),
            dispatcher.generate_content(ask("second")),
        )

        assert [r.model for r in responses] == [FALLBACK, FALLBACK]
        assert backend.calls.count(PRIMARY) == 2
        assert backend.calls.count(FALLBACK) == 2
        assert len(notices) == 1
        assert context.cost_tracker.session_stats().request_count == 2


class TestErrorMapping:
    """Tests for errors that do not trigger fallback."""

    async def test_auth_error(self, make_context, make_backend, chat_request):
        context = make_context(auth_mode=AuthMode.API_KEY)
        backend = make_backend(errors=[http_error(401, "Invalid API key")])
        dispatcher = Dispatcher(context, backend=backend)

        with pytest.raises(AuthenticationError) as exc_info:
            await dispatcher.generate_content(chat_request)

        assert backend.calls == [PRIMARY]
        assert "[API Error: Invalid API key (Status: 401)]" in str(exc_info.value)
        assert "API key authentication failed" in str(exc_info.value)
        assert not dispatcher.fallback_active

    async def test_network_error_passes_through(self, context, make_backend, chat_request):
        error = NetworkError("connection reset")
        dispatcher = Dispatcher(context, backend=make_backend(errors=[error]))

        with pytest.raises(NetworkError) as exc_info:
            await dispatcher.generate_content(chat_request)

        assert exc_info.value is error
        assert not dispatcher.fallback_active

    async def test_unclassified_error_passes_through(self, context, make_backend, chat_request):
        error = http_error(500, "Internal error")
        dispatcher = Dispatcher(context, backend=make_backend(errors=[error]))

        with pytest.raises(BackendError) as exc_info:
            await dispatcher.generate_content(chat_request)

        assert exc_info.value is error


class TestBackendSelection:
    """Tests for resolving the backend from settings."""

    async def test_static_key_uses_direct_completion(self, context):
        dispatcher = Dispatcher(context)

        assert type(dispatcher.backend) is OpenAICompatibleBackend
        assert dispatcher.descriptor.id == "openrouter"
        assert dispatcher.backend.base_url == "https://openrouter.ai/api/v1"
        assert dispatcher.model == PRIMARY
        assert dispatcher.fallback_model == FALLBACK
        await dispatcher.aclose()

    async def test_local_daemon(self, make_context):
        context = make_context(api_key=None, target_model="ollama/llama3.1:8b")
        dispatcher = Dispatcher(context)

        assert isinstance(dispatcher.backend, OllamaBackend)
        assert dispatcher.model == "ollama/llama3.1:8b"
        await dispatcher.aclose()

    async def test_ollama_auth_mode(self, make_context):
        context = make_context(api_key=None, auth_mode=AuthMode.OLLAMA, target_model="qwen2.5:7b")
        dispatcher = Dispatcher(context)

        assert isinstance(dispatcher.backend, OllamaBackend)
        await dispatcher.aclose()

    async def test_oauth_mode_without_key(self, make_context):
        context = make_context(api_key=None, auth_mode=AuthMode.OAUTH)
        dispatcher = Dispatcher(context)

        assert isinstance(dispatcher.backend, OAuthBackend)
        await dispatcher.aclose()

    def test_missing_credential(self, make_context):
        context = make_context(api_key=None)

        with pytest.raises(UnsupportedBackendError, match="OPENROUTER_API_KEY"):
            Dispatcher(context)

    def test_unknown_provider(self, make_context):
        with pytest.raises(UnsupportedBackendError, match="Unknown backend"):
            Dispatcher(make_context(provider="nope"))

    async def test_credential_from_environment(self, make_context, chat_request):
        """Test the provider's env var end to end through a mocked transport."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        context = make_context(environ={"OPENROUTER_API_KEY": "or-key"}, api_key=None)
        dispatcher = Dispatcher(context, transport=httpx.MockTransport(handler))

        response = await dispatcher.generate_content(chat_request)
        await dispatcher.aclose()

        assert seen[0].headers["Authorization"] == "Bearer or-key"
        assert seen[0].headers["X-Title"] == "llm-governor"
        assert json.loads(seen[0].content)["model"] == PRIMARY
        # No usage reported: billed on a four-characters-per-token estimate
        assert response.usage.prompt_tokens == 9
        assert response.usage.completion_tokens == 1

    async def test_local_server_is_free(self, make_context, chat_request):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "Authorization" not in request.headers
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "ok"}}],
                    "usage": {"prompt_tokens": 500, "completion_tokens": 500},
                },
            )

        context = make_context(api_key=None, provider="lmstudio", target_model="qwen2.5-coder")
        dispatcher = Dispatcher(context, transport=httpx.MockTransport(handler))

        await dispatcher.generate_content(chat_request)
        await dispatcher.aclose()

        record = context.cost_tracker.session_stats().records[0]
        assert record.model == "lmstudio/qwen2.5-coder"
        assert record.cost == Decimal("0")


class TestStreaming:
    """Tests for streamed generation."""

    async def test_stream_is_tracked_and_cached(self, context, fake_backend, chat_request):
        dispatcher = Dispatcher(context, backend=fake_backend)

        chunks = [c async for c in dispatcher.generate_content_stream(chat_request)]

        assert "".join(c.text for c in chunks) == "Hello world"
        assert context.cost_tracker.session_stats().request_count == 1

        replay = [c async for c in dispatcher.generate_content_stream(chat_request)]

        assert len(replay) == 1
        assert replay[0].cached
        assert replay[0].text == "Hello world"
        assert fake_backend.calls == [PRIMARY]

    async def test_cancelled_stream_is_not_recorded(self, context, make_backend, chat_request):
        backend = make_backend(text="one two three four")
        dispatcher = Dispatcher(context, backend=backend)
        cancel = asyncio.Event()

        chunks = []
        async for chunk in dispatcher.generate_content_stream(chat_request, cancel_event=cancel):
            chunks.append(chunk)
            cancel.set()

        assert len(chunks) == 1
        assert context.cost_tracker.session_stats().request_count == 0
        assert len(context.cache) == 0

    async def test_cancel_event_closes_connection(self, make_context, closable_stream, chat_request):
        """Test that cancelling through the event closes the backend response unrecorded."""
        event = b'data: {"choices":[{"delta":{"content":"x "}}]}\n\n'
        body = closable_stream([event] * 5 + [b"data: [DONE]\n\n"])
        context = make_context(environ={"OPENROUTER_API_KEY": "or-key"}, api_key=None)
        dispatcher = Dispatcher(context, transport=httpx.MockTransport(lambda r: httpx.Response(200, stream=body)))
        cancel = asyncio.Event()

        async for _ in dispatcher.generate_content_stream(chat_request, cancel_event=cancel):
            cancel.set()

        assert body.closed
        assert body.sent < len(body.chunks)
        assert context.cost_tracker.session_stats().request_count == 0
        await dispatcher.aclose()

    async def test_cancelled_consumer_closes_connection(self, make_context, closable_stream, chat_request):
        event = b'data: {"choices":[{"delta":{"content":"x "}}]}\n\n'
        body = closable_stream([event], hold_open=True)
        context = make_context(environ={"OPENROUTER_API_KEY": "or-key"}, api_key=None)
        dispatcher = Dispatcher(context, transport=httpx.MockTransport(lambda r: httpx.Response(200, stream=body)))
        first_chunk = asyncio.Event()

        async def consume() -> None:
            async for _ in dispatcher.generate_content_stream(chat_request):
                first_chunk.set()

        task = asyncio.create_task(consume())
        await first_chunk.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert body.closed
        assert context.cost_tracker.session_stats().request_count == 0
        await dispatcher.aclose()

    async def test_stream_falls_back_before_first_chunk(self, context, make_backend, chat_request):
        backend = make_backend(errors=[rate_limited()])
        dispatcher = Dispatcher(context, backend=backend)

        chunks = [c async for c in dispatcher.generate_content_stream(chat_request)]

        assert backend.calls == [PRIMARY, FALLBACK]
        assert chunks[0].model == FALLBACK
        assert dispatcher.fallback_active
        assert context.cost_tracker.session_stats().records[0].model == FALLBACK

    async def test_stream_auth_error(self, context, make_backend, chat_request):
        dispatcher = Dispatcher(context, backend=make_backend(errors=[http_error(401, "expired")]))

        with pytest.raises(AuthenticationError):
            async for _ in dispatcher.generate_content_stream(chat_request):
                pass


class TestAuxiliaryOperations:
    """Tests for token counting and embeddings."""

    async def test_count_tokens(self, context, fake_backend, chat_request):
        dispatcher = Dispatcher(context, backend=fake_backend)

        # "user: Explain list comprehensions" is 33 characters
        assert await dispatcher.count_tokens(chat_request) == 9

    async def test_embed_content(self, context, fake_backend):
        dispatcher = Dispatcher(context, backend=fake_backend)

        vector = await dispatcher.embed_content(EmbeddingRequest(input="hello"))

        assert vector == [0.1, 0.2, 0.3]
        assert fake_backend.calls == [PRIMARY]
        assert context.cost_tracker.session_stats().request_count == 0

    async def test_aclose_closes_backend(self, context, fake_backend):
        dispatcher = Dispatcher(context, backend=fake_backend)

        await dispatcher.aclose()

        assert fake_backend.closed
