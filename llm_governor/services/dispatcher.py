"""
Content-Generation Dispatcher
=============================
Single entry point for generation calls: cache lookup, rate-limit
admission, backend invocation, cost tracking and model fallback.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from typing import TYPE_CHECKING, TypeVar

import httpx
import structlog

from llm_governor import metrics
from llm_governor.backends.base import ContentBackend, estimate_tokens
from llm_governor.backends.oauth import OAuthBackend, OAuthTokenManager
from llm_governor.backends.ollama import MODEL_PREFIX, OllamaBackend
from llm_governor.backends.openai_compatible import OpenAICompatibleBackend
from llm_governor.config import AuthMode
from llm_governor.core.classifier import classify_error
from llm_governor.errors import (
    CLASSIFIED_ERRORS,
    ErrorKind,
    GovernorError,
    RateLimitError,
    UnsupportedBackendError,
)
from llm_governor.schemas.generation import (
    EmbeddingRequest,
    GenerationRequest,
    GenerationResponse,
    SamplingParams,
    TokenUsage,
)
from llm_governor.schemas.providers import BackendDescriptor, ProtocolFamily

if TYPE_CHECKING:
    from llm_governor.context import GovernorContext

logger = structlog.get_logger()

T = TypeVar("T")


class Dispatcher:
    """
    Routes generation requests to the configured backend.

    The backend is chosen once, at construction, from the target model, the
    configured provider and the auth mode. When the backend signals a rate
    limit or an exhausted quota, the dispatcher switches to the fallback
    model for the rest of the session and retries the call once.

    Usage:
        async with GovernorContext.from_settings() as context:
            dispatcher = Dispatcher(context)
            response = await dispatcher.generate_content(request)
    """

    def __init__(
        self,
        context: "GovernorContext",
        backend: ContentBackend | None = None,
        on_notice: Callable[[str], None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            context: Shared governance components
            backend: Pre-built backend; resolved from settings when omitted
            on_notice: Called with one-line user notices, e.g. model switches
            transport: httpx transport for the resolved backend (tests)
        """
        self.context = context
        self.settings = context.settings
        self.on_notice = on_notice
        self.notices: list[str] = []

        self.descriptor = self._resolve_descriptor()
        self.model = self._backend_model_id(self.settings.target_model)
        self.fallback_model = self._backend_model_id(self.settings.fallback_model)
        self.fallback_active = False
        self.backend = backend or self._create_backend(transport)

        logger.info(
            "Dispatcher ready",
            backend=self.descriptor.id,
            protocol=self.descriptor.protocol.value,
            model=self.model,
            fallback_model=self.fallback_model,
        )

    # ------------------------------------------------------------------
    # Backend resolution
    # ------------------------------------------------------------------

    def _resolve_descriptor(self) -> BackendDescriptor:
        settings = self.settings
        registry = self.context.registry

        if settings.auth_mode is AuthMode.OLLAMA or settings.target_model.startswith(MODEL_PREFIX):
            name = "ollama"
        elif settings.provider:
            name = settings.provider
        else:
            name = registry.parse_model_id(settings.target_model).provider

        descriptor = registry.get_provider(name)
        if descriptor is None:
            raise UnsupportedBackendError(f"Unknown backend '{name}'")
        return descriptor

    def _static_credential(self) -> str | None:
        return self.settings.api_key or self.context.registry.credential_for(self.descriptor)

    def _select_protocol(self) -> ProtocolFamily:
        descriptor = self.descriptor
        auth_mode = self.settings.auth_mode

        if descriptor.protocol is ProtocolFamily.LOCAL_DAEMON:
            return ProtocolFamily.LOCAL_DAEMON
        if self._static_credential():
            return ProtocolFamily.DIRECT_COMPLETION
        if descriptor.protocol is ProtocolFamily.OAUTH_TOKEN or (auth_mode is not None and auth_mode.is_oauth):
            return ProtocolFamily.OAUTH_TOKEN
        if descriptor.is_local or descriptor.credential_env is None:
            return ProtocolFamily.DIRECT_COMPLETION

        raise UnsupportedBackendError(
            f"No credential for backend '{descriptor.id}': set {descriptor.credential_env} "
            f"or API_KEY, or choose an OAuth or local backend"
        )

    def _create_backend(self, transport: httpx.AsyncBaseTransport | None) -> ContentBackend:
        settings = self.settings
        descriptor = self.descriptor
        protocol = self._select_protocol()
        base_url = settings.base_url or descriptor.base_url
        options = {
            "name": descriptor.id,
            "headers": dict(descriptor.headers),
            "timeout": settings.request_timeout,
            "max_retries": settings.max_retries,
            "proxy": settings.proxy,
            "transport": transport,
        }

        if protocol is ProtocolFamily.LOCAL_DAEMON:
            return OllamaBackend(base_url, **options)
        if protocol is ProtocolFamily.DIRECT_COMPLETION:
            return OpenAICompatibleBackend(base_url, api_key=self._static_credential(), **options)
        if protocol is ProtocolFamily.OAUTH_TOKEN:
            token_manager = OAuthTokenManager(
                settings.oauth_credentials_path,
                settings.oauth_refresh_url,
            )
            return OAuthBackend(base_url, token_manager, **options)
        raise UnsupportedBackendError(f"Unsupported protocol family '{protocol}'")

    def _backend_model_id(self, model_id: str) -> str:
        """Drop the provider prefix when it names the resolved backend."""
        if self.descriptor.protocol is ProtocolFamily.LOCAL_DAEMON:
            return model_id
        parsed = self.context.registry.parse_model_id(model_id)
        if parsed.provider == self.descriptor.id:
            return parsed.model
        return model_id

    def priced_model(self, model: str) -> str:
        """Model id used for pricing; local backends carry their own prefix."""
        prefix = f"{self.descriptor.id}/"
        if self.descriptor.is_local and not model.startswith(prefix):
            return prefix + model
        return model

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _prepare(self, request: GenerationRequest) -> GenerationRequest:
        overrides = SamplingParams(
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            top_p=self.settings.top_p,
        )
        return request.model_copy(update={"sampling": request.sampling.merged_with(overrides)})

    def active_model(self, request: GenerationRequest) -> str:
        """Model the request is served by, as the backend names it."""
        if self.fallback_active or not request.model:
            return self.model
        return self._backend_model_id(request.model)

    def _classify(self, error: GovernorError, model: str) -> GovernorError:
        """Map a backend failure onto the governance taxonomy."""
        classified = classify_error(
            error,
            auth_mode=self.settings.auth_mode,
            user_tier=self.settings.user_tier,
            current_model=model,
            fallback_model=self.fallback_model,
        )
        if classified.kind in (ErrorKind.UNCLASSIFIED, ErrorKind.NETWORK):
            return error
        return CLASSIFIED_ERRORS[classified.kind](classified.message)

    def _can_fall_back(self, error: GovernorError, model: str) -> bool:
        # Requests already in flight on the primary model may fail after the
        # switch; they still retry on the fallback.
        return isinstance(error, RateLimitError) and model != self.fallback_model

    def _activate_fallback(self, error: GovernorError, model: str) -> None:
        if self.fallback_active:
            return
        self.fallback_active = True
        self.model = self.fallback_model
        metrics.MODEL_FALLBACKS.labels(kind=error.kind.value).inc()

        reason = error.kind.value.replace("_", " ")
        notice = f"Switched from {model} to {self.fallback_model} for the rest of this session ({reason})."
        self.notices.append(notice)
        logger.warning(
            "Switching to fallback model",
            from_model=model,
            to_model=self.fallback_model,
            kind=error.kind.value,
        )
        if self.on_notice is not None:
            self.on_notice(notice)

    async def _attempt(self, model: str, call: Callable[[str], Awaitable[T]]) -> T:
        await self.context.rate_limiter.acquire()
        try:
            return await call(model)
        except GovernorError as e:
            classified = self._classify(e, model)
            if classified is e:
                raise
            raise classified from e

    async def _with_fallback(self, model: str, call: Callable[[str], Awaitable[T]]) -> tuple[str, T]:
        try:
            return model, await self._attempt(model, call)
        except RateLimitError as e:
            if not self._can_fall_back(e, model):
                raise
            self._activate_fallback(e, model)
            return self.fallback_model, await self._attempt(self.fallback_model, call)

    def _complete_usage(self, usage: TokenUsage, prompt: str, text: str) -> TokenUsage:
        # Backends that report nothing are billed on an estimate.
        if usage.total_tokens:
            return usage
        return TokenUsage(prompt_tokens=estimate_tokens(prompt), completion_tokens=estimate_tokens(text))

    def _record_success(
        self,
        request: GenerationRequest,
        model: str,
        response: GenerationResponse,
        request_id: str,
    ) -> GenerationResponse:
        prompt = request.prompt_text()
        usage = self._complete_usage(response.usage, prompt, response.text)
        response = response.model_copy(update={"usage": usage, "model": response.model or model})

        self.context.cost_tracker.track_request(
            self.priced_model(model),
            usage.prompt_tokens,
            usage.completion_tokens,
            operation=request.operation,
        )

        cache = self.context.cache
        if cache is not None:
            try:
                cache.set(prompt, model, response, request.sampling.temperature)
            except Exception as e:
                logger.warning("Failed to cache response", request_id=request_id, error=str(e))

        return response

    def _cached(self, request: GenerationRequest, model: str, request_id: str) -> GenerationResponse | None:
        cache = self.context.cache
        if cache is None:
            return None
        cached = cache.get(request.prompt_text(), model, request.sampling.temperature)
        if cached is None:
            return None
        logger.info("Serving cached response", request_id=request_id, model=model)
        return cached.model_copy(update={"cached": True})

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def generate_content(
        self,
        request: GenerationRequest,
        request_id: str | None = None,
    ) -> GenerationResponse:
        """
        Produce one complete response.

        Raises:
            AuthenticationError: Credentials missing or rejected
            RateLimitError: Rate limited or out of quota on the fallback model too
            NetworkError: Transport failed after retries
            BackendError: Any other backend failure
        """
        request_id = request_id or request.request_id
        request = self._prepare(request)
        model = self.active_model(request)

        cached = self._cached(request, model, request_id)
        if cached is not None:
            return cached

        logger.debug("Dispatching request", request_id=request_id, backend=self.backend.name, model=model)
        served_model, response = await self._with_fallback(
            model,
            lambda m: self.backend.generate_content(request, m),
        )
        return self._record_success(request, served_model, response, request_id)

    async def generate_content_stream(
        self,
        request: GenerationRequest,
        request_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[GenerationResponse]:
        """
        Yield partial responses as the backend produces them.

        Setting ``cancel_event`` (or cancelling the consuming task) ends the
        stream and closes the underlying connection. Only streams that run
        to completion are tracked and cached. Fallback applies only when the
        failure happens before the first chunk.
        """
        request_id = request_id or request.request_id
        request = self._prepare(request)
        model = self.active_model(request)

        cached = self._cached(request, model, request_id)
        if cached is not None:
            yield cached
            return

        chunks: list[GenerationResponse] = []
        while True:
            await self.context.rate_limiter.acquire()
            chunks = []
            try:
                stream = self.backend.generate_content_stream(request, model, cancel_event)
                async with aclosing(stream) as chunk_stream:
                    async for chunk in chunk_stream:
                        chunks.append(chunk)
                        yield chunk
                break
            except GovernorError as e:
                error = self._classify(e, model)
                if chunks or not self._can_fall_back(error, model):
                    if error is e:
                        raise
                    raise error from e
                self._activate_fallback(error, model)
                model = self.fallback_model

        if cancel_event is not None and cancel_event.is_set():
            logger.info("Stream cancelled, not recording", request_id=request_id, chunks=len(chunks))
            return

        usage = TokenUsage()
        for chunk in chunks:
            if chunk.usage.total_tokens:
                usage = chunk.usage
        finish_reason = next((c.finish_reason for c in reversed(chunks) if c.finish_reason), None)
        full = GenerationResponse(
            text="".join(c.text for c in chunks),
            usage=usage,
            finish_reason=finish_reason,
            model=model,
        )
        self._record_success(request, model, full, request_id)

    async def count_tokens(self, request: GenerationRequest) -> int:
        request = self._prepare(request)
        return await self.backend.count_tokens(request, self.active_model(request))

    async def embed_content(self, request: EmbeddingRequest) -> list[float]:
        """Embed ``request.input``; no caching and no model fallback."""
        model = self._backend_model_id(request.model) if request.model else self.model
        return await self._attempt(model, lambda m: self.backend.embed_content(request, m))

    async def aclose(self) -> None:
        await self.backend.aclose()
