"""
OpenAI-Compatible Backend
=========================
Chat completions over the OpenAI wire format, used by hosted providers
(OpenRouter, OpenAI, Groq, ...) and local OpenAI-compatible servers.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import structlog

from llm_governor.backends.base import HttpBackend
from llm_governor.errors import BackendError, ErrorEnvelope
from llm_governor.schemas.generation import (
    EmbeddingRequest,
    GenerationRequest,
    GenerationResponse,
    TokenUsage,
)

logger = structlog.get_logger()

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


def build_chat_payload(request: GenerationRequest, model: str, stream: bool) -> dict[str, Any]:
    """Translate a generation request into a chat-completions body."""
    payload: dict[str, Any] = {
        "model": model,
        "messages": [m.model_dump() for m in request.messages],
        "stream": stream,
    }
    payload.update(request.sampling.model_dump(exclude_none=True))
    return payload


def _usage(data: dict[str, Any] | None) -> TokenUsage:
    if not data:
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=data.get("prompt_tokens") or 0,
        completion_tokens=data.get("completion_tokens") or 0,
    )


class OpenAICompatibleBackend(HttpBackend):
    """
    Backend for any server speaking ``/chat/completions``.

    Credentials, when present, are sent as a bearer token. Streaming uses
    server-sent events terminated by ``data: [DONE]``.
    """

    def __init__(self, base_url: str, api_key: str | None = None, **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self._api_key = api_key

    async def _request_headers(self) -> dict[str, str]:
        if self._api_key:
            return {"Authorization": f"Bearer {self._api_key}"}
        return {}

    async def generate_content(self, request: GenerationRequest, model: str) -> GenerationResponse:
        data = await self._request("POST", "/chat/completions", build_chat_payload(request, model, stream=False))

        choices = data.get("choices") or []
        if not choices:
            # Some gateways answer 200 with an error body.
            if isinstance(data.get("error"), dict):
                raise BackendError(ErrorEnvelope.from_text(json.dumps(data)), backend=self.name)
            raise BackendError(ErrorEnvelope(message="Response contained no choices"), backend=self.name)

        choice = choices[0]
        message = choice.get("message") or {}
        return GenerationResponse(
            text=message.get("content") or "",
            usage=_usage(data.get("usage")),
            finish_reason=choice.get("finish_reason"),
            model=data.get("model") or model,
        )

    async def generate_content_stream(
        self,
        request: GenerationRequest,
        model: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[GenerationResponse]:
        payload = build_chat_payload(request, model, stream=True)
        async with self._open_stream("/chat/completions", payload) as response:
            async for line in response.aiter_lines():
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Stream cancelled by caller", backend=self.name, model=model)
                    break

                line = line.strip()
                if not line.startswith(SSE_DATA_PREFIX):
                    continue
                data = line[len(SSE_DATA_PREFIX):].strip()
                if data == SSE_DONE:
                    break

                try:
                    chunk = json.loads(data)
                except ValueError:
                    logger.debug("Skipping malformed stream chunk", backend=self.name)
                    continue

                if isinstance(chunk.get("error"), dict):
                    raise BackendError(ErrorEnvelope.from_text(data), backend=self.name)

                choices = chunk.get("choices") or [{}]
                delta = choices[0].get("delta") or {}
                yield GenerationResponse(
                    text=delta.get("content") or "",
                    usage=_usage(chunk.get("usage")),
                    finish_reason=choices[0].get("finish_reason"),
                    model=chunk.get("model") or model,
                )

    async def embed_content(self, request: EmbeddingRequest, model: str) -> list[float]:
        data = await self._request("POST", "/embeddings", {"model": model, "input": request.input})
        try:
            return [float(v) for v in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError) as e:
            raise BackendError(
                ErrorEnvelope(message=f"Malformed embedding response: {e!r}"),
                backend=self.name,
            ) from e
