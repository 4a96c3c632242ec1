"""
Ollama Backend
==============
Local-daemon backend speaking Ollama's native ``/api/chat`` protocol.
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

MODEL_PREFIX = "ollama/"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.9


def local_model_name(model: str) -> str:
    """Strip the ``ollama/`` routing prefix from a model id."""
    return model[len(MODEL_PREFIX):] if model.startswith(MODEL_PREFIX) else model


class OllamaBackend(HttpBackend):
    """Backend for a local Ollama daemon. No credentials; NDJSON streaming."""

    def _payload(self, request: GenerationRequest, model: str, stream: bool) -> dict[str, Any]:
        sampling = request.sampling
        options: dict[str, Any] = {
            "temperature": DEFAULT_TEMPERATURE if sampling.temperature is None else sampling.temperature,
            "top_p": DEFAULT_TOP_P if sampling.top_p is None else sampling.top_p,
        }
        if sampling.top_k is not None:
            options["top_k"] = sampling.top_k
        if sampling.max_tokens is not None:
            options["num_predict"] = sampling.max_tokens
        if sampling.presence_penalty is not None:
            options["presence_penalty"] = sampling.presence_penalty
        if sampling.frequency_penalty is not None:
            options["frequency_penalty"] = sampling.frequency_penalty

        return {
            "model": local_model_name(model),
            "messages": [m.model_dump() for m in request.messages],
            "stream": stream,
            "options": options,
        }

    @staticmethod
    def _to_response(data: dict[str, Any], model: str) -> GenerationResponse:
        message = data.get("message") or {}
        finish_reason = None
        if data.get("done"):
            finish_reason = data.get("done_reason") or "stop"
        return GenerationResponse(
            text=message.get("content") or "",
            usage=TokenUsage(
                prompt_tokens=data.get("prompt_eval_count") or 0,
                completion_tokens=data.get("eval_count") or 0,
            ),
            finish_reason=finish_reason,
            model=model,
        )

    async def generate_content(self, request: GenerationRequest, model: str) -> GenerationResponse:
        data = await self._request("POST", "/api/chat", self._payload(request, model, stream=False))
        return self._to_response(data, model)

    async def generate_content_stream(
        self,
        request: GenerationRequest,
        model: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[GenerationResponse]:
        async with self._open_stream("/api/chat", self._payload(request, model, stream=True)) as response:
            async for line in response.aiter_lines():
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Stream cancelled by caller", backend=self.name, model=model)
                    break
                if not line.strip():
                    continue

                try:
                    data = json.loads(line)
                except ValueError:
                    logger.debug("Skipping malformed stream line", backend=self.name)
                    continue

                if "error" in data:
                    raise BackendError(ErrorEnvelope(message=str(data["error"])), backend=self.name)

                yield self._to_response(data, model)
                if data.get("done"):
                    break

    async def embed_content(self, request: EmbeddingRequest, model: str) -> list[float]:
        data = await self._request(
            "POST",
            "/api/embed",
            {"model": local_model_name(model), "input": request.input},
        )
        try:
            return [float(v) for v in data["embeddings"][0]]
        except (KeyError, IndexError, TypeError) as e:
            raise BackendError(
                ErrorEnvelope(message=f"Malformed embedding response: {e!r}"),
                backend=self.name,
            ) from e
