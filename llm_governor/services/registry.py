"""
Backend Registry
================
Built-in and user-defined backend descriptors, alias resolution,
availability probes and model listings.
"""

import asyncio
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from llm_governor.schemas.providers import (
    BackendDescriptor,
    ModelSummary,
    ParsedModel,
    ProtocolFamily,
)

logger = structlog.get_logger()

LOCAL_PROBE_TIMEOUT = 2.0
MODEL_LISTING_TIMEOUT = 10.0


def _builtin(
    backend_id: str,
    name: str,
    base_url: str,
    credential_env: str | None = None,
    protocol: ProtocolFamily = ProtocolFamily.DIRECT_COMPLETION,
    is_local: bool = False,
    **extra: Any,
) -> BackendDescriptor:
    return BackendDescriptor(
        id=backend_id,
        name=name,
        protocol=protocol,
        base_url=base_url,
        credential_env=credential_env,
        is_local=is_local,
        is_builtin=True,
        **extra,
    )


BUILTIN_BACKENDS: tuple[BackendDescriptor, ...] = (
    _builtin(
        "ollama",
        "Ollama (Local)",
        "http://localhost:11434",
        protocol=ProtocolFamily.LOCAL_DAEMON,
        is_local=True,
    ),
    _builtin("lmstudio", "LM Studio (Local)", "http://localhost:1234/v1", is_local=True),
    _builtin("llamacpp", "llama.cpp (Local)", "http://localhost:8080/v1", is_local=True),
    _builtin("anthropic", "Anthropic", "https://api.anthropic.com/v1", "ANTHROPIC_API_KEY"),
    _builtin("openai", "OpenAI", "https://api.openai.com/v1", "OPENAI_API_KEY"),
    _builtin(
        "openrouter",
        "OpenRouter",
        "https://openrouter.ai/api/v1",
        "OPENROUTER_API_KEY",
        headers={"X-Title": "llm-governor"},
    ),
    _builtin(
        "openrouter-oauth",
        "OpenRouter (OAuth)",
        "https://openrouter.ai/api/v1",
        protocol=ProtocolFamily.OAUTH_TOKEN,
        headers={"X-Title": "llm-governor"},
    ),
    _builtin("groq", "Groq", "https://api.groq.com/openai/v1", "GROQ_API_KEY"),
    _builtin(
        "google",
        "Google Gemini",
        "https://generativelanguage.googleapis.com/v1beta/openai",
        "GOOGLE_API_KEY",
    ),
    _builtin("deepseek", "DeepSeek", "https://api.deepseek.com/v1", "DEEPSEEK_API_KEY"),
    _builtin("together", "Together AI", "https://api.together.xyz/v1", "TOGETHER_API_KEY"),
    _builtin("fireworks", "Fireworks AI", "https://api.fireworks.ai/inference/v1", "FIREWORKS_API_KEY"),
    _builtin("mistral", "Mistral AI", "https://api.mistral.ai/v1", "MISTRAL_API_KEY"),
)

PROVIDER_ALIASES: dict[str, str] = {
    "ol": "ollama",
    "or": "openrouter",
    "oai": "openai",
    "ant": "anthropic",
    "claude": "anthropic",
    "gpt": "openai",
    "lms": "lmstudio",
    "llama": "llamacpp",
    "ds": "deepseek",
    "tg": "together",
    "fw": "fireworks",
    "mi": "mistral",
    "gem": "google",
}

_LOCAL_MODEL_FAMILIES = ("llama", "qwen", "mistral", "phi")


def infer_provider(model: str) -> str:
    """Guess the provider of an unprefixed model id from its name."""
    m = model.lower()
    if "claude" in m:
        return "anthropic"
    if m.startswith(("gpt-", "o1", "o3")):
        return "openai"
    if "gemini" in m:
        return "google"
    # Tagged local builds look like "llama3.1:8b"
    if ":" in m and any(family in m for family in _LOCAL_MODEL_FAMILIES):
        return "ollama"
    if "deepseek" in m:
        return "deepseek"
    return "anthropic"


class BackendRegistry:
    """
    Registry of backend descriptors.

    Built-ins are immutable. Custom descriptors are persisted one JSON file
    per backend under ``custom_dir`` and may not reuse a built-in id.
    """

    def __init__(
        self,
        custom_dir: Path,
        environ: Mapping[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        ollama_base_url: str | None = None,
    ):
        self.custom_dir = custom_dir
        self.environ = os.environ if environ is None else environ
        self._client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None

        self._builtins: dict[str, BackendDescriptor] = {}
        for descriptor in BUILTIN_BACKENDS:
            if descriptor.id == "ollama" and ollama_base_url:
                descriptor = descriptor.model_copy(update={"base_url": ollama_base_url.rstrip("/")})
            self._builtins[descriptor.id] = descriptor

        self._custom: dict[str, BackendDescriptor] = {}
        self.reload_custom()

    def reload_custom(self) -> None:
        """Re-read custom descriptors from disk, skipping invalid files."""
        self._custom = {}
        if not self.custom_dir.is_dir():
            return

        for path in sorted(self.custom_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                descriptor = BackendDescriptor.model_validate({**data, "is_builtin": False})
            except (OSError, ValueError, ValidationError) as e:
                logger.warning("Skipping invalid custom backend file", path=str(path), error=str(e))
                continue
            if descriptor.id in self._builtins:
                logger.warning("Custom backend shadows a built-in id, ignoring", id=descriptor.id)
                continue
            self._custom[descriptor.id] = descriptor

    def resolve_alias(self, name: str) -> str:
        key = name.lower()
        return PROVIDER_ALIASES.get(key, key)

    def get_provider(self, id_or_alias: str) -> BackendDescriptor | None:
        backend_id = self.resolve_alias(id_or_alias)
        return self._builtins.get(backend_id) or self._custom.get(backend_id)

    def all_providers(self) -> list[BackendDescriptor]:
        """Built-ins first, then custom descriptors."""
        return [*self._builtins.values(), *self._custom.values()]

    def add_custom(self, descriptor: BackendDescriptor) -> BackendDescriptor:
        """
        Register and persist a custom backend, replacing one with the same id.

        Raises:
            ValueError: If the id belongs to a built-in backend
        """
        if descriptor.id in self._builtins:
            raise ValueError(f"'{descriptor.id}' is a built-in backend and cannot be redefined")

        descriptor = descriptor.model_copy(update={"is_builtin": False})
        self.custom_dir.mkdir(parents=True, exist_ok=True)
        path = self.custom_dir / f"{descriptor.id}.json"
        path.write_text(
            descriptor.model_dump_json(indent=2, exclude={"is_builtin"}),
            encoding="utf-8",
        )
        self._custom[descriptor.id] = descriptor
        logger.info("Added custom backend", id=descriptor.id, base_url=descriptor.base_url)
        return descriptor

    def remove_custom(self, backend_id: str) -> bool:
        """Remove a custom backend. Built-ins cannot be removed."""
        if backend_id in self._builtins:
            return False

        existed = self._custom.pop(backend_id, None) is not None
        path = self.custom_dir / f"{backend_id}.json"
        try:
            path.unlink()
            existed = True
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete custom backend file", path=str(path), error=str(e))

        if existed:
            logger.info("Removed custom backend", id=backend_id)
        return existed

    def credential_for(self, descriptor: BackendDescriptor) -> str | None:
        if not descriptor.credential_env:
            return None
        return self.environ.get(descriptor.credential_env) or None

    async def is_available(self, id_or_alias: str) -> bool:
        """
        Whether a backend can be used right now.

        Local backends are probed over HTTP; remote ones need their
        credential environment variable set, if they declare one.
        """
        descriptor = self.get_provider(id_or_alias)
        if descriptor is None:
            return False

        if descriptor.is_local:
            return await self._probe_local(descriptor)

        if descriptor.credential_env:
            return self.credential_for(descriptor) is not None
        return True

    async def _probe_local(self, descriptor: BackendDescriptor) -> bool:
        path = "/api/tags" if descriptor.protocol is ProtocolFamily.LOCAL_DAEMON else "/models"
        try:
            response = await self._client.get(f"{descriptor.base_url}{path}", timeout=LOCAL_PROBE_TIMEOUT)
        except httpx.HTTPError as e:
            logger.debug("Local backend probe failed", id=descriptor.id, error=str(e))
            return False
        return response.is_success

    async def available_providers(self) -> list[BackendDescriptor]:
        providers = self.all_providers()
        flags = await asyncio.gather(*(self.is_available(p.id) for p in providers))
        return [p for p, ok in zip(providers, flags) if ok]

    async def get_models(self, id_or_alias: str) -> list[ModelSummary]:
        """
        List models for a backend.

        Static model lists win; otherwise the backend is asked live. Listing
        failures are logged and produce an empty list.
        """
        descriptor = self.get_provider(id_or_alias)
        if descriptor is None:
            return []
        if descriptor.models:
            return list(descriptor.models)

        try:
            if descriptor.protocol is ProtocolFamily.LOCAL_DAEMON:
                return await self._list_daemon_models(descriptor)
            return await self._list_openai_models(descriptor)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("Failed to list models", id=descriptor.id, error=str(e))
            return []

    async def _list_daemon_models(self, descriptor: BackendDescriptor) -> list[ModelSummary]:
        response = await self._client.get(f"{descriptor.base_url}/api/tags", timeout=MODEL_LISTING_TIMEOUT)
        response.raise_for_status()
        return [
            ModelSummary(
                id=m["name"],
                name=m["name"],
                provider=descriptor.id,
                size=(m.get("details") or {}).get("parameter_size"),
                is_free=True,
            )
            for m in response.json().get("models", [])
        ]

    async def _list_openai_models(self, descriptor: BackendDescriptor) -> list[ModelSummary]:
        headers = dict(descriptor.headers)
        credential = self.credential_for(descriptor)
        if credential:
            headers["Authorization"] = f"Bearer {credential}"

        response = await self._client.get(
            f"{descriptor.base_url}/models",
            headers=headers,
            timeout=MODEL_LISTING_TIMEOUT,
        )
        response.raise_for_status()
        return [
            ModelSummary(
                id=m["id"],
                name=m.get("name") or m["id"],
                provider=descriptor.id,
                context_length=m.get("context_length"),
                is_free=_listing_is_free(m),
            )
            for m in response.json().get("data", [])
        ]

    def parse_model_id(self, model_id: str) -> ParsedModel:
        """
        Split ``provider/model`` into its parts.

        The first path segment counts as a provider only when it names a
        known backend or alias and something follows it; otherwise the
        provider is inferred from the model name.
        """
        first, sep, rest = model_id.partition("/")
        descriptor = self.get_provider(first)
        if descriptor is not None and sep and rest:
            return ParsedModel(provider=descriptor.id, model=rest)
        return ParsedModel(provider=infer_provider(model_id), model=model_id)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _listing_is_free(entry: dict[str, Any]) -> bool | None:
    if str(entry.get("id", "")).endswith(":free"):
        return True
    pricing = entry.get("pricing")
    if not isinstance(pricing, dict):
        return None
    try:
        return float(pricing.get("prompt", 1)) == 0 and float(pricing.get("completion", 1)) == 0
    except (TypeError, ValueError):
        return None
