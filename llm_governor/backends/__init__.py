"""
Content Backends
================
One backend per protocol family, all behind ``ContentBackend``.
"""

from llm_governor.backends.base import ContentBackend, HttpBackend, estimate_tokens
from llm_governor.backends.oauth import OAuthBackend, OAuthCredentials, OAuthTokenManager
from llm_governor.backends.ollama import OllamaBackend
from llm_governor.backends.openai_compatible import OpenAICompatibleBackend

__all__ = [
    "ContentBackend",
    "HttpBackend",
    "OAuthBackend",
    "OAuthCredentials",
    "OAuthTokenManager",
    "OllamaBackend",
    "OpenAICompatibleBackend",
    "estimate_tokens",
]
