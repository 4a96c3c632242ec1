"""
Companion HTTP API
==================
FastAPI routes exposing the governance layer.
"""

from llm_governor.api.router import api_router

__all__ = ["api_router"]
