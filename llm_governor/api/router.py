"""
API Router
==========
Main API router combining all endpoint modules.
"""

from fastapi import APIRouter

from llm_governor.api.endpoints import generate, health, pricing, providers, usage

api_router = APIRouter()

api_router.include_router(health.router, tags=["Health"])
api_router.include_router(providers.router, prefix="/providers", tags=["Providers"])
api_router.include_router(pricing.router, prefix="/pricing", tags=["Pricing"])
api_router.include_router(usage.router, prefix="/usage", tags=["Usage"])
api_router.include_router(generate.router, tags=["Generation"])
