"""
Governance Services
===================
Cost tracking, backend registry and the content-generation dispatcher.
"""

from llm_governor.services.cost_tracker import CostTracker
from llm_governor.services.dispatcher import Dispatcher
from llm_governor.services.registry import BackendRegistry, infer_provider

__all__ = ["BackendRegistry", "CostTracker", "Dispatcher", "infer_provider"]
