"""
LLM Governor
============
Request governance for AI coding assistants: backend dispatch, rate
limiting, response caching, cost budgets and error classification.
"""

__version__ = "1.0.0"
