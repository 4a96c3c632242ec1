"""
Background Jobs
================
Scheduled maintenance jobs.
"""

from llm_governor.jobs.scheduler import CacheSweeper

__all__ = ["CacheSweeper"]
