"""
API Dependencies
================
Accessors for the governance components held in application state.
"""

from fastapi import Request

from llm_governor.context import GovernorContext
from llm_governor.services.dispatcher import Dispatcher


def get_context(request: Request) -> GovernorContext:
    return request.app.state.context


def get_dispatcher(request: Request) -> Dispatcher:
    """
    Return the application's dispatcher, creating it on first use.

    Creation is deferred so that a missing credential surfaces as a request
    error instead of preventing startup.
    """
    state = request.app.state
    if state.dispatcher is None:
        state.dispatcher = Dispatcher(state.context)
    return state.dispatcher
