"""
Workflow context for route functions.

The context is passed to the route function and is also available through
``get_context()`` while the route function runs.
"""

from serveflow.context.base import (
    WorkflowContext,
    get_context,
    has_context,
    reset_context,
    set_context,
)

__all__ = [
    "WorkflowContext",
    "get_context",
    "has_context",
    "reset_context",
    "set_context",
]
