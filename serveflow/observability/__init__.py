"""
Observability for serveflow.

Logging is loguru based. See ``serveflow.observability.logging``.
"""

from serveflow.observability.logging import (
    bind_workflow_context,
    configure_logging,
    configure_logging_from_env,
    get_logger,
    log_workflow_event,
    step_logging_context,
    workflow_logging_context,
)

__all__ = [
    "bind_workflow_context",
    "configure_logging",
    "configure_logging_from_env",
    "get_logger",
    "log_workflow_event",
    "step_logging_context",
    "workflow_logging_context",
]
