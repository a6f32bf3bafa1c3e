"""
serveflow - Queue-driven workflows for serverless Python endpoints

A workflow is an ordinary async function served over HTTP. Each step it
requests runs in an invocation of its own: the queue service calls the
endpoint again with the history of completed steps, the function is
replayed up to the first new step, that step runs, and its result is
handed back to the queue. Sleeps and third-party calls are delegated to the
queue service, so no invocation ever waits.

Quick Start:
    >>> import serveflow
    >>> from serveflow import serve
    >>>
    >>> # Configure defaults (or set QSTASH_TOKEN and the signing keys)
    >>> serveflow.configure(qstash_token="...")
    >>>
    >>> async def onboarding(context):
    >>>     user = context.request_payload
    >>>     await context.run("send-welcome", send_welcome_email, user["email"])
    >>>     await context.sleep("wait-three-days", "3d")
    >>>     await context.run("send-tips", send_tips_email, user["email"])
    >>>
    >>> # Async handler taking an httpx.Request, see serveflow.frameworks
    >>> handler = serve(onboarding)
"""

__version__ = "0.1.0"

# Configuration
from serveflow.config import configure, get_config, reset_config

# Serving
from serveflow.engine.serve import FinishCondition, serve

# Context API
from serveflow.context import (
    WorkflowContext,
    get_context,
    has_context,
)

# Steps
from serveflow.core.steps import (
    CallStep,
    InitialStep,
    RunStep,
    SleepForStep,
    SleepUntilStep,
    Step,
    StepType,
)

# Exceptions
from serveflow.core.exceptions import (
    ConfigurationError,
    QueueError,
    RateLimitError,
    SignatureError,
    WorkflowAbort,
    WorkflowError,
    WorkflowProtocolError,
)

# Queue client and request verification
from serveflow.client import Client, RetryConfig
from serveflow.security import Receiver, sign

# Logging and observability
from serveflow.observability.logging import (
    bind_workflow_context,
    configure_logging,
    get_logger,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "configure",
    "get_config",
    "reset_config",
    # Serving
    "serve",
    "FinishCondition",
    # Context
    "WorkflowContext",
    "get_context",
    "has_context",
    # Steps
    "Step",
    "StepType",
    "InitialStep",
    "RunStep",
    "SleepForStep",
    "SleepUntilStep",
    "CallStep",
    # Exceptions
    "WorkflowError",
    "WorkflowProtocolError",
    "WorkflowAbort",
    "SignatureError",
    "QueueError",
    "RateLimitError",
    "ConfigurationError",
    # Client and verification
    "Client",
    "RetryConfig",
    "Receiver",
    "sign",
    # Logging
    "configure_logging",
    "get_logger",
    "bind_workflow_context",
]
