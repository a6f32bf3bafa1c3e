"""
Loguru logging configuration for serveflow.

Engine events (context creation, step submission, cleanup, responses) are
logged with an ``event_type`` extra so they can be filtered in log
aggregators. They are emitted at DEBUG level unless the endpoint is served
with ``verbose=True``, which raises them to INFO.

Features:
- Environment variable configuration for production deployments
- Standard JSON schema compatible with ELK/Loki/Datadog
- Context managers for scoped logging
"""

import json
import os
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator

from loguru import logger

# Extras grouped under "context" in JSON logs
CONTEXT_KEYS = {"run_id", "step_id", "step_name", "event_type"}


def configure_logging(
    level: str = "INFO",
    log_file: str | None = None,
    json_logs: bool = False,
    show_context: bool = True,
) -> None:
    """
    Configure serveflow logging with loguru.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        json_logs: If True, output logs in JSON format
        show_context: If True, include run and step context in log messages

    Examples:
        # Debug mode with file output
        configure_logging(level="DEBUG", log_file="workflow.log")

        # Production mode with JSON logs
        configure_logging(level="INFO", json_logs=True)
    """
    logger.remove()

    if json_logs:
        logger.add(
            sys.stderr,
            format="{message}",
            level=level,
            colorize=False,
            serialize=False,
            filter=_create_json_filter(show_context),
        )
    else:
        console_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        )

        def format_with_context(record: dict[str, Any]) -> bool:
            """Add context fields to the format string dynamically."""
            extra_str = ""
            if show_context and record["extra"]:
                context_parts = []
                if "event_type" in record["extra"]:
                    context_parts.append(f"event={record['extra']['event_type']}")
                if "run_id" in record["extra"]:
                    context_parts.append(f"run_id={record['extra']['run_id']}")
                if "step_id" in record["extra"]:
                    context_parts.append(f"step_id={record['extra']['step_id']}")
                if context_parts:
                    extra_str = " | " + " ".join(context_parts)
            record["extra"]["_context"] = extra_str
            return True

        logger.add(
            sys.stderr,
            format=console_format + "{extra[_context]}",
            level=level,
            colorize=True,
            filter=format_with_context,  # type: ignore[arg-type]
        )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        if json_logs:
            logger.add(
                log_file,
                format="{message}",
                level=level,
                rotation="100 MB",
                retention="30 days",
                compression="gz",
                serialize=False,
                filter=_create_json_filter(show_context),
            )
        else:
            logger.add(
                log_file,
                format=(
                    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                    "{level: <8} | "
                    "{name}:{function}:{line} | "
                    "{message} | "
                    "{extra}"
                ),
                level=level,
                rotation="100 MB",
                retention="30 days",
                compression="gz",
            )

    logger.debug(f"serveflow logging configured at level {level}")


def _create_json_filter(show_context: bool) -> Any:
    def json_filter(record: dict[str, Any]) -> bool:
        record["message"] = _format_for_json(record, show_context)
        return True

    return json_filter


def _format_for_json(record: dict[str, Any], show_context: bool = True) -> str:
    """Format a log record as a JSON line for log aggregators."""
    context = {}
    extra = {}

    for key, value in record["extra"].items():
        if key.startswith("_"):
            continue
        if key in CONTEXT_KEYS:
            context[key] = value
        else:
            extra[key] = _safe_serialize(value)

    log_obj: dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "logger": record["name"],
        "function": record["function"],
        "line": record["line"],
    }

    if show_context and context:
        log_obj["context"] = context

    if extra:
        log_obj["extra"] = extra

    if record["exception"] is not None:
        log_obj["exception"] = {
            "type": record["exception"].type.__name__ if record["exception"].type else None,
            "value": str(record["exception"].value) if record["exception"].value else None,
            "traceback": record["exception"].traceback is not None,
        }

    return json.dumps(log_obj, default=str)


def _safe_serialize(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool, type(None))):
        return value
    if isinstance(value, (list, tuple)):
        return [_safe_serialize(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _safe_serialize(v) for k, v in value.items()}
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def configure_logging_from_env() -> None:
    """Configure logging from environment variables.

    Environment variables:
        SERVEFLOW_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        SERVEFLOW_LOG_FORMAT: Log format ("json" or "console")
        SERVEFLOW_LOG_FILE: Optional file path for log output
        SERVEFLOW_LOG_CONTEXT: Whether to show context ("true" or "false")
    """
    level = os.getenv("SERVEFLOW_LOG_LEVEL", "INFO").upper()
    format_type = os.getenv("SERVEFLOW_LOG_FORMAT", "console").lower()
    log_file = os.getenv("SERVEFLOW_LOG_FILE")
    show_context = os.getenv("SERVEFLOW_LOG_CONTEXT", "true").lower() in ("true", "1", "yes")

    configure_logging(
        level=level,
        log_file=log_file,
        json_logs=(format_type == "json"),
        show_context=show_context,
    )


def get_logger(name: str | None = None) -> Any:
    """Return the loguru logger, optionally bound to a module name."""
    if name:
        return logger.bind(module=name)
    return logger


def bind_workflow_context(run_id: str) -> Any:
    """Bind the workflow run id to all messages of the returned logger."""
    return logger.bind(run_id=run_id)


def log_workflow_event(
    event_type: str,
    message: str,
    run_id: str | None = None,
    verbose: bool = False,
    **details: Any,
) -> None:
    """
    Log an engine event.

    Args:
        event_type: Event name, e.g. "SUBMIT_STEP" or "RUN_SINGLE"
        message: Human-readable message
        run_id: Workflow run the event belongs to
        verbose: Log at INFO instead of DEBUG
        **details: Extra fields attached to the record
    """
    bound = logger.bind(event_type=event_type, **details)
    if run_id is not None:
        bound = bound.bind(run_id=run_id)
    bound.log("INFO" if verbose else "DEBUG", message)


@contextmanager
def workflow_logging_context(run_id: str) -> Generator[None, None, None]:
    """Context manager binding the run id to all logs within scope.

    Example:
        with workflow_logging_context("wfr_123"):
            logger.info("Handling invocation")  # Includes run_id
    """
    with logger.contextualize(run_id=run_id):
        yield


@contextmanager
def step_logging_context(run_id: str, step_id: int, step_name: str) -> Generator[None, None, None]:
    """Context manager binding step metadata to all logs within scope."""
    with logger.contextualize(run_id=run_id, step_id=step_id, step_name=step_name):
        yield


# Default configuration on import
# Users can override by calling configure_logging() or configure_logging_from_env()
if os.getenv("SERVEFLOW_LOG_LEVEL") or os.getenv("SERVEFLOW_LOG_FORMAT"):
    configure_logging_from_env()
