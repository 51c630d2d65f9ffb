"""Structured logging with per-task context using structlog and contextvars."""

import logging
import os
import sys
from contextvars import ContextVar

import structlog

current_task_id: ContextVar[str | None] = ContextVar("current_task_id", default=None)
current_tool_name: ContextVar[str | None] = ContextVar("current_tool_name", default=None)

# Dependencies that are chatty at INFO and would drown the research log.
NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncio",
    "aiosqlite",
    "playwright",
    "browser_use",
    "openai",
    "anthropic",
)

_configured = False


def configure_stderr_logging(level: str = "WARNING") -> None:
    """Send all stdlib logging to stderr.

    stdout carries the JSON-RPC stream in stdio transport, so nothing may be
    printed there.
    """
    os.environ.setdefault("BROWSER_USE_LOGGING_LEVEL", "warning")

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root = logging.getLogger()
    root.handlers = [stderr_handler]
    root.setLevel(getattr(logging, level.upper()))

    for logger_name in NOISY_LOGGERS:
        dep_logger = logging.getLogger(logger_name)
        dep_logger.setLevel(logging.WARNING)
        dep_logger.handlers = [stderr_handler]
        dep_logger.propagate = False


def setup_structured_logging(level: str = "INFO") -> None:
    """Configure structlog with JSON output and per-task context.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    global _configured
    if _configured:
        return

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
    )

    _configured = True


def bind_task_context(task_id: str, tool_name: str) -> None:
    """Bind task context for all subsequent logs in this async context."""
    current_task_id.set(task_id)
    current_tool_name.set(tool_name)
    structlog.contextvars.bind_contextvars(task_id=task_id, tool_name=tool_name)


def clear_task_context() -> None:
    """Clear task context after task completes."""
    current_task_id.set(None)
    current_tool_name.set(None)
    structlog.contextvars.clear_contextvars()


def get_task_logger(name: str = "mcp_server_deep_research") -> structlog.stdlib.BoundLogger:
    """Get a structlog logger that carries the bound task context."""
    return structlog.get_logger(name)


def get_current_task_id() -> str | None:
    return current_task_id.get()


def get_current_tool_name() -> str | None:
    return current_tool_name.get()
