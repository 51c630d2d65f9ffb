"""Task tracking, structured logging and the research event log."""

from .logging import (
    bind_task_context,
    clear_task_context,
    configure_stderr_logging,
    get_current_task_id,
    get_task_logger,
    setup_structured_logging,
)
from .models import TaskEvent, TaskRecord, TaskStage, TaskStatus
from .store import TaskStore, get_task_store

__all__ = [
    "TaskEvent",
    "TaskRecord",
    "TaskStage",
    "TaskStatus",
    "TaskStore",
    "bind_task_context",
    "clear_task_context",
    "configure_stderr_logging",
    "get_current_task_id",
    "get_task_logger",
    "get_task_store",
    "setup_structured_logging",
]
