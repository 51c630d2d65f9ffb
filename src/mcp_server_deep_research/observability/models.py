"""Data models for research task observability."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    """Task execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStage(str, Enum):
    """Coarse progress stage of a research task."""

    INITIALIZING = "initializing"
    CLARIFYING = "clarifying"
    EXPANDING = "expanding"
    SEARCHING = "searching"
    EXTRACTING = "extracting"
    SYNTHESIZING = "synthesizing"
    FINALIZING = "finalizing"


class TaskRecord(BaseModel):
    """Record of a task execution for observability."""

    task_id: str
    tool_name: str  # run_deep_research, research_feedback
    status: TaskStatus = TaskStatus.PENDING
    stage: TaskStage | None = None

    # Timestamps
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # Progress tracking
    progress_current: int = 0
    progress_total: int = 0
    progress_message: str | None = None

    # Input/Output
    input_params: dict[str, Any] = Field(default_factory=dict)
    result: str | None = None
    error: str | None = None

    session_id: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Task duration in seconds, up to now for unfinished tasks."""
        if not self.started_at:
            return None
        end = self.completed_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    @property
    def progress_percent(self) -> float:
        if self.progress_total <= 0:
            return 0.0
        return min(100.0, (self.progress_current / self.progress_total) * 100)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskEvent(BaseModel):
    """One research progress event persisted for a task."""

    task_id: str
    seq: int
    event_type: str
    node_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
