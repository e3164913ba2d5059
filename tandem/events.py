"""Workflow lifecycle events and the reporters that receive them."""

from datetime import datetime
from enum import Enum
from typing import Any, List, Protocol

from pydantic import BaseModel, Field

from tandem.utils.logger import get_logger

logger = get_logger(__name__)


class EventKind(str, Enum):
    """Lifecycle events emitted by the workflow."""

    TASK_STARTED = "task_started"
    ITERATION_ADVANCED = "iteration_advanced"
    COMPLETED = "completed"
    FAILED = "failed"
    CLEANUP_FAILED = "cleanup_failed"


class WorkflowEvent(BaseModel):
    """A single lifecycle event."""

    kind: EventKind = Field(description="Event kind")
    task_id: str | None = Field(default=None, description="Task the event belongs to")
    iteration: int = Field(default=0, description="current_iteration when emitted")
    message: str = Field(default="", description="Human readable summary")
    data: dict[str, Any] = Field(default_factory=dict, description="Event details")
    timestamp: datetime = Field(default_factory=datetime.now, description="Emission time")


class Reporter(Protocol):
    def emit(self, event: WorkflowEvent) -> None: ...


class LoggingReporter:
    """Writes events to the tandem logger."""

    def emit(self, event: WorkflowEvent) -> None:
        text = f"[{event.task_id}] {event.kind.value}: {event.message}"
        if event.kind in (EventKind.FAILED, EventKind.CLEANUP_FAILED):
            logger.warning(text)
        else:
            logger.info(text)


class RecordingReporter:
    """Keeps events in memory."""

    def __init__(self):
        self.events: List[WorkflowEvent] = []

    def emit(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[EventKind]:
        return [event.kind for event in self.events]
