"""Tests for workflow events and cancellation."""

import logging

import pytest

from tandem.errors import ErrorKind, TandemError
from tandem.events import EventKind, LoggingReporter, RecordingReporter, WorkflowEvent
from tandem.utils.cancellation import CancellationToken


class TestReporters:
    """Test event sinks."""

    def test_recording_reporter(self):
        reporter = RecordingReporter()
        reporter.emit(WorkflowEvent(kind=EventKind.TASK_STARTED, task_id="task-1"))
        reporter.emit(WorkflowEvent(kind=EventKind.COMPLETED, task_id="task-1", data={"pr_number": 7}))

        assert reporter.kinds() == [EventKind.TASK_STARTED, EventKind.COMPLETED]
        assert reporter.events[1].data == {"pr_number": 7}

    def test_logging_reporter_levels(self, caplog):
        caplog.set_level(logging.INFO, logger="tandem")
        reporter = LoggingReporter()
        reporter.emit(WorkflowEvent(kind=EventKind.ITERATION_ADVANCED, task_id="task-1", message="again"))
        reporter.emit(WorkflowEvent(kind=EventKind.FAILED, task_id="task-1", message="boom"))

        levels = {record.getMessage(): record.levelno for record in caplog.records}
        assert levels["[task-1] iteration_advanced: again"] == logging.INFO
        assert levels["[task-1] failed: boom"] == logging.WARNING


class TestCancellationToken:
    """Test cooperative cancellation."""

    def test_initial_state(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_cancel(self):
        token = CancellationToken()
        token.cancel("Interrupted by user")

        with pytest.raises(TandemError) as exc_info:
            token.raise_if_cancelled()
        assert exc_info.value.kind == ErrorKind.CANCELLED
        assert exc_info.value.message == "Interrupted by user"

    def test_first_reason_kept(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"
