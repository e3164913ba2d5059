"""Durable, file-based task state."""

import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from tandem.errors import ErrorKind, TandemError
from tandem.models import CLEANUP_FIELDS, TASK_ID_PATTERN, Config, Task
from tandem.utils.logger import get_logger
from tandem.utils.shell import get_git_root

logger = get_logger(__name__)

TaskMutator = Callable[[Task], Task]


def get_state_dir(config: Config, cwd: Optional[Path] = None) -> Path:
    """Resolve the state directory against the repository root (or cwd)."""
    state_dir = Path(config.defaults.state_dir).expanduser()
    if state_dir.is_absolute():
        return state_dir
    base = get_git_root(cwd) or Path(cwd or Path.cwd())
    return base / state_dir


class TaskStateStore:
    """One YAML record per task, written atomically.

    Records live at ``<state_dir>/<task_id>.yaml``. Writes go to a
    temporary file in the same directory which is then renamed over the
    record, so readers never observe a half-written file.
    """

    _locks: Dict[str, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def record_path(self, task_id: str) -> Path:
        if not TASK_ID_PATTERN.match(task_id):
            raise TandemError(ErrorKind.STATE_MANAGEMENT, f"Invalid task id: {task_id!r}")
        return self.state_dir / f"{task_id}.yaml"

    def initialize(self, task: Task) -> None:
        """Persist a new task record.

        Raises:
            TandemError: STATE_MANAGEMENT if a record already exists or
                cannot be written
        """
        with self._lock_for(task.task_id):
            if self.record_path(task.task_id).exists():
                raise TandemError(
                    ErrorKind.STATE_MANAGEMENT, f"Task {task.task_id} already exists"
                )
            self._write(task)
        logger.debug(f"Initialized state for task {task.task_id}")

    def get(self, task_id: str) -> Task:
        """Load a task record.

        Raises:
            TandemError: TASK_NOT_FOUND when missing, STATE_PARSE when the
                record is corrupt
        """
        return self._read(self.record_path(task_id), task_id)

    def update(self, task_id: str, mutator: TaskMutator) -> Task:
        """Re-read a task, apply mutator, stamp ``updated_at`` and write it back.

        Once a task is terminal only cleanup bookkeeping may change.

        Args:
            task_id: Task to update
            mutator: Pure function returning the new task value

        Returns:
            The task as written
        """
        with self._lock_for(task_id):
            current = self.get(task_id)
            updated = mutator(current)

            if not isinstance(updated, Task):
                raise TandemError(
                    ErrorKind.STATE_MANAGEMENT,
                    f"State mutator returned {type(updated).__name__}, expected Task",
                )
            if updated.task_id != task_id:
                raise TandemError(
                    ErrorKind.STATE_MANAGEMENT, f"Task id of {task_id} cannot change"
                )
            if current.is_terminal:
                changed = {
                    name for name in Task.model_fields
                    if getattr(current, name) != getattr(updated, name)
                } - CLEANUP_FIELDS
                if changed:
                    raise TandemError(
                        ErrorKind.STATE_MANAGEMENT,
                        f"Task {task_id} is {current.status.value}; refusing to change "
                        f"{', '.join(sorted(changed))}",
                    )

            updated = updated.model_copy(update={"updated_at": datetime.now()})
            self._write(updated)
        return updated

    def cleanup(self, task_id: str) -> None:
        """Delete a task record. A missing record is not an error."""
        path = self.record_path(task_id)
        with self._lock_for(task_id):
            try:
                path.unlink()
            except FileNotFoundError:
                logger.debug(f"State for task {task_id} already removed")
                return
            except OSError as e:
                raise TandemError(
                    ErrorKind.STATE_MANAGEMENT, f"Failed to remove state for {task_id}: {e}", e
                ) from e
            finally:
                self._forget_lock(task_id)
        logger.debug(f"Removed state for task {task_id}")

    def scan(self) -> Tuple[List[Task], Dict[Path, TandemError]]:
        """Read every record.

        Returns:
            Readable tasks (oldest first) and the errors for unreadable records
        """
        tasks: List[Task] = []
        errors: Dict[Path, TandemError] = {}
        if not self.state_dir.exists():
            return tasks, errors

        for path in sorted(self.state_dir.glob("*.yaml")):
            task_id = path.stem
            try:
                tasks.append(self._read(path, task_id))
            except TandemError as e:
                logger.warning(f"Unreadable task record {path}: {e}")
                errors[path] = e
        tasks.sort(key=lambda task: task.created_at)
        return tasks, errors

    def list_tasks(self) -> List[Task]:
        return self.scan()[0]

    def _read(self, path: Path, task_id: str) -> Task:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise TandemError(ErrorKind.TASK_NOT_FOUND, task_id, e) from e
        except yaml.YAMLError as e:
            raise TandemError(ErrorKind.STATE_PARSE, f"{path}: {e}", e) from e
        except OSError as e:
            raise TandemError(ErrorKind.STATE_MANAGEMENT, f"Failed to read {path}: {e}", e) from e

        if not isinstance(data, dict):
            raise TandemError(ErrorKind.STATE_PARSE, f"{path}: expected a mapping")
        try:
            return Task.model_validate(data)
        except ValidationError as e:
            raise TandemError(ErrorKind.STATE_PARSE, f"{path}: {e}", e) from e

    def _write(self, task: Task) -> None:
        path = self.record_path(task.task_id)
        data = task.model_dump(mode="json")
        tmp_path = None
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.state_dir, prefix=f".{path.name}.", suffix=".tmp"
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()
            raise TandemError(
                ErrorKind.STATE_MANAGEMENT, f"Failed to write state for {task.task_id}: {e}", e
            ) from e
        logger.debug(f"Saved state for task {task.task_id} ({task.status.value})")

    @classmethod
    def _lock_for(cls, task_id: str) -> threading.Lock:
        with cls._locks_guard:
            return cls._locks.setdefault(task_id, threading.Lock())

    @classmethod
    def _forget_lock(cls, task_id: str) -> None:
        with cls._locks_guard:
            cls._locks.pop(task_id, None)
