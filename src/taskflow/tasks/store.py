"""JSON-file backed store for local tasks.

The store is the only owner of :class:`~taskflow.models.Task` objects. Callers
(including the sync engine) get copies and go through :meth:`TaskStore.update`
so that modification timestamps stay consistent.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from taskflow.errors import StoreError, StoreErrorKind
from taskflow.models import Priority, RemoteLink, Status, Task, utc_now
from taskflow.persistence import atomic_write_json, read_json

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_IMMUTABLE_FIELDS = {"id", "created_at", "local_modified_at"}


class UpdateOrigin(str, Enum):
    LOCAL = "local"
    SYNC_PULL = "sync_pull"
    SYNC_PUSH = "sync_push"


class UntrackedIssue(BaseModel):
    """A remote issue whose local task was deleted."""

    repository: str
    issue_number: int


class TaskStoreDocument(BaseModel):
    version: int = SCHEMA_VERSION
    next_id: int = 1
    tasks: list[Task] = Field(default_factory=list)
    untracked: list[UntrackedIssue] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class TaskFilter:
    repository: str | None = None
    status: Status | None = None
    priority: Priority | None = None
    linked: bool | None = None

    def matches(self, task: Task) -> bool:
        if self.repository is not None and task.repository != self.repository:
            return False
        if self.status is not None and task.status is not self.status:
            return False
        if self.priority is not None and task.priority is not self.priority:
            return False
        if self.linked is not None and task.is_linked != self.linked:
            return False
        return True


class TaskStore:
    """In-memory task table loaded from, and flushed to, a JSON file."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._path = path
        self._clock = clock
        self._lock = threading.RLock()
        self._tasks: dict[int, Task] = {}
        self._untracked: set[tuple[str, int]] = set()
        self._next_id = 1
        self._dirty = False

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        raw = read_json(self._path)
        with self._lock:
            if raw is None:
                logger.info("No task file found, starting fresh", extra={"path": str(self._path)})
                document = TaskStoreDocument()
            else:
                # Older files were a bare list of tasks.
                if isinstance(raw, list):
                    raw = {"tasks": raw}
                try:
                    document = TaskStoreDocument.model_validate(raw)
                except ValueError as e:
                    raise StoreError(
                        StoreErrorKind.PERSISTENCE_FAILURE,
                        f"Task file {self._path} has unexpected content: {e}",
                    ) from e

            self._tasks = {t.id: t for t in document.tasks}
            self._untracked = {(u.repository, u.issue_number) for u in document.untracked}
            highest = max(self._tasks, default=0)
            self._next_id = max(document.next_id, highest + 1)
            self._dirty = False
        logger.info(
            "Tasks loaded", extra={"path": str(self._path), "task_count": len(self._tasks)}
        )

    def flush(self) -> None:
        with self._lock:
            document = TaskStoreDocument(
                next_id=self._next_id,
                tasks=[self._tasks[k] for k in sorted(self._tasks)],
                untracked=[
                    UntrackedIssue(repository=repo, issue_number=num)
                    for repo, num in sorted(self._untracked)
                ],
            )
            atomic_write_json(self._path, document.model_dump(mode="json"))
            self._dirty = False
        logger.debug("Tasks flushed", extra={"path": str(self._path)})

    @property
    def dirty(self) -> bool:
        return self._dirty

    def create(
        self,
        *,
        title: str,
        repository: str,
        description: str = "",
        priority: Priority = Priority.MEDIUM,
        status: Status = Status.TODO,
        due_date: date | None = None,
        remote_link: RemoteLink | None = None,
        local_modified_at: datetime | None = None,
        last_synced_at: datetime | None = None,
    ) -> Task:
        with self._lock:
            now = self._clock()
            task = Task(
                id=self._next_id,
                title=title,
                description=description,
                priority=priority,
                status=status,
                due_date=due_date,
                repository=repository,
                remote_link=remote_link,
                last_synced_at=last_synced_at,
                local_modified_at=local_modified_at or now,
                created_at=now,
            )
            self._tasks[task.id] = task
            self._next_id += 1
            self._dirty = True
            logger.debug("Task created", extra={"task_id": task.id, "repository": repository})
            return task.model_copy(deep=True)

    def get(self, task_id: int) -> Task:
        with self._lock:
            return self._require(task_id).model_copy(deep=True)

    def list(self, task_filter: TaskFilter | None = None) -> list[Task]:
        with self._lock:
            tasks = [self._tasks[k] for k in sorted(self._tasks)]
            if task_filter is not None:
                tasks = [t for t in tasks if task_filter.matches(t)]
            return [t.model_copy(deep=True) for t in tasks]

    def find_by_remote(self, repository: str, issue_number: int) -> Task | None:
        with self._lock:
            for task in self._tasks.values():
                link = task.remote_link
                if link and link.repository == repository and link.issue_number == issue_number:
                    return task.model_copy(deep=True)
            return None

    def is_untracked(self, repository: str, issue_number: int) -> bool:
        with self._lock:
            return (repository, issue_number) in self._untracked

    def update(
        self,
        task_id: int,
        fields: Mapping[str, Any],
        *,
        origin: UpdateOrigin = UpdateOrigin.LOCAL,
        remote_updated_at: datetime | None = None,
    ) -> Task:
        """Apply ``fields`` to a task.

        ``origin`` decides what happens to ``local_modified_at``: a local edit
        stamps the current time, a sync pull stamps ``remote_updated_at`` (so
        the pulled change does not look like a newer local edit next time), and
        sync bookkeeping after a push leaves it alone.
        """

        unknown = set(fields) - set(Task.model_fields)
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        immutable = set(fields) & _IMMUTABLE_FIELDS
        if immutable:
            raise ValueError(f"Task fields cannot be updated: {sorted(immutable)}")
        if origin is UpdateOrigin.SYNC_PULL and remote_updated_at is None:
            raise ValueError("remote_updated_at is required for a sync pull")

        with self._lock:
            current = self._require(task_id)
            data = current.model_dump()
            data.update(fields)
            if origin is UpdateOrigin.LOCAL:
                data["local_modified_at"] = self._clock()
            elif origin is UpdateOrigin.SYNC_PULL:
                data["local_modified_at"] = remote_updated_at

            updated = Task.model_validate(data)
            self._tasks[task_id] = updated
            self._dirty = True
            logger.debug(
                "Task updated",
                extra={"task_id": task_id, "origin": origin.value, "fields": sorted(fields)},
            )
            return updated.model_copy(deep=True)

    def delete(self, task_id: int) -> Task:
        """Stop tracking a task locally. The remote issue, if any, is left untouched."""

        with self._lock:
            task = self._require(task_id)
            del self._tasks[task_id]
            if task.remote_link is not None:
                self._untracked.add((task.remote_link.repository, task.remote_link.issue_number))
            self._dirty = True
        logger.info(
            "Task deleted",
            extra={
                "task_id": task_id,
                "issue_number": task.remote_link.issue_number if task.remote_link else None,
            },
        )
        return task

    def _require(self, task_id: int) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise StoreError(StoreErrorKind.NOT_FOUND, f"Task {task_id} not found")
        return task
