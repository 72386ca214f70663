"""Domain models for tasks, repositories and sync results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Older task files use CamelCase spellings and a "NeedsHelp" status, which is
# now "blocked".
_LEGACY_STATUS = {
    "todo": "todo",
    "inprogress": "in_progress",
    "in_progress": "in_progress",
    "needshelp": "blocked",
    "needs_help": "blocked",
    "blocked": "blocked",
    "done": "done",
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def split_repository_id(repository_id: str) -> tuple[str, str]:
    """Split ``owner/name`` into its parts, rejecting anything else."""

    try:
        owner, name = repository_id.strip().split("/", 1)
    except ValueError as e:
        raise ValueError(
            f"Repository must be in the form 'owner/name', got {repository_id!r}"
        ) from e
    if not owner.strip() or not name.strip() or "/" in name:
        raise ValueError(f"Repository must be in the form 'owner/name', got {repository_id!r}")
    return owner.strip(), name.strip()


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Status(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"

    @classmethod
    def parse(cls, value: str) -> Status:
        normalized = value.strip().replace("-", "_").replace(" ", "_").lower()
        mapped = _LEGACY_STATUS.get(normalized) or _LEGACY_STATUS.get(normalized.replace("_", ""))
        if mapped is None:
            raise ValueError(f"Unknown status: {value!r}")
        return cls(mapped)


class RemoteLink(BaseModel):
    """The (repository, issue number) pair tying a task to a remote issue."""

    repository: str
    issue_number: int = Field(gt=0)
    state: str = Field(default="open", description="Last remote open/closed state seen")
    updated_at: datetime | None = Field(
        default=None, description="Remote updated_at as of the last sync of this pair"
    )

    @field_validator("updated_at")
    @classmethod
    def _normalize_tz(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class Task(BaseModel):
    id: int
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    status: Status = Status.TODO
    due_date: date | None = None
    repository: str
    remote_link: RemoteLink | None = None
    last_synced_at: datetime | None = None
    local_modified_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Task title is required")
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _lenient_priority(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _lenient_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Status.parse(value)
        return value

    @field_validator("last_synced_at", "local_modified_at", "created_at")
    @classmethod
    def _normalize_tz(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _link_matches_repository(self) -> Task:
        if self.remote_link is not None and self.remote_link.repository != self.repository:
            raise ValueError(
                f"Task {self.id} belongs to {self.repository!r} but is linked to "
                f"{self.remote_link.repository!r}"
            )
        return self

    @property
    def is_linked(self) -> bool:
        return self.remote_link is not None

    @property
    def remote_state(self) -> str:
        """Open/closed state implied by the local status."""

        return "closed" if self.status is Status.DONE else "open"


class Repository(BaseModel):
    owner: str
    name: str
    credential: str = Field(
        default="",
        description="Credential reference: 'env:VAR', a literal token, or empty for the default",
    )
    display_name: str = ""
    enabled: bool = True
    sync_cursor: datetime | None = None
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _fill_display_name(self) -> Repository:
        split_repository_id(f"{self.owner}/{self.name}")
        if not self.display_name.strip():
            self.display_name = self.name
        return self

    @property
    def id(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True, slots=True)
class RemoteIssue:
    """Issue state as read from the remote tracker. Never persisted."""

    number: int
    title: str
    body: str
    state: str
    labels: tuple[str, ...]
    updated_at: datetime

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"


class OutcomeKind(str, Enum):
    CREATED_LOCAL = "created-local"
    CREATED_REMOTE = "created-remote"
    UPDATED_LOCAL = "updated-local"
    UPDATED_REMOTE = "updated-remote"
    CONFLICT = "conflict"


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    kind: OutcomeKind
    task_id: int
    issue_number: int
    title: str


@dataclass(slots=True)
class SyncRecord:
    """Outcome of one repository sync run."""

    repository: str
    outcomes: list[SyncOutcome] = field(default_factory=list)
    unchanged: int = 0
    cursor: datetime | None = None
    attempts: int = 0
    cancelled: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.outcomes

    def add(self, kind: OutcomeKind, *, task_id: int, issue_number: int, title: str) -> None:
        self.outcomes.append(
            SyncOutcome(kind=kind, task_id=task_id, issue_number=issue_number, title=title)
        )

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind is kind)

    def summary(self) -> str:
        parts = [f"{kind.value}={self.count(kind)}" for kind in OutcomeKind if self.count(kind)]
        parts.append(f"unchanged={self.unchanged}")
        text = f"{self.repository}: " + ", ".join(parts)
        if self.cancelled:
            text += " (cancelled)"
        return text
