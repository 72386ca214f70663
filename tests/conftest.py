"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from taskflow.errors import RemoteNotFound
from taskflow.github.gateway import IssuePage, IssuePages, RemoteIssueGateway
from taskflow.models import RemoteIssue
from taskflow.repositories.registry import RepositoryRegistry
from taskflow.sync.reconciler import Reconciler
from taskflow.tasks.store import TaskStore

START = datetime(2025, 1, 1, 8, 0, tzinfo=UTC)
REPO = "octo-org/octo-repo"

_SETTINGS_ENV_VARS = (
    "TASKFLOW_GITHUB_TOKEN",
    "GITHUB_BASE_URL",
    "LOG_LEVEL",
    "TASKFLOW_STATE_PATH",
    "TASKFLOW_SYNC_MAX_ATTEMPTS",
    "TASKFLOW_SYNC_RETRY_BACKOFF_SECONDS",
    "TASKFLOW_SYNC_MAX_RETRY_AFTER_SECONDS",
    "TASKFLOW_SYNC_WORKERS",
    "TASKFLOW_REQUEST_TIMEOUT_SECONDS",
    "TASKFLOW_IMPORT_CLOSED_ISSUES",
)


def at(hour: int, minute: int = 0) -> datetime:
    """A time on the test day."""
    return START.replace(hour=hour, minute=minute)


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now

    def advance(self, minutes: int = 1) -> datetime:
        self.now = self.now + timedelta(minutes=minutes)
        return self.now


class _FakePages(IssuePages):
    def __init__(self, gateway: FakeIssueGateway, repo: str, cursor: datetime | None) -> None:
        self._gateway = gateway
        self._repo = repo
        self._cursor = cursor

    def __iter__(self) -> Iterator[IssuePage]:
        self._gateway._maybe_fail("list")
        issues = sorted(
            (
                issue
                for issue in self._gateway.issues.get(self._repo, {}).values()
                if self._cursor is None or issue.updated_at >= self._cursor
            ),
            key=lambda i: (i.updated_at, i.number),
        )
        size = self._gateway.page_size
        for index in range(0, max(len(issues), 1), size):
            if index > 0:
                self._gateway._maybe_fail("page")
            yield issues[index : index + size]


class FakeIssueGateway(RemoteIssueGateway):
    """In-memory issue tracker.

    ``fail_on[op]`` is a queue consumed one entry per call of ``op``
    ("list", "page", "create", "update", "close"); an exception entry is raised,
    ``None`` lets the call through.
    """

    def __init__(self, clock: FakeClock, *, page_size: int = 2) -> None:
        self.clock = clock
        self.page_size = page_size
        self.issues: dict[str, dict[int, RemoteIssue]] = {}
        self.fail_on: dict[str, list[Exception | None]] = {}
        self.calls: list[tuple[str, str]] = []
        self.cursors: list[datetime | None] = []
        self.after_mutation: Callable[[str], None] | None = None
        self.closed = 0

    def seed(
        self,
        repo: str = REPO,
        *,
        title: str,
        body: str = "",
        state: str = "open",
        updated_at: datetime | None = None,
        number: int | None = None,
    ) -> RemoteIssue:
        issues = self.issues.setdefault(repo, {})
        number = number or max(issues, default=0) + 1
        issue = RemoteIssue(
            number=number,
            title=title,
            body=body,
            state=state,
            labels=(),
            updated_at=updated_at or self.clock(),
        )
        issues[number] = issue
        return issue

    def edit(self, number: int, repo: str = REPO, **changes: Any) -> RemoteIssue:
        """Simulate someone editing the issue on the remote side."""
        current = self.issues[repo][number]
        data = {
            "number": current.number,
            "title": current.title,
            "body": current.body,
            "state": current.state,
            "labels": current.labels,
            "updated_at": self.clock(),
        }
        data.update(changes)
        issue = RemoteIssue(**data)
        self.issues[repo][number] = issue
        return issue

    def issue(self, number: int, repo: str = REPO) -> RemoteIssue:
        return self.issues[repo][number]

    def mutations(self, op: str | None = None) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] != "list" and (op is None or c[0] == op)]

    def _maybe_fail(self, op: str) -> None:
        queue = self.fail_on.get(op)
        if queue:
            failure = queue.pop(0)
            if failure is not None:
                raise failure

    def _mutated(self, op: str) -> None:
        if self.after_mutation is not None:
            self.after_mutation(op)

    def list_issues(self, repo: str, cursor: datetime | None) -> IssuePages:
        self.calls.append(("list", repo))
        self.cursors.append(cursor)
        return _FakePages(self, repo, cursor)

    def create_issue(self, repo: str, title: str, body: str) -> RemoteIssue:
        self._maybe_fail("create")
        self.calls.append(("create", repo))
        issue = self.seed(repo, title=title, body=body)
        self._mutated("create")
        return issue

    def update_issue(self, repo: str, number: int, fields: Mapping[str, Any]) -> RemoteIssue:
        self._maybe_fail("update")
        if number not in self.issues.get(repo, {}):
            raise RemoteNotFound(f"{repo}#{number}")
        self.calls.append(("update", repo))
        issue = self.edit(number, repo, **dict(fields))
        self._mutated("update")
        return issue

    def close_issue(self, repo: str, number: int) -> RemoteIssue:
        self._maybe_fail("close")
        self.calls.append(("close", repo))
        issue = self.edit(number, repo, state="closed")
        self._mutated("close")
        return issue

    def close(self) -> None:
        self.closed += 1


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's environment and `.env` out of the tests."""
    for name in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway(clock: FakeClock) -> FakeIssueGateway:
    return FakeIssueGateway(clock)


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def store(temp_state_dir: Path, clock: FakeClock) -> TaskStore:
    task_store = TaskStore(temp_state_dir / "tasks.json", clock=clock)
    task_store.load()
    return task_store


@pytest.fixture
def registry(temp_state_dir: Path, clock: FakeClock) -> RepositoryRegistry:
    repository_registry = RepositoryRegistry(temp_state_dir / "repositories.json", clock=clock)
    repository_registry.load()
    repository_registry.register("octo-org", "octo-repo", "test-token")
    return repository_registry


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_reconciler(
    store: TaskStore,
    registry: RepositoryRegistry,
    gateway: FakeIssueGateway,
    clock: FakeClock,
    sleeps: list[float],
) -> Callable[..., Reconciler]:
    def _make(**overrides: Any) -> Reconciler:
        options: dict[str, Any] = {
            "store": store,
            "registry": registry,
            "gateway_factory": lambda repository: gateway,
            "clock": clock,
            "sleep": sleeps.append,
        }
        options.update(overrides)
        return Reconciler(**options)

    return _make


@pytest.fixture
def reconciler(make_reconciler: Callable[..., Reconciler]) -> Reconciler:
    return make_reconciler()
