"""Bidirectional sync between local tasks and remote issues.

For one repository, the reconciler:

1. drains the remote issue listing (incremental from the repository's sync
   cursor, or full) while reading the local tasks for that repository,
2. pairs tasks and issues by remote link,
3. resolves each changed pair with last-writer-wins on timestamps (remote wins
   a tie, and the pair is reported as a conflict),
4. imports remote-only issues and creates issues for local-only tasks,
5. advances the cursor to the newest fetched ``updated_at`` it fully handled.

Status and priority have no remote representation, so pulls never touch them.
Transient gateway errors re-run the whole repository sync; already-applied
pairs then classify as unchanged, so nothing is applied twice.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from taskflow.errors import (
    AuthFailure,
    RateLimited,
    SyncError,
    SyncErrorKind,
    Unreachable,
)
from taskflow.github.gateway import RemoteIssueGateway
from taskflow.models import (
    OutcomeKind,
    Priority,
    RemoteIssue,
    RemoteLink,
    Repository,
    Status,
    SyncRecord,
    Task,
    utc_now,
)
from taskflow.repositories.registry import RepositoryRegistry
from taskflow.sync.markers import marker_task_id, strip_marker, with_marker
from taskflow.tasks.store import TaskFilter, TaskStore, UpdateOrigin

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[Repository], RemoteIssueGateway]

IMPORT_PRIORITY = Priority.MEDIUM
IMPORT_STATUS = Status.TODO


class Reconciler:
    def __init__(
        self,
        *,
        store: TaskStore,
        registry: RepositoryRegistry,
        gateway_factory: GatewayFactory,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 2.0,
        max_retry_after_seconds: float = 300.0,
        import_closed_issues: bool = False,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._registry = registry
        self._gateway_factory = gateway_factory
        self._max_attempts = max_attempts
        self._retry_backoff_seconds = retry_backoff_seconds
        self._max_retry_after_seconds = max_retry_after_seconds
        self._import_closed_issues = import_closed_issues
        self._clock = clock
        self._sleep = sleep

    def sync(
        self,
        repository_id: str,
        *,
        full: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> SyncRecord:
        """Reconcile one repository.

        Raises:
            RegistryError: NOT_FOUND if the repository is not registered.
            SyncError: DISABLED, AUTH_FAILURE, or UNREACHABLE/RATE_LIMITED once
                the retry budget is spent.
        """

        repository = self._registry.get(repository_id)
        if not repository.enabled:
            raise SyncError(
                SyncErrorKind.DISABLED,
                f"Repository {repository_id} is disabled",
                repository=repository_id,
            )

        record = SyncRecord(repository=repository_id)
        logger.info("Sync started", extra={"repository": repository_id, "full": full})

        for attempt in range(1, self._max_attempts + 1):
            record.attempts = attempt
            try:
                self._sync_once(repository_id, record, full=full, cancel_event=cancel_event)
            except AuthFailure as e:
                raise SyncError(
                    SyncErrorKind.AUTH_FAILURE, str(e), repository=repository_id
                ) from e
            except RateLimited as e:
                if attempt >= self._max_attempts:
                    raise SyncError(
                        SyncErrorKind.RATE_LIMITED,
                        f"Still rate limited after {attempt} attempts: {e}",
                        repository=repository_id,
                    ) from e
                delay = min(e.retry_after, self._max_retry_after_seconds)
                logger.warning(
                    "Rate limited; retrying sync",
                    extra={"repository": repository_id, "attempt": attempt, "delay": delay},
                )
                self._sleep(delay)
            except Unreachable as e:
                if attempt >= self._max_attempts:
                    raise SyncError(
                        SyncErrorKind.UNREACHABLE,
                        f"Remote unreachable after {attempt} attempts: {e}",
                        repository=repository_id,
                    ) from e
                delay = self._retry_backoff_seconds * attempt
                logger.warning(
                    "Remote unreachable; retrying sync",
                    extra={"repository": repository_id, "attempt": attempt, "delay": delay},
                )
                self._sleep(delay)
            else:
                logger.info(
                    "Sync finished",
                    extra={
                        "repository": repository_id,
                        "outcomes": len(record.outcomes),
                        "unchanged": record.unchanged,
                        "attempts": attempt,
                        "cancelled": record.cancelled,
                    },
                )
                return record

        raise AssertionError("retry loop exited without a result")

    def _sync_once(
        self,
        repository_id: str,
        record: SyncRecord,
        *,
        full: bool,
        cancel_event: threading.Event | None,
    ) -> None:
        repository = self._registry.get(repository_id)
        cursor = None if full else repository.sync_cursor
        # Each attempt starts from fresh counts; outcomes accumulate.
        record.unchanged = 0

        gateway = self._gateway_factory(repository)
        try:
            with ThreadPoolExecutor(max_workers=1, thread_name_prefix="taskflow-fetch") as pool:
                remote_future = pool.submit(
                    lambda: gateway.list_issues(repository_id, cursor).drain()
                )
                local_tasks = self._store.list(TaskFilter(repository=repository_id))
                remote_issues = remote_future.result()

            self._apply(
                gateway,
                repository_id,
                record,
                local_tasks=local_tasks,
                remote_issues=remote_issues,
                incremental=cursor is not None,
                cancel_event=cancel_event,
            )
        finally:
            gateway.close()

    def _apply(
        self,
        gateway: RemoteIssueGateway,
        repository_id: str,
        record: SyncRecord,
        *,
        local_tasks: list[Task],
        remote_issues: list[RemoteIssue],
        incremental: bool,
        cancel_event: threading.Event | None,
    ) -> None:
        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        linked: dict[int, Task] = {}
        local_only: dict[int, Task] = {}
        for task in local_tasks:
            if task.remote_link is not None:
                linked[task.remote_link.issue_number] = task
            else:
                local_only[task.id] = task

        issues = sorted(remote_issues, key=lambda i: (i.updated_at, i.number))
        fetched_numbers = {i.number for i in issues}
        processed = 0

        for issue in issues:
            if cancelled():
                record.cancelled = True
                break
            task = linked.get(issue.number)
            if task is not None:
                self._reconcile_linked(gateway, repository_id, record, task, issue)
            else:
                self._reconcile_remote_only(gateway, repository_id, record, issue, local_only)
            processed += 1

        if not record.cancelled:
            for number in sorted(linked):
                if number in fetched_numbers:
                    continue
                if cancelled():
                    record.cancelled = True
                    break
                task = linked[number]
                if not incremental:
                    logger.warning(
                        "Linked issue missing from full remote listing; leaving task alone",
                        extra={"repository": repository_id, "task_id": task.id, "issue_number": number},
                    )
                    continue
                # Not in an incremental listing: unchanged remotely since the cursor.
                if _changed_locally(task):
                    self._push(gateway, repository_id, record, task, OutcomeKind.UPDATED_REMOTE)
                else:
                    record.unchanged += 1

        if not record.cancelled:
            for task_id in sorted(local_only):
                if cancelled():
                    record.cancelled = True
                    break
                self._create_remote(gateway, repository_id, record, local_only[task_id])

        updated = self._registry.record_sync(
            repository_id,
            cursor=_watermark(issues, processed),
            synced_at=None if record.cancelled else self._clock(),
        )
        record.cursor = updated.sync_cursor

    def _reconcile_linked(
        self,
        gateway: RemoteIssueGateway,
        repository_id: str,
        record: SyncRecord,
        task: Task,
        issue: RemoteIssue,
    ) -> None:
        if not _changed_locally(task) and not _changed_remotely(task, issue):
            record.unchanged += 1
            return

        if task.local_modified_at > issue.updated_at:
            self._push(
                gateway,
                repository_id,
                record,
                task,
                OutcomeKind.UPDATED_REMOTE,
                current_state=issue.state,
            )
        elif issue.updated_at > task.local_modified_at:
            self._pull(repository_id, record, task, issue, OutcomeKind.UPDATED_LOCAL)
        else:
            # No ordering signal: the shared remote copy wins.
            logger.warning(
                "Simultaneous edit resolved in favour of remote",
                extra={"repository": repository_id, "task_id": task.id, "issue_number": issue.number},
            )
            self._pull(repository_id, record, task, issue, OutcomeKind.CONFLICT)

    def _reconcile_remote_only(
        self,
        gateway: RemoteIssueGateway,
        repository_id: str,
        record: SyncRecord,
        issue: RemoteIssue,
        local_only: dict[int, Task],
    ) -> None:
        if self._store.is_untracked(repository_id, issue.number):
            logger.debug(
                "Skipping untracked issue",
                extra={"repository": repository_id, "issue_number": issue.number},
            )
            return

        owner_id = marker_task_id(issue.body)
        owner = local_only.get(owner_id) if owner_id is not None else None
        if owner is not None and owner.title == issue.title:
            del local_only[owner.id]
            self._adopt(gateway, repository_id, record, owner, issue)
            return

        if issue.is_closed and not self._import_closed_issues:
            logger.debug(
                "Skipping closed remote-only issue",
                extra={"repository": repository_id, "issue_number": issue.number},
            )
            return

        task = self._store.create(
            title=issue.title if issue.title.strip() else f"Issue #{issue.number}",
            repository=repository_id,
            description=strip_marker(issue.body),
            priority=IMPORT_PRIORITY,
            status=Status.DONE if issue.is_closed else IMPORT_STATUS,
            remote_link=_link(repository_id, issue),
            local_modified_at=issue.updated_at,
            last_synced_at=issue.updated_at,
        )
        record.add(
            OutcomeKind.CREATED_LOCAL, task_id=task.id, issue_number=issue.number, title=task.title
        )
        logger.info(
            "Imported remote issue",
            extra={"repository": repository_id, "task_id": task.id, "issue_number": issue.number},
        )

    def _adopt(
        self,
        gateway: RemoteIssueGateway,
        repository_id: str,
        record: SyncRecord,
        task: Task,
        issue: RemoteIssue,
    ) -> None:
        """Link a local-only task to the issue an earlier, interrupted sync created for it."""

        task = self._store.update(
            task.id,
            {
                "remote_link": _link(repository_id, issue),
                "last_synced_at": issue.updated_at,
            },
            origin=UpdateOrigin.SYNC_PUSH,
        )
        logger.info(
            "Linked task to previously created issue",
            extra={"repository": repository_id, "task_id": task.id, "issue_number": issue.number},
        )
        if task.local_modified_at > issue.updated_at or task.remote_state != issue.state:
            self._push(
                gateway,
                repository_id,
                record,
                task,
                OutcomeKind.CREATED_REMOTE,
                current_state=issue.state,
            )
        else:
            record.add(
                OutcomeKind.CREATED_REMOTE,
                task_id=task.id,
                issue_number=issue.number,
                title=task.title,
            )

    def _push(
        self,
        gateway: RemoteIssueGateway,
        repository_id: str,
        record: SyncRecord,
        task: Task,
        outcome: OutcomeKind,
        *,
        current_state: str | None = None,
    ) -> None:
        if task.remote_link is None:
            raise ValueError(f"Task {task.id} has no remote link to push to")
        number = task.remote_link.issue_number
        if current_state is None:
            current_state = task.remote_link.state

        # Title, body and state go out in one request.
        fields: dict[str, str] = {
            "title": task.title,
            "body": with_marker(task.description, task.id),
            "state": task.remote_state,
        }
        issue = gateway.update_issue(repository_id, number, fields)
        if current_state != issue.state:
            logger.info(
                "Issue state changed",
                extra={"repository": repository_id, "issue_number": number, "state": issue.state},
            )

        self._store.update(
            task.id,
            {
                "remote_link": _link(repository_id, issue),
                "last_synced_at": _stamp(issue.updated_at, task.local_modified_at),
            },
            origin=UpdateOrigin.SYNC_PUSH,
        )
        record.add(outcome, task_id=task.id, issue_number=number, title=task.title)

    def _pull(
        self,
        repository_id: str,
        record: SyncRecord,
        task: Task,
        issue: RemoteIssue,
        outcome: OutcomeKind,
    ) -> None:
        self._store.update(
            task.id,
            {
                "title": issue.title if issue.title.strip() else task.title,
                "description": strip_marker(issue.body),
                "remote_link": _link(repository_id, issue),
                "last_synced_at": issue.updated_at,
            },
            origin=UpdateOrigin.SYNC_PULL,
            remote_updated_at=issue.updated_at,
        )
        record.add(outcome, task_id=task.id, issue_number=issue.number, title=issue.title)

    def _create_remote(
        self,
        gateway: RemoteIssueGateway,
        repository_id: str,
        record: SyncRecord,
        task: Task,
    ) -> None:
        issue = gateway.create_issue(
            repository_id, task.title, with_marker(task.description, task.id)
        )
        if task.remote_state == "closed":
            issue = gateway.close_issue(repository_id, issue.number)

        self._store.update(
            task.id,
            {
                "remote_link": _link(repository_id, issue),
                "last_synced_at": _stamp(issue.updated_at, task.local_modified_at),
            },
            origin=UpdateOrigin.SYNC_PUSH,
        )
        record.add(
            OutcomeKind.CREATED_REMOTE,
            task_id=task.id,
            issue_number=issue.number,
            title=task.title,
        )


def _link(repository_id: str, issue: RemoteIssue) -> RemoteLink:
    return RemoteLink(
        repository=repository_id,
        issue_number=issue.number,
        state=issue.state,
        updated_at=issue.updated_at,
    )


def _stamp(*observed: datetime) -> datetime:
    """The last-synced time of a mutation: the newest timestamp it covers, never the local clock."""

    return max(observed)


def _changed_locally(task: Task) -> bool:
    return task.last_synced_at is None or task.local_modified_at > task.last_synced_at


def _changed_remotely(task: Task, issue: RemoteIssue) -> bool:
    # Remote time is only ever compared with remote time.
    seen = task.remote_link.updated_at if task.remote_link is not None else None
    if seen is None:
        seen = task.last_synced_at
    return seen is None or issue.updated_at > seen


def _watermark(issues: list[RemoteIssue], processed: int) -> datetime | None:
    """Newest ``updated_at`` such that every fetched issue at or before it was handled."""

    if processed == 0:
        return None
    if processed >= len(issues):
        return issues[-1].updated_at
    next_ts = issues[processed].updated_at
    done = [i.updated_at for i in issues[:processed] if i.updated_at < next_ts]
    return max(done, default=None)
