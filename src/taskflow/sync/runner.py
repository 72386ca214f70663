"""Sync several repositories in one run.

Repositories are independent, so they are synced concurrently on a thread
pool. A failure in one repository is recorded in the run summary and never
stops the others.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from taskflow.errors import TaskflowError, error_kind
from taskflow.models import SyncRecord
from taskflow.sync.reconciler import Reconciler

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RepositorySyncResult:
    repository: str
    record: SyncRecord | None = None
    error: Exception | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> str | None:
        return error_kind(self.error) if self.error is not None else None

    def describe(self) -> str:
        if self.skipped:
            return f"{self.repository}: skipped (disabled)"
        if self.error is not None:
            return f"{self.repository}: FAILED [{self.error_kind}] {self.error}"
        if self.record is None:
            return f"{self.repository}: no result"
        return self.record.summary()


@dataclass(slots=True)
class SyncRunSummary:
    results: list[RepositorySyncResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failures(self) -> list[RepositorySyncResult]:
        return [r for r in self.results if not r.ok]

    def lines(self) -> list[str]:
        return [r.describe() for r in self.results]


def sync_repositories(
    reconciler: Reconciler,
    repository_ids: list[str],
    *,
    full: bool = False,
    max_workers: int = 4,
    cancel_event: threading.Event | None = None,
    skip: set[str] | None = None,
) -> SyncRunSummary:
    """Sync each repository and collect every result, in input order.

    Args:
        repository_ids: Repositories to sync.
        skip: Repositories to report as skipped (e.g. disabled ones) without syncing.
    """

    skip = skip or set()
    summary = SyncRunSummary()
    targets = [r for r in repository_ids if r not in skip]

    def _run(repository_id: str) -> RepositorySyncResult:
        try:
            record = reconciler.sync(repository_id, full=full, cancel_event=cancel_event)
        except TaskflowError as e:
            logger.error(
                "Repository sync failed",
                extra={"repository": repository_id, "error_kind": error_kind(e), "error": str(e)},
            )
            return RepositorySyncResult(repository=repository_id, error=e)
        except Exception as e:
            logger.exception(
                "Repository sync crashed",
                extra={"repository": repository_id, "error_kind": error_kind(e)},
            )
            return RepositorySyncResult(repository=repository_id, error=e)
        return RepositorySyncResult(repository=repository_id, record=record)

    results: dict[str, RepositorySyncResult] = {}
    if targets:
        workers = max(1, min(max_workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="taskflow-sync") as pool:
            for repository_id, result in zip(targets, pool.map(_run, targets)):
                results[repository_id] = result

    for repository_id in repository_ids:
        if repository_id in skip:
            summary.results.append(RepositorySyncResult(repository=repository_id, skipped=True))
        else:
            summary.results.append(results[repository_id])

    logger.info(
        "Sync run finished",
        extra={
            "repositories": len(repository_ids),
            "failed": len(summary.failures),
            "skipped": len(skip & set(repository_ids)),
        },
    )
    return summary
