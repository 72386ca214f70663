"""Abstract remote issue gateway used by the sync engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Mapping
from datetime import datetime
from typing import Any

from taskflow.models import RemoteIssue

IssuePage = list[RemoteIssue]


class IssuePages(ABC):
    """A lazy, finite sequence of issue pages.

    Every call to ``iter()`` starts again from the first page, so a failed fetch
    can simply be retried from scratch.
    """

    @abstractmethod
    def __iter__(self) -> Iterator[IssuePage]:
        pass

    def drain(self) -> list[RemoteIssue]:
        """Fetch every page. Any error aborts the whole fetch."""

        issues: list[RemoteIssue] = []
        for page in self:
            issues.extend(page)
        return issues


class StaticIssuePages(IssuePages):
    """Pages that are already in memory."""

    def __init__(self, pages: Iterable[IssuePage]) -> None:
        self._pages = [list(p) for p in pages]

    def __iter__(self) -> Iterator[IssuePage]:
        return iter([list(p) for p in self._pages])


class RemoteIssueGateway(ABC):
    """Issue operations against a remote tracker, one repository per call.

    Every method may raise :class:`~taskflow.errors.AuthFailure`,
    :class:`~taskflow.errors.RateLimited` or :class:`~taskflow.errors.Unreachable`.
    """

    @abstractmethod
    def list_issues(self, repo: str, cursor: datetime | None) -> IssuePages:
        """List issues (open and closed) updated at or after ``cursor``.

        Args:
            repo: Repository in the form ``owner/name``.
            cursor: Lower bound on ``updated_at``; None lists everything.
        """
        pass

    @abstractmethod
    def create_issue(self, repo: str, title: str, body: str) -> RemoteIssue:
        pass

    @abstractmethod
    def update_issue(self, repo: str, number: int, fields: Mapping[str, Any]) -> RemoteIssue:
        """Update ``title``, ``body`` and/or ``state`` of an issue."""
        pass

    @abstractmethod
    def close_issue(self, repo: str, number: int) -> RemoteIssue:
        pass

    def verify_repository(self, repo: str) -> str:
        """Check the repository is reachable with this credential.

        Returns the canonical ``owner/name``. Gateways that can check access
        override this; the default accepts the name as given.
        """
        return repo

    def close(self) -> None:
        """Release network resources."""
