"""GitHub implementation of the remote issue gateway.

Listing and updating go through a plain ``requests`` session against the REST
API (so pagination and rate-limit headers are visible to us); issue creation
and repository verification go through PyGithub.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from typing import Any

import requests
from github import Auth, Github, GithubException, RateLimitExceededException
from github.Issue import Issue

from taskflow.errors import (
    AuthFailure,
    GatewayError,
    RateLimited,
    RemoteNotFound,
    RemoteRequestError,
    Unreachable,
)
from taskflow.github.gateway import IssuePage, IssuePages, RemoteIssueGateway
from taskflow.models import RemoteIssue, split_repository_id

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60.0
PER_PAGE = 100
_UPDATABLE_FIELDS = {"title", "body", "state"}


def _parse_datetime(value: object) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Invalid datetime value")
    # GitHub commonly returns timestamps like "2025-01-01T00:00:00Z".
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_datetime(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _json(resp: requests.Response, *, what: str) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise RemoteRequestError(
            f"{what}: response is not JSON (HTTP {resp.status_code})", status_code=resp.status_code
        ) from e


def parse_issue_json(data: Mapping[str, Any]) -> RemoteIssue:
    if not isinstance(data, Mapping):
        raise RemoteRequestError("Invalid issue response: expected a JSON object")

    number = data.get("number")
    if not isinstance(number, int) or number <= 0:
        raise RemoteRequestError("Invalid issue response: missing number")

    title = data.get("title")
    if not isinstance(title, str):
        title = ""

    body = data.get("body")
    if not isinstance(body, str):
        body = ""

    state = data.get("state")
    if state not in ("open", "closed"):
        state = "open"

    labels: list[str] = []
    raw_labels = data.get("labels")
    if isinstance(raw_labels, list):
        for label in raw_labels:
            if isinstance(label, dict) and isinstance(label.get("name"), str):
                labels.append(label["name"])
            elif isinstance(label, str):
                labels.append(label)

    try:
        updated_at = _parse_datetime(data.get("updated_at"))
    except ValueError as e:
        raise RemoteRequestError(f"Invalid issue response for #{number}: {e}") from e

    return RemoteIssue(
        number=number,
        title=title,
        body=body,
        state=state,
        labels=tuple(labels),
        updated_at=updated_at,
    )


def _retry_after_from_headers(headers: Mapping[str, str] | None) -> float:
    if not headers:
        return DEFAULT_RETRY_AFTER_SECONDS
    retry_after = headers.get("Retry-After") or headers.get("retry-after")
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            pass
    reset = headers.get("X-RateLimit-Reset") or headers.get("x-ratelimit-reset")
    if reset:
        try:
            return max(float(reset) - time.time(), 1.0)
        except ValueError:
            pass
    return DEFAULT_RETRY_AFTER_SECONDS


def _is_rate_limited(status: int, headers: Mapping[str, str] | None, text: str) -> bool:
    if status == 429:
        return True
    if status != 403:
        return False
    headers = headers or {}
    remaining = headers.get("X-RateLimit-Remaining") or headers.get("x-ratelimit-remaining")
    if remaining == "0":
        return True
    if headers.get("Retry-After") or headers.get("retry-after"):
        return True
    # Secondary rate limits come back as 403 with an explanatory message.
    return "rate limit" in text.lower()


def translate_status(
    status: int, headers: Mapping[str, str] | None, text: str, *, what: str
) -> GatewayError:
    """Map an HTTP error status to the gateway error taxonomy."""

    if _is_rate_limited(status, headers, text):
        return RateLimited(_retry_after_from_headers(headers), f"{what}: rate limited")
    if status in (401, 403):
        return AuthFailure(f"{what}: credential rejected (HTTP {status})")
    if status in (404, 410):
        return RemoteNotFound(f"{what}: not found (HTTP {status})")
    if status >= 500:
        return Unreachable(f"{what}: server error (HTTP {status})")
    return RemoteRequestError(f"{what}: unexpected HTTP {status}", status_code=status)


def _translate_github_exception(e: GithubException, *, what: str) -> GatewayError:
    headers = e.headers or {}
    if isinstance(e, RateLimitExceededException):
        return RateLimited(_retry_after_from_headers(headers), f"{what}: rate limited")
    return translate_status(e.status or 0, headers, str(e.data or ""), what=what)


class GitHubIssuePages(IssuePages):
    """Follows GitHub's ``Link: rel="next"`` pagination lazily."""

    def __init__(self, gateway: GitHubIssueGateway, repo: str, cursor: datetime | None) -> None:
        self._gateway = gateway
        self._repo = repo
        self._cursor = cursor

    def __iter__(self) -> Iterator[IssuePage]:
        url: str | None = self._gateway._repo_url(self._repo, "issues")
        params: dict[str, Any] | None = {
            "state": "all",
            "sort": "updated",
            "direction": "asc",
            "per_page": PER_PAGE,
        }
        if self._cursor is not None:
            params["since"] = _format_datetime(self._cursor)

        page_number = 0
        while url:
            page_number += 1
            what = f"list issues {self._repo}"
            resp = self._gateway._request("GET", url, params=params, what=what)
            payload = _json(resp, what=what)
            if not isinstance(payload, list):
                raise RemoteRequestError(
                    f"Unexpected issue list response for {self._repo} (page {page_number})"
                )

            # The issues endpoint also returns pull requests.
            yield [
                parse_issue_json(item)
                for item in payload
                if isinstance(item, dict) and "pull_request" not in item
            ]

            url = resp.links.get("next", {}).get("url")
            # The next link already carries the query string.
            params = None


class GitHubIssueGateway(RemoteIssueGateway):
    """Remote issue gateway backed by the GitHub REST API."""

    def __init__(
        self,
        *,
        token: str,
        base_url: str = "https://api.github.com",
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
        github_api: Github | None = None,
    ) -> None:
        if not token:
            raise ValueError("GitHub token is required")

        self._rest_base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "taskflow",
            }
        )
        # Retries are the sync engine's job; PyGithub must not sleep on its own.
        self._github = github_api or Github(
            auth=Auth.Token(token),
            base_url=base_url,
            timeout=int(timeout_seconds),
            retry=None,
        )

    def _repo_url(self, repo: str, path: str) -> str:
        split_repository_id(repo)
        return f"{self._rest_base_url}/repos/{repo}/{path.lstrip('/')}"

    def _request(self, method: str, url: str, *, what: str, **kwargs: Any) -> requests.Response:
        try:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise Unreachable(f"{what}: {e}") from e

        if resp.status_code >= 400:
            error = translate_status(resp.status_code, resp.headers, resp.text, what=what)
            logger.warning(
                "GitHub request failed",
                extra={"what": what, "status_code": resp.status_code, "error": type(error).__name__},
            )
            raise error
        return resp

    def verify_repository(self, repo: str) -> str:
        """Check that the credential can see ``repo``; returns its canonical full name."""

        try:
            repository = self._github.get_repo(repo)
            full_name: str = repository.full_name
        except GithubException as e:
            raise _translate_github_exception(e, what=f"verify {repo}") from e
        except requests.RequestException as e:
            raise Unreachable(f"verify {repo}: {e}") from e
        logger.info("Repository access verified", extra={"repository": full_name})
        return full_name

    def list_issues(self, repo: str, cursor: datetime | None) -> IssuePages:
        logger.debug(
            "Listing issues",
            extra={"repository": repo, "since": cursor.isoformat() if cursor else None},
        )
        return GitHubIssuePages(self, repo, cursor)

    def create_issue(self, repo: str, title: str, body: str) -> RemoteIssue:
        if not title.strip():
            raise ValueError("Issue title is required")
        what = f"create issue in {repo}"
        try:
            repository = self._github.get_repo(repo, lazy=True)
            issue = repository.create_issue(title=title, body=body)
        except GithubException as e:
            raise _translate_github_exception(e, what=what) from e
        except requests.RequestException as e:
            raise Unreachable(f"{what}: {e}") from e

        created = self._issue_from_pygithub(issue)
        logger.info("Issue created", extra={"repository": repo, "issue_number": created.number})
        return created

    def update_issue(self, repo: str, number: int, fields: Mapping[str, Any]) -> RemoteIssue:
        if number <= 0:
            raise ValueError("issue number must be a positive integer")
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported issue fields: {sorted(unknown)}")

        url = self._repo_url(repo, f"issues/{number}")
        what = f"update {repo}#{number}"
        resp = self._request("PATCH", url, json=dict(fields), what=what)
        updated = parse_issue_json(_json(resp, what=what))
        logger.info(
            "Issue updated",
            extra={"repository": repo, "issue_number": number, "fields": sorted(fields)},
        )
        return updated

    def close_issue(self, repo: str, number: int) -> RemoteIssue:
        return self.update_issue(repo, number, {"state": "closed"})

    @staticmethod
    def _issue_from_pygithub(issue: Issue) -> RemoteIssue:
        updated_at = issue.updated_at
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=UTC)
        return RemoteIssue(
            number=issue.number,
            title=issue.title or "",
            body=issue.body or "",
            state=issue.state or "open",
            labels=tuple(label.name for label in issue.labels),
            updated_at=updated_at,
        )

    def close(self) -> None:
        self._session.close()
        self._github.close()
