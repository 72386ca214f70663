"""Registry of configured repositories, their credentials and sync cursors."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from taskflow.errors import RegistryError, RegistryErrorKind, StoreError, StoreErrorKind
from taskflow.models import Repository, as_utc, split_repository_id, utc_now
from taskflow.persistence import atomic_write_json, read_json

logger = logging.getLogger(__name__)

ENV_CREDENTIAL_PREFIX = "env:"


class RegistryDocument(BaseModel):
    version: int = 1
    default_repository: str | None = None
    repositories: list[Repository] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)


def resolve_credential(repository: Repository, fallback: str = "") -> str:
    """Turn a repository's credential reference into a bearer token.

    ``env:NAME`` reads the token from the environment, any other non-empty value
    is the token itself, and an empty reference falls back to ``fallback``.
    Returns an empty string when nothing resolves.
    """

    reference = repository.credential.strip()
    if reference.startswith(ENV_CREDENTIAL_PREFIX):
        return os.environ.get(reference[len(ENV_CREDENTIAL_PREFIX) :].strip(), "").strip()
    if reference:
        return reference
    return fallback.strip()


class RepositoryRegistry:
    def __init__(self, path: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._path = path
        self._clock = clock
        self._lock = threading.RLock()
        self._repositories: dict[str, Repository] = {}
        self._removed: set[str] = set()
        self._default: str | None = None

    def load(self) -> None:
        raw = read_json(self._path)
        try:
            document = RegistryDocument() if raw is None else RegistryDocument.model_validate(raw)
        except ValueError as e:
            raise StoreError(
                StoreErrorKind.PERSISTENCE_FAILURE,
                f"Repository file {self._path} has unexpected content: {e}",
            ) from e
        with self._lock:
            self._repositories = {r.id: r for r in document.repositories}
            self._removed = set(document.removed)
            self._default = document.default_repository
        logger.info(
            "Repositories loaded",
            extra={"path": str(self._path), "repository_count": len(self._repositories)},
        )

    def flush(self) -> None:
        with self._lock:
            document = RegistryDocument(
                default_repository=self._default,
                repositories=list(self._repositories.values()),
                removed=sorted(self._removed),
            )
            atomic_write_json(self._path, document.model_dump(mode="json"))

    def register(
        self,
        owner: str,
        name: str,
        credential: str,
        *,
        display_name: str | None = None,
    ) -> Repository:
        """Add a repository, or update the credential of an existing one."""

        owner, name = split_repository_id(f"{owner}/{name}")
        repo_id = f"{owner}/{name}"
        with self._lock:
            existing = self._repositories.get(repo_id)
            if existing is not None:
                updates: dict[str, object] = {"credential": credential}
                if display_name:
                    updates["display_name"] = display_name
                repository = existing.model_copy(update=updates)
                logger.info("Repository credential updated", extra={"repository": repo_id})
            else:
                repository = Repository(
                    owner=owner,
                    name=name,
                    credential=credential,
                    display_name=display_name or "",
                    created_at=self._clock(),
                )
                logger.info("Repository registered", extra={"repository": repo_id})

            self._repositories[repo_id] = repository
            self._removed.discard(repo_id)
            if self._default is None:
                self._default = repo_id
            return repository.model_copy()

    def list(self) -> list[Repository]:
        with self._lock:
            return [r.model_copy() for r in self._repositories.values()]

    def get(self, repository_id: str) -> Repository:
        with self._lock:
            return self._require(repository_id).model_copy()

    def disable(self, repository_id: str) -> Repository:
        return self._set_enabled(repository_id, False)

    def enable(self, repository_id: str) -> Repository:
        return self._set_enabled(repository_id, True)

    def remove(self, repository_id: str) -> Repository:
        """Explicitly remove a repository. Tasks that reference it are kept."""

        with self._lock:
            if repository_id in self._removed:
                raise RegistryError(
                    RegistryErrorKind.DUPLICATE_REMOVED,
                    f"Repository {repository_id} was already removed",
                )
            repository = self._require(repository_id)
            del self._repositories[repository_id]
            self._removed.add(repository_id)
            if self._default == repository_id:
                self._default = None
        logger.info("Repository removed", extra={"repository": repository_id})
        return repository

    @property
    def default_repository_id(self) -> str | None:
        with self._lock:
            return self._default

    def set_default(self, repository_id: str) -> Repository:
        with self._lock:
            repository = self._require(repository_id)
            self._default = repository_id
            return repository.model_copy()

    def record_sync(
        self,
        repository_id: str,
        *,
        cursor: datetime | None,
        synced_at: datetime | None = None,
    ) -> Repository:
        """Persist sync progress. The cursor only ever moves forward.

        ``synced_at`` is only given for a sync that ran to completion.
        """

        with self._lock:
            repository = self._require(repository_id)
            updates: dict[str, object] = {}
            if cursor is not None:
                cursor = as_utc(cursor)
                if repository.sync_cursor is None or cursor > repository.sync_cursor:
                    updates["sync_cursor"] = cursor
            if synced_at is not None:
                updates["last_synced_at"] = as_utc(synced_at)
            updated = repository.model_copy(update=updates)
            self._repositories[repository_id] = updated
            return updated.model_copy()

    def _set_enabled(self, repository_id: str, enabled: bool) -> Repository:
        with self._lock:
            repository = self._require(repository_id).model_copy(update={"enabled": enabled})
            self._repositories[repository_id] = repository
        logger.info(
            "Repository enabled" if enabled else "Repository disabled",
            extra={"repository": repository_id},
        )
        return repository.model_copy()

    def _require(self, repository_id: str) -> Repository:
        repository = self._repositories.get(repository_id)
        if repository is None:
            raise RegistryError(
                RegistryErrorKind.NOT_FOUND, f"Repository {repository_id} is not registered"
            )
        return repository
