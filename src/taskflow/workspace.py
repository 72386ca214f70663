"""Process-wide state: the task store and repository registry.

Both are loaded explicitly when a workspace opens and flushed explicitly when
it closes; nothing else holds them globally.
"""

from __future__ import annotations

import logging
from types import TracebackType

from taskflow.config import TaskflowSettings
from taskflow.errors import AuthFailure
from taskflow.github.client import GitHubIssueGateway
from taskflow.github.gateway import RemoteIssueGateway
from taskflow.models import Repository
from taskflow.repositories.registry import RepositoryRegistry, resolve_credential
from taskflow.sync.reconciler import GatewayFactory, Reconciler
from taskflow.tasks.store import TaskStore

logger = logging.getLogger(__name__)


def github_gateway_factory(settings: TaskflowSettings) -> GatewayFactory:
    """Build gateways for repositories, resolving each one's credential."""

    def _factory(repository: Repository) -> RemoteIssueGateway:
        token = resolve_credential(repository, fallback=settings.github_token)
        if not token:
            raise AuthFailure(f"No credential configured for {repository.id}")
        return GitHubIssueGateway(
            token=token,
            base_url=settings.github_base_url,
            timeout_seconds=settings.request_timeout_seconds,
        )

    return _factory


class Workspace:
    """Owns the store and registry for the lifetime of one process."""

    def __init__(
        self,
        settings: TaskflowSettings,
        *,
        gateway_factory: GatewayFactory | None = None,
    ) -> None:
        self.settings = settings
        self.store = TaskStore(settings.tasks_file)
        self.registry = RepositoryRegistry(settings.repositories_file)
        self._gateway_factory = gateway_factory or github_gateway_factory(settings)
        self._open = False

    @classmethod
    def open(
        cls,
        settings: TaskflowSettings,
        *,
        gateway_factory: GatewayFactory | None = None,
    ) -> Workspace:
        workspace = cls(settings, gateway_factory=gateway_factory)
        workspace.load()
        return workspace

    def load(self) -> None:
        self.store.load()
        self.registry.load()
        self._open = True
        logger.debug("Workspace opened", extra={"state_path": str(self.settings.state_path)})

    def flush(self) -> None:
        self.store.flush()
        self.registry.flush()

    def close(self) -> None:
        if not self._open:
            return
        self.flush()
        self._open = False
        logger.debug("Workspace closed", extra={"state_path": str(self.settings.state_path)})

    def reconciler(self) -> Reconciler:
        return Reconciler(
            store=self.store,
            registry=self.registry,
            gateway_factory=self._gateway_factory,
            max_attempts=self.settings.sync_max_attempts,
            retry_backoff_seconds=self.settings.sync_retry_backoff_seconds,
            max_retry_after_seconds=self.settings.sync_max_retry_after_seconds,
            import_closed_issues=self.settings.import_closed_issues,
        )

    def gateway_for(self, repository: Repository) -> RemoteIssueGateway:
        return self._gateway_factory(repository)

    def __enter__(self) -> Workspace:
        if not self._open:
            self.load()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
