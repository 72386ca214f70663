"""First-run setup as an explicit state machine.

collect-credential -> collect-repository -> ready. The machine is independent
of the sync engine; the CLI drives it from command-line arguments.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from taskflow.config import TaskflowSettings
from taskflow.repositories.registry import RepositoryRegistry, resolve_credential


class OnboardingState(str, Enum):
    COLLECT_CREDENTIAL = "collect_credential"
    COLLECT_REPOSITORY = "collect_repository"
    READY = "ready"


ALLOWED_TRANSITIONS: dict[OnboardingState, set[OnboardingState]] = {
    OnboardingState.COLLECT_CREDENTIAL: {OnboardingState.COLLECT_REPOSITORY},
    OnboardingState.COLLECT_REPOSITORY: {OnboardingState.READY},
    # Adding another repository, or replacing the token, re-enters setup.
    OnboardingState.READY: {
        OnboardingState.COLLECT_CREDENTIAL,
        OnboardingState.COLLECT_REPOSITORY,
    },
}


class IllegalTransitionError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class OnboardingSnapshot:
    state: OnboardingState
    credential: str = ""
    repository: str | None = None


def transition(
    *,
    current: OnboardingSnapshot,
    to: OnboardingState,
    credential: str | None = None,
    repository: str | None = None,
) -> OnboardingSnapshot:
    allowed = ALLOWED_TRANSITIONS.get(current.state, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.state.value} -> {to.value}")
    if to is OnboardingState.COLLECT_REPOSITORY and current.state is (
        OnboardingState.COLLECT_CREDENTIAL
    ):
        if not (credential or "").strip():
            raise IllegalTransitionError("A credential is required before choosing a repository")
    if to is OnboardingState.READY and not (repository or "").strip():
        raise IllegalTransitionError("A repository is required to finish setup")
    return OnboardingSnapshot(
        state=to,
        credential=credential if credential is not None else current.credential,
        repository=repository if repository is not None else current.repository,
    )


def infer_onboarding_state(
    settings: TaskflowSettings, registry: RepositoryRegistry
) -> OnboardingSnapshot:
    """Work out where setup stands from what is already configured."""

    repositories = registry.list()
    has_credential = bool(settings.github_token.strip()) or any(
        resolve_credential(r) for r in repositories
    )
    if not has_credential:
        return OnboardingSnapshot(state=OnboardingState.COLLECT_CREDENTIAL)
    if not repositories:
        return OnboardingSnapshot(
            state=OnboardingState.COLLECT_REPOSITORY, credential=settings.github_token
        )
    return OnboardingSnapshot(
        state=OnboardingState.READY,
        credential=settings.github_token,
        repository=registry.default_repository_id or repositories[0].id,
    )
