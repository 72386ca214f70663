"""CLI entrypoint for TaskFlow.

A thin, non-interactive shell over the task store, repository registry and sync
engine. Exit codes: 0 success, 1 unexpected error, 2 configuration error,
3 store/registry error, 4 remote or sync failure.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any, TypeVar

from pydantic import ValidationError

from taskflow import __version__
from taskflow.config import TaskflowSettings
from taskflow.errors import (
    GatewayError,
    RegistryError,
    StoreError,
    TaskflowError,
    error_kind,
)
from taskflow.logging import configure_logging
from taskflow.models import Priority, Repository, Status, Task, split_repository_id
from taskflow.onboarding import (
    IllegalTransitionError,
    OnboardingState,
    infer_onboarding_state,
    transition,
)
from taskflow.repositories.registry import ENV_CREDENTIAL_PREFIX
from taskflow.sync.reconciler import GatewayFactory
from taskflow.sync.runner import SyncRunSummary, sync_repositories
from taskflow.tasks.store import TaskFilter
from taskflow.workspace import Workspace

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_STATE = 3
EXIT_REMOTE = 4

T = TypeVar("T")

_RELATIVE_DUE_DATES = {
    "today": 0,
    "tomorrow": 1,
    "next week": 7,
}


def parse_due_date(value: str, *, today: date | None = None) -> date:
    """Accept an ISO date or one of 'today', 'tomorrow', 'next week'."""

    text = value.strip().lower()
    base = today or date.today()
    if text in _RELATIVE_DUE_DATES:
        return base + timedelta(days=_RELATIVE_DUE_DATES[text])
    try:
        return date.fromisoformat(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(
            f"invalid due date {value!r} (use YYYY-MM-DD, today, tomorrow or 'next week')"
        ) from e


def _priority(value: str) -> Priority:
    try:
        return Priority(value.strip().lower())
    except ValueError as e:
        choices = ", ".join(p.value for p in Priority)
        raise argparse.ArgumentTypeError(f"invalid priority {value!r} ({choices})") from e


def _status(value: str) -> Status:
    try:
        return Status.parse(value)
    except ValueError as e:
        choices = ", ".join(s.value for s in Status)
        raise argparse.ArgumentTypeError(f"invalid status {value!r} ({choices})") from e


def _add_credential_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--token", default=None, help="GitHub token for this repository")
    group.add_argument(
        "--token-env",
        default=None,
        help="Name of an environment variable holding the token (stored as a reference)",
    )


def _credential_from_args(args: argparse.Namespace) -> str:
    if args.token_env:
        return f"{ENV_CREDENTIAL_PREFIX}{args.token_env.strip()}"
    return (args.token or "").strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskflow",
        description="Local task manager that syncs with GitHub Issues",
    )
    parser.add_argument("--version", action="version", version=f"taskflow {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    setup = subparsers.add_parser("setup", help="Configure a credential and a first repository")
    _add_credential_args(setup)
    setup.add_argument("--repo", "--repository", dest="repository", default=None)
    setup.add_argument("--display-name", default=None)
    setup.add_argument("--no-verify", action="store_true", help="Skip the access check")

    subparsers.add_parser("status", help="Show setup state, repositories and task counts")

    repo = subparsers.add_parser("repo", help="Manage repositories")
    repo_sub = repo.add_subparsers(dest="repo_command", required=True)

    repo_add = repo_sub.add_parser("add", help="Register a repository (or update its credential)")
    repo_add.add_argument("repository", help="Repository in the form 'owner/name'")
    _add_credential_args(repo_add)
    repo_add.add_argument("--display-name", default=None)
    repo_add.add_argument("--default", action="store_true", help="Make this the default")
    repo_add.add_argument("--no-verify", action="store_true", help="Skip the access check")

    repo_sub.add_parser("list", help="List repositories")
    for name, help_text in (
        ("enable", "Enable syncing for a repository"),
        ("disable", "Disable syncing for a repository"),
        ("remove", "Remove a repository (its tasks are kept)"),
        ("default", "Make a repository the default for new tasks"),
    ):
        sub = repo_sub.add_parser(name, help=help_text)
        sub.add_argument("repository", help="Repository in the form 'owner/name'")

    task = subparsers.add_parser("task", help="Manage tasks")
    task_sub = task.add_subparsers(dest="task_command", required=True)

    task_add = task_sub.add_parser("add", help="Add a task")
    task_add.add_argument("--title", required=True)
    task_add.add_argument("--description", default="")
    task_add.add_argument("--priority", type=_priority, default=Priority.MEDIUM)
    task_add.add_argument("--status", type=_status, default=Status.TODO)
    task_add.add_argument("--due", type=parse_due_date, default=None)
    task_add.add_argument(
        "--repo", "--repository", dest="repository", default=None,
        help="Repository for the task (defaults to the default repository)",
    )

    task_list = task_sub.add_parser("list", help="List tasks")
    task_list.add_argument("--repo", "--repository", dest="repository", default=None)
    task_list.add_argument("--status", type=_status, default=None)
    task_list.add_argument("--priority", type=_priority, default=None)
    linked = task_list.add_mutually_exclusive_group()
    linked.add_argument("--linked", dest="linked", action="store_true", default=None)
    linked.add_argument("--unlinked", dest="linked", action="store_false")

    task_show = task_sub.add_parser("show", help="Show one task")
    task_show.add_argument("task_id", type=int)

    task_update = task_sub.add_parser("update", help="Update a task")
    task_update.add_argument("task_id", type=int)
    task_update.add_argument("--title", default=None)
    task_update.add_argument("--description", default=None)
    task_update.add_argument("--priority", type=_priority, default=None)
    task_update.add_argument("--status", type=_status, default=None)
    due = task_update.add_mutually_exclusive_group()
    due.add_argument("--due", type=parse_due_date, default=None)
    due.add_argument("--clear-due", action="store_true")

    task_delete = task_sub.add_parser(
        "delete", help="Stop tracking a task (the GitHub issue is left as is)"
    )
    task_delete.add_argument("task_id", type=int)

    sync = subparsers.add_parser("sync", help="Sync tasks with GitHub issues")
    sync.add_argument(
        "--repo", "--repository", dest="repository", default=None,
        help="Only sync this repository",
    )
    sync.add_argument(
        "--full", action="store_true", help="Ignore the sync cursor and list every issue"
    )

    return parser


def format_task(task: Task) -> str:
    parts = [f"#{task.id}", f"[{task.status.value}]", f"({task.priority.value})", task.title]
    if task.remote_link is not None:
        parts.append(f"{task.repository}#{task.remote_link.issue_number}")
    else:
        parts.append(f"{task.repository} (not synced)")
    if task.due_date is not None:
        parts.append(f"due {task.due_date.isoformat()}")
    return " ".join(parts)


def _format_repository(repository: Repository, *, default_id: str | None) -> str:
    flags = []
    if repository.id == default_id:
        flags.append("default")
    if not repository.enabled:
        flags.append("disabled")
    cursor = repository.sync_cursor.isoformat() if repository.sync_cursor else "never"
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return f"{repository.id} ({repository.display_name}) last cursor: {cursor}{suffix}"


def _verify(workspace: Workspace, repository: Repository) -> str:
    gateway = workspace.gateway_for(repository)
    try:
        return gateway.verify_repository(repository.id)
    finally:
        gateway.close()


def _register(
    workspace: Workspace,
    repository_id: str,
    credential: str,
    *,
    display_name: str | None,
    verify: bool,
) -> Repository:
    owner, name = split_repository_id(repository_id)
    if verify:
        candidate = Repository(owner=owner, name=name, credential=credential)
        _verify(workspace, candidate)
        print(f"Verified access to {candidate.id}")
    return workspace.registry.register(owner, name, credential, display_name=display_name)


def _cmd_setup(args: argparse.Namespace, workspace: Workspace) -> int:
    snapshot = infer_onboarding_state(workspace.settings, workspace.registry)
    credential = _credential_from_args(args)

    try:
        if snapshot.state is OnboardingState.READY:
            if not args.repository and not credential:
                print(f"Setup complete; default repository: {snapshot.repository}")
                return EXIT_OK
            snapshot = transition(current=snapshot, to=OnboardingState.COLLECT_REPOSITORY)

        if snapshot.state is OnboardingState.COLLECT_CREDENTIAL:
            snapshot = transition(
                current=snapshot,
                to=OnboardingState.COLLECT_REPOSITORY,
                credential=credential,
            )

        if not args.repository:
            print("Next step: taskflow setup --repo owner/name", file=sys.stderr)
            return EXIT_CONFIG

        repository = _register(
            workspace,
            args.repository,
            credential,
            display_name=args.display_name,
            verify=not args.no_verify,
        )
        snapshot = transition(
            current=snapshot, to=OnboardingState.READY, repository=repository.id
        )
    except IllegalTransitionError as e:
        print(f"Setup incomplete: {e}", file=sys.stderr)
        print("Provide --token or --token-env (or set TASKFLOW_GITHUB_TOKEN)", file=sys.stderr)
        return EXIT_CONFIG

    print(f"Setup complete; now working with {snapshot.repository}")
    return EXIT_OK


def _cmd_status(workspace: Workspace) -> int:
    snapshot = infer_onboarding_state(workspace.settings, workspace.registry)
    print(f"Setup: {snapshot.state.value}")
    default_id = workspace.registry.default_repository_id
    for repository in workspace.registry.list():
        count = len(workspace.store.list(TaskFilter(repository=repository.id)))
        print(f"  {_format_repository(repository, default_id=default_id)} tasks: {count}")
    print(f"Tasks: {len(workspace.store.list())}")
    return EXIT_OK


def _cmd_repo(args: argparse.Namespace, workspace: Workspace) -> int:
    registry = workspace.registry

    if args.repo_command == "add":
        repository = _register(
            workspace,
            args.repository,
            _credential_from_args(args),
            display_name=args.display_name,
            verify=not args.no_verify,
        )
        if args.default:
            registry.set_default(repository.id)
        print(f"Registered {repository.id}")
        return EXIT_OK

    if args.repo_command == "list":
        repositories = registry.list()
        if not repositories:
            print("No repositories configured.")
        for repository in repositories:
            print(_format_repository(repository, default_id=registry.default_repository_id))
        return EXIT_OK

    if args.repo_command == "enable":
        print(f"Enabled {registry.enable(args.repository).id}")
        return EXIT_OK

    if args.repo_command == "disable":
        print(f"Disabled {registry.disable(args.repository).id}")
        return EXIT_OK

    if args.repo_command == "remove":
        removed = registry.remove(args.repository)
        print(f"Removed {removed.id}")
        return EXIT_OK

    if args.repo_command == "default":
        print(f"Default repository: {registry.set_default(args.repository).id}")
        return EXIT_OK

    logger.error("Unknown repo command", extra={"command": args.repo_command})
    return EXIT_CONFIG


def _cmd_task(args: argparse.Namespace, workspace: Workspace) -> int:
    store = workspace.store

    if args.task_command == "add":
        repository_id = args.repository or workspace.registry.default_repository_id
        if not repository_id:
            print("No repository configured; run `taskflow setup` first.", file=sys.stderr)
            return EXIT_CONFIG
        repository = workspace.registry.get(repository_id)
        task = store.create(
            title=args.title,
            repository=repository.id,
            description=args.description,
            priority=args.priority,
            status=args.status,
            due_date=args.due,
        )
        print(f"Added {format_task(task)}")
        return EXIT_OK

    if args.task_command == "list":
        tasks = store.list(
            TaskFilter(
                repository=args.repository,
                status=args.status,
                priority=args.priority,
                linked=args.linked,
            )
        )
        if not tasks:
            print("No tasks found.")
        for task in tasks:
            print(format_task(task))
        return EXIT_OK

    if args.task_command == "show":
        task = store.get(args.task_id)
        print(format_task(task))
        if task.description:
            print(task.description)
        print(f"Created: {task.created_at.isoformat()}")
        print(f"Modified: {task.local_modified_at.isoformat()}")
        synced = task.last_synced_at.isoformat() if task.last_synced_at else "never"
        print(f"Last synced: {synced}")
        return EXIT_OK

    if args.task_command == "update":
        fields: dict[str, Any] = {}
        for name in ("title", "description", "priority", "status"):
            value = getattr(args, name)
            if value is not None:
                fields[name] = value
        if args.due is not None:
            fields["due_date"] = args.due
        elif args.clear_due:
            fields["due_date"] = None
        if not fields:
            print("Nothing to update.", file=sys.stderr)
            return EXIT_CONFIG
        task = store.update(args.task_id, fields)
        print(f"Updated {format_task(task)}")
        return EXIT_OK

    if args.task_command == "delete":
        task = store.delete(args.task_id)
        if task.remote_link is not None:
            print(
                f"Stopped tracking #{task.id}; issue "
                f"{task.repository}#{task.remote_link.issue_number} was left as is "
                f"on GitHub (last seen {task.remote_link.state})"
            )
        else:
            print(f"Deleted #{task.id}")
        return EXIT_OK

    logger.error("Unknown task command", extra={"command": args.task_command})
    return EXIT_CONFIG


def _run_cancellable(fn: Callable[[threading.Event], T]) -> T:
    """Run ``fn`` on a worker thread; Ctrl-C asks it to stop between changes."""

    cancel = threading.Event()
    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = fn(cancel)
        except BaseException as e:  # re-raised on the calling thread
            outcome["error"] = e

    worker = threading.Thread(target=_target, name="taskflow-sync-run", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        print("Cancelling after the change in progress...", file=sys.stderr)
        cancel.set()
        worker.join()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def _cmd_sync(args: argparse.Namespace, workspace: Workspace) -> int:
    registry = workspace.registry
    if args.repository:
        targets = [registry.get(args.repository).id]
        skip: set[str] = set()
    else:
        repositories = registry.list()
        if not repositories:
            print("No repositories configured; run `taskflow setup` first.", file=sys.stderr)
            return EXIT_CONFIG
        targets = [r.id for r in repositories]
        skip = {r.id for r in repositories if not r.enabled}

    reconciler = workspace.reconciler()
    summary: SyncRunSummary = _run_cancellable(
        lambda cancel: sync_repositories(
            reconciler,
            targets,
            full=args.full,
            max_workers=workspace.settings.sync_workers,
            cancel_event=cancel,
            skip=skip,
        )
    )

    for line in summary.lines():
        print(line)
    for result in summary.results:
        if result.record is None:
            continue
        for outcome in result.record.outcomes:
            print(
                f"  {outcome.kind.value}: task #{outcome.task_id} <-> "
                f"#{outcome.issue_number} {outcome.title}"
            )
    return EXIT_OK if summary.ok else EXIT_REMOTE


def _dispatch(args: argparse.Namespace, workspace: Workspace) -> int:
    if args.command == "setup":
        return _cmd_setup(args, workspace)
    if args.command == "status":
        return _cmd_status(workspace)
    if args.command == "repo":
        return _cmd_repo(args, workspace)
    if args.command == "task":
        return _cmd_task(args, workspace)
    if args.command == "sync":
        return _cmd_sync(args, workspace)

    logger.error("Unknown command", extra={"command": args.command})
    return EXIT_CONFIG


def main(argv: list[str] | None = None, *, gateway_factory: GatewayFactory | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = TaskflowSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level)

    try:
        with Workspace.open(settings, gateway_factory=gateway_factory) as workspace:
            return _dispatch(args, workspace)

    except (StoreError, RegistryError) as e:
        logger.warning(str(e), extra={"error_kind": error_kind(e)})
        print(f"Error [{error_kind(e)}]: {e}", file=sys.stderr)
        return EXIT_STATE

    except GatewayError as e:
        logger.warning(str(e), extra={"error_kind": error_kind(e)})
        print(f"GitHub error [{error_kind(e)}]: {e}", file=sys.stderr)
        return EXIT_REMOTE

    except (TaskflowError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    except Exception:
        logger.exception("Command failed")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
