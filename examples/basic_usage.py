#!/usr/bin/env python3
"""Programmatic sync example.

This drives the sync engine directly instead of going through the CLI:

* load settings from `.env`
* register a repository and add a task to it
* sync once and print what changed

The repository is passed as an argument. The token comes from
`TASKFLOW_GITHUB_TOKEN` unless `--token-env` names another variable.
"""

from __future__ import annotations

import argparse
from typing import Sequence

from taskflow.config import TaskflowSettings
from taskflow.errors import TaskflowError, error_kind
from taskflow.logging import configure_logging
from taskflow.models import split_repository_id
from taskflow.workspace import Workspace


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Add a task and sync it (programmatic example).")
    parser.add_argument("--repo", required=True, help='Target repository in the form "owner/repo"')
    parser.add_argument("--title", default=None, help="Optional task to add before syncing")
    parser.add_argument("--token-env", default=None, help="Environment variable holding a token")
    parser.add_argument("--full", action="store_true", help="Ignore the stored sync cursor")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = TaskflowSettings()
    configure_logging(settings.log_level)

    owner, name = split_repository_id(args.repo)
    credential = f"env:{args.token_env}" if args.token_env else ""

    with Workspace.open(settings) as workspace:
        repository = workspace.registry.register(owner, name, credential)

        if args.title:
            task = workspace.store.create(title=args.title, repository=repository.id)
            print(f"Added task #{task.id}: {task.title}")

        try:
            record = workspace.reconciler().sync(repository.id, full=args.full)
        except TaskflowError as exc:
            print(f"Sync failed [{error_kind(exc)}]: {exc}")
            return 4

    print(record.summary())
    for outcome in record.outcomes:
        print(f"  {outcome.kind.value}: task #{outcome.task_id} <-> issue #{outcome.issue_number}")
    print(f"State persisted under: {settings.state_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
