"""Unit tests for the JSON-backed task store."""

from __future__ import annotations

import json
from datetime import date
from pathlib import Path

import pytest
from conftest import REPO, FakeClock, at

from taskflow.errors import StoreError, StoreErrorKind
from taskflow.models import Priority, RemoteLink, Status
from taskflow.tasks.store import TaskFilter, TaskStore, UpdateOrigin


def test_create_assigns_increasing_ids(store: TaskStore) -> None:
    first = store.create(title="First", repository=REPO)
    second = store.create(title="Second", repository=REPO)

    assert (first.id, second.id) == (1, 2)
    assert first.status is Status.TODO
    assert first.priority is Priority.MEDIUM
    assert first.local_modified_at == first.created_at
    assert store.dirty


def test_create_rejects_blank_title(store: TaskStore) -> None:
    with pytest.raises(ValueError):
        store.create(title="   ", repository=REPO)


def test_returned_tasks_are_copies(store: TaskStore) -> None:
    task = store.create(title="Original", repository=REPO)
    task.title = "Mutated outside"

    assert store.get(task.id).title == "Original"


def test_get_missing_task_raises_not_found(store: TaskStore) -> None:
    with pytest.raises(StoreError) as excinfo:
        store.get(404)

    assert excinfo.value.kind is StoreErrorKind.NOT_FOUND


def test_local_update_stamps_modification_time(store: TaskStore, clock: FakeClock) -> None:
    task = store.create(title="Write docs", repository=REPO)
    clock.set(at(9, 15))

    updated = store.update(task.id, {"title": "Write better docs", "priority": Priority.HIGH})

    assert updated.title == "Write better docs"
    assert updated.priority is Priority.HIGH
    assert updated.local_modified_at == at(9, 15)
    assert updated.created_at == task.created_at


def test_sync_updates_control_modification_time(store: TaskStore, clock: FakeClock) -> None:
    task = store.create(title="Sync me", repository=REPO)
    clock.set(at(11))
    link = RemoteLink(repository=REPO, issue_number=3)

    pushed = store.update(
        task.id, {"remote_link": link, "last_synced_at": at(11)}, origin=UpdateOrigin.SYNC_PUSH
    )
    assert pushed.local_modified_at == task.local_modified_at

    pulled = store.update(
        task.id,
        {"title": "Renamed remotely"},
        origin=UpdateOrigin.SYNC_PULL,
        remote_updated_at=at(10, 30),
    )
    assert pulled.local_modified_at == at(10, 30)


def test_sync_pull_requires_remote_timestamp(store: TaskStore) -> None:
    task = store.create(title="Sync me", repository=REPO)

    with pytest.raises(ValueError):
        store.update(task.id, {"title": "x"}, origin=UpdateOrigin.SYNC_PULL)


@pytest.mark.parametrize("field", ["id", "created_at", "local_modified_at", "colour"])
def test_update_rejects_protected_and_unknown_fields(store: TaskStore, field: str) -> None:
    task = store.create(title="Guarded", repository=REPO)

    with pytest.raises(ValueError):
        store.update(task.id, {field: 1})


def test_link_must_match_task_repository(store: TaskStore) -> None:
    task = store.create(title="Linked", repository=REPO)

    with pytest.raises(ValueError):
        store.update(
            task.id, {"remote_link": RemoteLink(repository="someone/else", issue_number=1)}
        )


def test_list_filters(store: TaskStore) -> None:
    store.create(title="Urgent", repository=REPO, priority=Priority.URGENT)
    store.create(title="Elsewhere", repository="octo-org/other")
    store.create(
        title="Linked",
        repository=REPO,
        status=Status.DONE,
        remote_link=RemoteLink(repository=REPO, issue_number=8),
    )

    assert [t.title for t in store.list()] == ["Urgent", "Elsewhere", "Linked"]
    assert [t.title for t in store.list(TaskFilter(repository=REPO))] == ["Urgent", "Linked"]
    assert [t.title for t in store.list(TaskFilter(status=Status.DONE))] == ["Linked"]
    assert [t.title for t in store.list(TaskFilter(priority=Priority.URGENT))] == ["Urgent"]
    assert [t.title for t in store.list(TaskFilter(linked=False))] == ["Urgent", "Elsewhere"]


def test_delete_linked_task_leaves_tombstone(store: TaskStore) -> None:
    task = store.create(
        title="Linked",
        repository=REPO,
        remote_link=RemoteLink(repository=REPO, issue_number=12),
    )

    deleted = store.delete(task.id)

    assert deleted.id == task.id
    assert store.find_by_remote(REPO, 12) is None
    assert store.is_untracked(REPO, 12)
    with pytest.raises(StoreError):
        store.delete(task.id)


def test_flush_and_reload_preserve_every_field(temp_state_dir: Path, clock: FakeClock) -> None:
    path = temp_state_dir / "tasks.json"
    store = TaskStore(path, clock=clock)
    store.load()
    linked = store.create(
        title="Release",
        repository=REPO,
        description="Cut the tag",
        priority=Priority.HIGH,
        status=Status.BLOCKED,
        due_date=date(2025, 2, 1),
        remote_link=RemoteLink(repository=REPO, issue_number=5, state="open"),
        last_synced_at=at(8),
    )
    doomed = store.create(
        title="Dropped",
        repository=REPO,
        remote_link=RemoteLink(repository=REPO, issue_number=6),
    )
    store.delete(doomed.id)
    store.flush()

    assert not store.dirty
    assert not path.with_suffix(".json.tmp").exists()

    reloaded = TaskStore(path, clock=clock)
    reloaded.load()
    assert reloaded.get(linked.id) == linked
    assert reloaded.is_untracked(REPO, 6)
    # Ids are never reused, even after deleting the newest task.
    assert reloaded.create(title="Next", repository=REPO).id == 3


def test_load_accepts_legacy_bare_list(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": 4,
                    "title": "Legacy",
                    "repository": REPO,
                    "priority": "High",
                    "status": "NeedsHelp",
                }
            ]
        ),
        encoding="utf-8",
    )

    store = TaskStore(path)
    store.load()

    task = store.get(4)
    assert task.priority is Priority.HIGH
    assert task.status is Status.BLOCKED
    assert store.create(title="New", repository=REPO).id == 5


@pytest.mark.parametrize("content", ["{not json", '{"tasks": [{"id": "x"}]}'])
def test_load_rejects_corrupt_file(tmp_path: Path, content: str) -> None:
    path = tmp_path / "tasks.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(StoreError) as excinfo:
        TaskStore(path).load()

    assert excinfo.value.kind is StoreErrorKind.PERSISTENCE_FAILURE


def test_missing_file_starts_empty(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "nowhere" / "tasks.json")
    store.load()

    assert store.list() == []
    assert not store.dirty
