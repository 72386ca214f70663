"""Hidden task markers embedded in issue bodies.

Issues created by TaskFlow carry an HTML comment naming the local task id.
The marker lets a sync recognise an issue it created even if the create
response never reached us, so the task is linked instead of duplicated.
"""

from __future__ import annotations

import re

TASK_MARKER_PREFIX = "taskflow-task-id:"

_MARKER_RE = re.compile(r"\s*<!--\s*" + re.escape(TASK_MARKER_PREFIX) + r"\s*(\d+)\s*-->\s*$")


def render_marker(task_id: int) -> str:
    return f"<!-- {TASK_MARKER_PREFIX} {task_id} -->"


def with_marker(description: str, task_id: int) -> str:
    """Return the issue body for a task: its description plus the marker."""

    text = strip_marker(description).rstrip()
    marker = render_marker(task_id)
    return f"{text}\n\n{marker}" if text else marker


def strip_marker(body: str) -> str:
    return _MARKER_RE.sub("", body)


def marker_task_id(body: str) -> int | None:
    match = _MARKER_RE.search(body)
    return int(match.group(1)) if match else None
