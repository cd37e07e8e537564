"""JSON-backed task repository.

Persists every task in a single JSON file, saved after every write so a
crash loses at most the in-flight attempt.  On load, tasks that were
``processing`` when the process stopped are treated as abandoned and
reset to ``queued``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from intentweave.scheduler.models import Task, TaskStatus

logger = logging.getLogger(__name__)

TASKS_FILENAME = ".intentweave-tasks.json"

# Alias to avoid shadowing by TaskRepository.list
_list = list


class _TaskData(BaseModel):
    """Internal wrapper for JSON serialization."""

    next_sequence: int = 1
    tasks: list[Task] = Field(default_factory=list)


class TaskRepository:
    """Durable task storage.  Only the scheduler writes to it."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path / TASKS_FILENAME if path is not None else None
        self._tasks: dict[str, Task] = {}
        self._next_sequence = 1
        self.recovered = 0
        if self._path is not None:
            self._load(self._path)

    # ── Private helpers ──────────────────────────────────────────

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            data = _TaskData.model_validate(raw)
        except (json.JSONDecodeError, ValueError):
            logger.warning("Corrupt task store at %s, starting fresh", path)
            return

        self._next_sequence = data.next_sequence
        for task in data.tasks:
            if task.status == TaskStatus.PROCESSING:
                task.status = TaskStatus.QUEUED
                task.started_at = None
                self.recovered += 1
            self._tasks[task.id] = task
            self._next_sequence = max(self._next_sequence, task.sequence + 1)

        if self.recovered:
            logger.info("Requeued %d task(s) abandoned mid-processing", self.recovered)
            self.save()

    def save(self) -> None:
        if self._path is None:
            return
        data = _TaskData(next_sequence=self._next_sequence, tasks=_list(self._tasks.values()))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(data.model_dump_json(indent=2), encoding="utf-8")

    # ── Write operations ─────────────────────────────────────────

    def add(self, task: Task) -> Task:
        """Store a new task, stamping its enqueue sequence number."""
        task.sequence = self._next_sequence
        self._next_sequence += 1
        self._tasks[task.id] = task
        self.save()
        return task

    def delete(self, task_id: str) -> bool:
        if self._tasks.pop(task_id, None) is None:
            return False
        self.save()
        return True

    def prune(self, older_than: datetime) -> int:
        """Drop terminal tasks completed before *older_than*."""
        stale = [
            t.id
            for t in self._tasks.values()
            if t.is_terminal and t.completed_at is not None and t.completed_at < older_than
        ]
        for task_id in stale:
            del self._tasks[task_id]
        if stale:
            self.save()
        return len(stale)

    # ── Read operations ──────────────────────────────────────────

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def list(self, status: TaskStatus | None = None) -> list[Task]:
        return [t for t in self._tasks.values() if status is None or t.status == status]

    def find_active(self, dedup_key: tuple[str, str]) -> Task | None:
        """The queued or processing task with *dedup_key*, if any."""
        for task in self._tasks.values():
            if task.dedup_key == dedup_key and not task.is_terminal:
                return task
        return None

    def by_entity(self, entity_id: str) -> list[Task]:
        tasks = [t for t in self._tasks.values() if t.target_id == entity_id]
        tasks.sort(key=lambda t: t.sequence)
        return tasks

    def __len__(self) -> int:
        return len(self._tasks)
