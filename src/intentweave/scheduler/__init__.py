"""Enrichment task scheduling."""

from intentweave.scheduler.models import Task, TaskStatus, TaskType
from intentweave.scheduler.repository import TaskRepository
from intentweave.scheduler.scheduler import TaskHandler, TaskScheduler

__all__ = [
    "Task",
    "TaskHandler",
    "TaskRepository",
    "TaskScheduler",
    "TaskStatus",
    "TaskType",
]
