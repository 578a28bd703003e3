"""Task store contract and the process-local implementation.

The orchestrator is the only writer for a given task id; API handlers only read.
Snapshots are immutable once stored: every write swaps in a new object under the
key, and every read hands out a deep copy, so a reader never sees a collection
being appended to underneath it.
"""

from __future__ import annotations

import copy
from typing import Any, Protocol, runtime_checkable

import structlog

from src.models.research_models import ResearchTask

log = structlog.get_logger(__name__)

_UPDATABLE_FIELDS = frozenset(ResearchTask.model_fields) - {"id"}


def check_update_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")


@runtime_checkable
class TaskStore(Protocol):
    """Keyed snapshot storage for research tasks."""

    async def save(self, task: ResearchTask) -> None:
        raise NotImplementedError

    async def get(self, task_id: str) -> ResearchTask | None:
        raise NotImplementedError

    async def update(self, task_id: str, **fields: Any) -> None:
        raise NotImplementedError

    async def delete(self, task_id: str) -> bool:
        raise NotImplementedError

    async def list_all(self) -> list[ResearchTask]:
        raise NotImplementedError

    async def ping(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class InMemoryTaskStore:
    """Volatile, single-process task store.

    Tasks are lost on restart; use MongoTaskStore where that matters.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, ResearchTask] = {}

    async def save(self, task: ResearchTask) -> None:
        if not task.id:
            raise ValueError("Task id is required")
        self._tasks[task.id] = task.model_copy(deep=True)

    async def get(self, task_id: str) -> ResearchTask | None:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        return task.model_copy(deep=True)

    async def update(self, task_id: str, **fields: Any) -> None:
        """Merge `fields` into the stored snapshot.

        Unknown ids are ignored so late or duplicate writes are harmless, and a
        task that already reached a terminal status is never changed again.
        """
        check_update_fields(fields)
        current = self._tasks.get(task_id)
        if current is None:
            log.debug("task_store_update_skipped_missing", task_id=task_id)
            return
        if current.status.is_terminal:
            log.debug("task_store_update_skipped_terminal", task_id=task_id, status=current.status.value)
            return
        # Re-validate: wire-form values are coerced, invalid ones raise ValidationError.
        merged = {**current.model_dump(), **copy.deepcopy(fields)}
        self._tasks[task_id] = ResearchTask.model_validate(merged)

    async def delete(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None

    async def list_all(self) -> list[ResearchTask]:
        return [task.model_copy(deep=True) for task in list(self._tasks.values())]

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None
