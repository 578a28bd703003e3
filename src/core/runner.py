"""Task runners: hand a freshly created task off to a detached unit of work."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

import structlog

from src.core import jobs
from src.core.queue import get_research_queue
from src.core.settings import Settings
from src.db.task_store import TaskStore
from src.models.research_models import ResearchStatus, ResearchTask

log = structlog.get_logger(__name__)

ResearchJob = Callable[..., Awaitable[ResearchStatus]]


@runtime_checkable
class TaskRunner(Protocol):
    supports_cancel: bool

    def submit(self, task: ResearchTask) -> None:
        """Start the pipeline for `task` without waiting for it."""
        raise NotImplementedError

    def cancel(self, task_id: str) -> bool:
        raise NotImplementedError

    async def shutdown(self) -> None:
        raise NotImplementedError


class InProcessRunner:
    """Runs each task as an asyncio task on the API's event loop.

    Requires a store shared with the API process (the in-memory store or Mongo).
    """

    supports_cancel = True

    def __init__(self, store: TaskStore, settings: Settings, *, job: ResearchJob | None = None) -> None:
        self._store = store
        self._settings = settings
        self._job = job
        # Strong references; the event loop only keeps weak ones.
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    @property
    def active_task_ids(self) -> list[str]:
        return list(self._tasks)

    def submit(self, task: ResearchTask) -> None:
        if task.id in self._tasks:
            raise ValueError(f"Task {task.id} is already running")
        cancel_event = asyncio.Event()
        self._cancel_events[task.id] = cancel_event
        handle = asyncio.create_task(self._run(task, cancel_event), name=f"research-{task.id}")
        self._tasks[task.id] = handle
        handle.add_done_callback(lambda _t, task_id=task.id: self._forget(task_id))
        log.info("research_submitted", task_id=task.id, runner="inline")

    async def _run(self, task: ResearchTask, cancel_event: asyncio.Event) -> None:
        job = self._job or jobs.run_research
        # Each asyncio task runs in its own context copy, so the binding stays per task.
        with structlog.contextvars.bound_contextvars(task_id=task.id, runner="inline"):
            try:
                await job(
                    task.id,
                    task.goal,
                    task.mode,
                    store=self._store,
                    settings=self._settings,
                    cancel_event=cancel_event,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Detached work has nobody to propagate to; the orchestrator already
                # marked the task failed where it could.
                log.error("research_runner_job_failed", error=str(e), exc_info=True)

    def _forget(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)
        self._cancel_events.pop(task_id, None)

    def cancel(self, task_id: str) -> bool:
        """Ask a running task to stop at its next stage boundary."""
        event = self._cancel_events.get(task_id)
        if event is None:
            return False
        event.set()
        log.info("research_cancel_requested", task_id=task_id)
        return True

    async def shutdown(self) -> None:
        pending = list(self._tasks.values())
        for handle in pending:
            handle.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class QueueRunner:
    """Enqueues tasks on RQ for separate worker processes (Mongo store only)."""

    supports_cancel = False

    def __init__(self, settings: Settings, *, queue: Any | None = None) -> None:
        self._settings = settings
        self._queue = queue

    def submit(self, task: ResearchTask) -> None:
        queue = self._queue or get_research_queue()
        queue.enqueue(
            jobs.process_research_job,
            task_id=task.id,
            goal=task.goal,
            mode=task.mode.value,
            mongo_url=self._settings.MONGODB_URL,
            log_level=self._settings.LOG_LEVEL,
            job_id=f"research-{task.id}",
        )
        log.info("research_submitted", task_id=task.id, runner="rq")

    def cancel(self, task_id: str) -> bool:
        _ = task_id
        return False

    async def shutdown(self) -> None:
        return None

    def ping(self) -> None:
        queue = self._queue or get_research_queue()
        queue.connection.ping()
