"""FastAPI application entrypoint and HTTP endpoints."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import uuid4

import redis
import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pymongo.errors import PyMongoError

from src.core.logging import configure_logging
from src.core.runner import InProcessRunner, QueueRunner, TaskRunner
from src.core.settings import Settings, get_settings
from src.db.mongo import MongoTaskStore
from src.db.task_store import InMemoryTaskStore, TaskStore
from src.models.research_models import (
    CreateResearchRequest,
    CreateResearchResponse,
    ResearchStatus,
    ResearchTask,
    StatusEvent,
    TaskSummary,
)

log = structlog.get_logger(__name__)


class ResearchApiError(Exception):
    status_code: int = 400
    code: str = "invalid_request"

    def __init__(self, details: str) -> None:
        super().__init__(details)
        self.details = details


class InvalidRequest(ResearchApiError):
    status_code = 400
    code = "invalid_request"


class TaskNotFound(ResearchApiError):
    status_code = 404
    code = "task_not_found"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Research task {task_id} not found")


class CancelUnsupported(ResearchApiError):
    status_code = 409
    code = "cancel_unsupported"


class RunnerUnavailable(ResearchApiError):
    status_code = 503
    code = "runner_unavailable"


def build_store(settings: Settings) -> TaskStore:
    if settings.TASK_STORE == "mongo":
        return MongoTaskStore(settings.MONGODB_URL or "", settings.MONGODB_DATABASE)
    return InMemoryTaskStore()


def build_runner(settings: Settings, store: TaskStore) -> TaskRunner:
    if settings.TASK_RUNNER == "rq":
        return QueueRunner(settings)
    return InProcessRunner(store, settings)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """FastAPI lifespan hook: configure logging, build the task store and runner."""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    settings.validate_backends()
    application.state.store = build_store(settings)
    application.state.runner = build_runner(settings, application.state.store)
    await application.state.store.ping()
    log.info("api_startup_complete", task_store=settings.TASK_STORE, task_runner=settings.TASK_RUNNER)
    yield
    await application.state.runner.shutdown()
    await application.state.store.close()
    log.info("api_shutdown_complete")


app = FastAPI(title="Deep Research API", version="1.0.0", lifespan=lifespan)


def _error_payload(code: str, details: str) -> dict[str, str]:
    return {"error": code, "details": details}


@app.exception_handler(ResearchApiError)
async def research_api_error_handler(_request: Request, exc: ResearchApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.code, exc.details))


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and bad enum values get the same 400 shape as an empty goal."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "invalid value")
        problems.append(f"{location}: {message}" if location else message)
    details = "; ".join(problems) or "Invalid request"
    return JSONResponse(status_code=400, content=_error_payload(InvalidRequest.code, details))


@app.middleware("http")
async def api_key_guard(request: Request, call_next):
    if request.url.path in {"/health", "/docs", "/openapi.json", "/redoc"}:
        return await call_next(request)

    settings = get_settings()
    if settings.API_KEY and request.url.path.startswith("/v1/"):
        provided = request.headers.get(settings.API_KEY_HEADER)
        if provided != settings.API_KEY:
            return JSONResponse(status_code=401, content=_error_payload("unauthorized", "Missing or invalid API key"))

    return await call_next(request)


def _store() -> TaskStore:
    return app.state.store


def _runner() -> TaskRunner:
    return app.state.runner


async def _require_task(task_id: str) -> ResearchTask:
    task = await _store().get(task_id)
    if task is None:
        raise TaskNotFound(task_id)
    return task


@app.post("/v1/research", status_code=202, response_model=CreateResearchResponse)
async def create_research(request: CreateResearchRequest) -> CreateResearchResponse:
    """Persist the initial snapshot and hand the task to the runner without waiting."""
    goal = request.goal.strip()
    if not goal:
        raise InvalidRequest("Goal is required")

    task = ResearchTask(id=str(uuid4()), goal=goal, mode=request.mode)
    await _store().save(task)
    try:
        _runner().submit(task)
    except (redis.exceptions.RedisError, ConnectionError, OSError, RuntimeError, ValueError) as e:
        log.error("research_submit_failed", task_id=task.id, error=str(e))
        await _store().update(task.id, status=ResearchStatus.error, error_message=f"Failed to start research: {e}")
        raise RunnerUnavailable(f"Failed to start research: {e}") from e
    log.info("research_task_created", task_id=task.id, mode=task.mode.value)
    return CreateResearchResponse(task_id=task.id)


@app.get("/v1/research", response_model=list[TaskSummary])
async def list_research() -> list[TaskSummary]:
    """Operational listing; not meant for client polling."""
    return [TaskSummary.from_task(task) for task in await _store().list_all()]


@app.get("/v1/research/{task_id}", response_model=ResearchTask)
async def get_research(task_id: str) -> ResearchTask:
    return await _require_task(task_id)


@app.delete("/v1/research/{task_id}", status_code=204)
async def delete_research(task_id: str) -> Response:
    if not await _store().delete(task_id):
        raise TaskNotFound(task_id)
    log.info("research_task_deleted", task_id=task_id)
    return Response(status_code=204)


@app.post("/v1/research/{task_id}/cancel", status_code=202)
async def cancel_research(task_id: str) -> dict[str, str]:
    task = await _require_task(task_id)
    runner = _runner()
    if task.status.is_terminal:
        raise CancelUnsupported(f"Research task {task_id} already finished with status {task.status.value}")
    if not runner.supports_cancel:
        raise CancelUnsupported("The configured task runner cannot cancel research tasks")
    if not runner.cancel(task_id):
        raise CancelUnsupported(f"Research task {task_id} is not running in this process")
    return {"taskId": task_id, "status": "cancelling"}


def _sse(event: StatusEvent) -> str:
    return f"data: {event.model_dump_json(by_alias=True)}\n\n"


async def _status_events(task_id: str, interval_s: float) -> AsyncIterator[str]:
    yield _sse(StatusEvent(type="connected", task_id=task_id))
    while True:
        task = await _store().get(task_id)
        if task is None:
            yield _sse(StatusEvent(type="error", task_id=task_id, message="Task not found"))
            return
        yield _sse(StatusEvent(type="status", task_id=task_id, status=task.status))
        if task.status.is_terminal:
            yield _sse(StatusEvent(type="complete", task_id=task_id, status=task.status))
            return
        await asyncio.sleep(interval_s)


@app.get("/v1/research/{task_id}/stream")
async def stream_research_status(task_id: str) -> StreamingResponse:
    """Server-sent status events until the task reaches a terminal status."""
    interval_s = get_settings().STATUS_STREAM_INTERVAL_S
    return StreamingResponse(
        _status_events(task_id, interval_s),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/health")
async def health() -> JSONResponse:
    """Health check: verifies the task store and, for the RQ runner, Redis."""
    store_ok = True
    store_error: str | None = None
    try:
        await _store().ping()
    except (PyMongoError, TimeoutError, OSError, ConnectionError, RuntimeError) as e:
        store_ok = False
        store_error = str(e)

    payload: dict[str, Any] = {"store": {"ok": store_ok, "error": store_error}}
    redis_ok = True
    runner = _runner()
    if isinstance(runner, QueueRunner):
        redis_error: str | None = None
        try:
            # Avoid blocking the event loop with a sync ping.
            await asyncio.to_thread(runner.ping)
        except (redis.exceptions.RedisError, TimeoutError, OSError, ConnectionError, RuntimeError) as e:
            redis_ok = False
            redis_error = str(e)
        payload["redis"] = {"ok": redis_ok, "error": redis_error}

    overall = "healthy" if store_ok and redis_ok else "degraded"
    payload["status"] = overall
    return JSONResponse(status_code=200 if overall == "healthy" else 503, content=payload)
