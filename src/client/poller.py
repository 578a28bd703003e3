"""HTTP client for the research API with the fixed-interval polling contract."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import httpx
import structlog
from pydantic import ValidationError

from src.models.research_models import ResearchMode, ResearchTask

log = structlog.get_logger(__name__)

TaskCallback = Callable[[ResearchTask], Awaitable[None] | None]


class ResearchClientError(RuntimeError):
    """Raised when a create/read/poll request fails; polling stops on it."""

    def __init__(self, message: str, *, status_code: int | None = None, details: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class ResearchClient:
    """Creates research tasks and polls them until a terminal status.

    Polling waits `poll_interval_s` after each response (not on a fixed clock),
    stops for good on the first `done`/`error`, and never retries a failed poll.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        client: httpx.AsyncClient | None = None,
        poll_interval_s: float = 1.0,
        api_key: str | None = None,
        api_key_header: str = "X-API-Key",
        timeout_s: float = 30.0,
    ) -> None:
        headers = {api_key_header: api_key} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout_s)
        if client is not None and headers:
            self._client.headers.update(headers)
        self._poll_interval_s = poll_interval_s

    async def __aenter__(self) -> "ResearchClient":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def create(self, goal: str, mode: ResearchMode | str = ResearchMode.quick) -> str:
        payload = {"goal": goal, "mode": ResearchMode(mode).value}
        body = await self._request("POST", "/v1/research", json=payload)
        task_id = body.get("taskId") if isinstance(body, dict) else None
        if not task_id:
            raise ResearchClientError("Create response did not contain a taskId")
        log.info("research_client_created", task_id=task_id)
        return task_id

    async def get(self, task_id: str) -> ResearchTask:
        body = await self._request("GET", f"/v1/research/{task_id}")
        try:
            return ResearchTask.model_validate(body)
        except ValidationError as e:
            raise ResearchClientError(f"Malformed task snapshot for {task_id}: {e}") from e

    async def poll(self, task_id: str, on_update: TaskCallback | None = None) -> ResearchTask:
        """Read the task until it is terminal, reporting every snapshot to `on_update`."""
        while True:
            task = await self.get(task_id)
            if on_update is not None:
                result = on_update(task)
                if asyncio.iscoroutine(result):
                    await result
            if task.status.is_terminal:
                log.info("research_client_finished", task_id=task_id, status=task.status.value)
                return task
            await asyncio.sleep(self._poll_interval_s)

    async def run(
        self,
        goal: str,
        mode: ResearchMode | str = ResearchMode.quick,
        on_update: TaskCallback | None = None,
    ) -> ResearchTask:
        task_id = await self.create(goal, mode)
        return await self.poll(task_id, on_update)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            log.warning("research_client_transport_error", path=path, error=str(e))
            raise ResearchClientError(f"Request to {path} failed: {e}") from e

        if response.is_error:
            details: str | None = None
            try:
                payload = response.json()
                details = payload.get("details") if isinstance(payload, dict) else None
            except ValueError:
                details = response.text or None
            log.warning("research_client_http_error", path=path, status_code=response.status_code, details=details)
            raise ResearchClientError(
                f"Request to {path} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                details=details,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ResearchClientError(f"Response from {path} was not JSON") from e
