"""Research job execution: build adapters from settings and run the pipeline."""

from __future__ import annotations

import asyncio
from contextlib import suppress

import structlog
from pymongo.errors import PyMongoError

from src.agents.base import ResearchConfigError
from src.agents.drafter_agent import GeminiDrafter
from src.agents.extractor_agent import GeminiExtractor
from src.agents.llm import LLMAdapterConfig
from src.agents.planner_agent import GeminiPlanner
from src.agents.search_agent import TavilySearcher, TavilySearcherConfig
from src.core.logging import configure_logging
from src.core.orchestrator import OrchestratorConfig, ResearchOrchestrator
from src.core.settings import Settings, get_settings
from src.db.mongo import MongoTaskStore
from src.db.task_store import TaskStore
from src.models.research_models import ResearchMode, ResearchStatus

log = structlog.get_logger(__name__)


def build_orchestrator(settings: Settings, store: TaskStore) -> ResearchOrchestrator:
    """Wire the Gemini and Tavily adapters into an orchestrator.

    Raises ResearchConfigError when an API key is missing.
    """
    llm_config = LLMAdapterConfig(
        google_api_key=settings.GOOGLE_API_KEY or "",
        model=settings.GEMINI_MODEL,
        fallback_model=settings.GEMINI_FALLBACK_MODEL or None,
        max_attempts=settings.ADAPTER_MAX_ATTEMPTS,
    )
    searcher = TavilySearcher(
        TavilySearcherConfig(
            tavily_api_key=settings.TAVILY_API_KEY or "",
            max_results=max(settings.QUICK_RESULTS_PER_QUESTION, settings.HEAVY_RESULTS_PER_QUESTION),
            search_depth=settings.SEARCH_DEPTH,
            max_attempts=settings.ADAPTER_MAX_ATTEMPTS,
        )
    )
    return ResearchOrchestrator(
        store,
        planner=GeminiPlanner(llm_config),
        searcher=searcher,
        extractor=GeminiExtractor(llm_config),
        drafter=GeminiDrafter(llm_config),
        config=OrchestratorConfig.from_settings(settings),
    )


async def run_research(
    task_id: str,
    goal: str,
    mode: ResearchMode | str,
    *,
    store: TaskStore,
    settings: Settings | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ResearchStatus:
    """Shared entry for every runner: build the pipeline, then drive it to a terminal status."""
    settings = settings or get_settings()
    try:
        orchestrator = build_orchestrator(settings, store)
    except ResearchConfigError as e:
        log.error("research_config_invalid", task_id=task_id, error=str(e))
        await store.update(task_id, status=ResearchStatus.error, error_message=str(e))
        return ResearchStatus.error
    return await orchestrator.run(task_id, goal, mode, cancel_event=cancel_event)


def process_research_job(task_id: str, goal: str, mode: str, mongo_url: str, log_level: str = "INFO") -> str:
    """RQ worker entrypoint (sync function)."""
    configure_logging(log_level)
    status = asyncio.run(_process_research(task_id=task_id, goal=goal, mode=mode, mongo_url=mongo_url))
    return status.value


async def _process_research(task_id: str, goal: str, mode: str, mongo_url: str) -> ResearchStatus:
    settings = get_settings()
    store = MongoTaskStore(mongo_url, settings.MONGODB_DATABASE)
    with structlog.contextvars.bound_contextvars(task_id=task_id, runner="rq"):
        log.info("worker_received_research", mode=mode)
        try:
            return await run_research(task_id, goal, mode, store=store, settings=settings)
        finally:
            with suppress(PyMongoError, ConnectionError, TimeoutError, OSError, RuntimeError):
                await store.close()
