"""TavilySearcher: web search capability for the gathering stage."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from tavily import AsyncTavilyClient
from tavily.errors import BadRequestError as TavilyBadRequestError
from tavily.errors import ForbiddenError as TavilyForbiddenError
from tavily.errors import InvalidAPIKeyError as TavilyInvalidAPIKeyError
from tavily.errors import TimeoutError as TavilyTimeoutError
from tavily.errors import UsageLimitExceededError as TavilyUsageLimitExceededError

from src.agents.base import ResearchConfigError, SearchFailed
from src.models.research_models import RawResult

log = structlog.get_logger(__name__)

_SNIPPET_LIMIT = 1200

# Tavily's own exceptions derive from Exception directly.
_RETRYABLE_ERRORS = (TavilyTimeoutError, httpx.HTTPError, TimeoutError, OSError, ValueError, RuntimeError)
_FINAL_ERRORS = (
    TavilyInvalidAPIKeyError,
    TavilyUsageLimitExceededError,
    TavilyForbiddenError,
    TavilyBadRequestError,
)


@dataclass(frozen=True)
class TavilySearcherConfig:
    tavily_api_key: str
    max_results: int = 6
    search_depth: str = "advanced"
    max_attempts: int = 2


class TavilySearcher:
    """Searcher returning Tavily's ranked results as RawResult records."""

    def __init__(self, config: TavilySearcherConfig, *, tavily_client: Any | None = None) -> None:
        if not config.tavily_api_key and tavily_client is None:
            raise ResearchConfigError("TAVILY_API_KEY is required for web search")
        self._config = config
        self._tavily = tavily_client or AsyncTavilyClient(api_key=config.tavily_api_key)

    async def search(self, query: str) -> list[RawResult]:
        query = query.strip()
        if not query:
            return []

        attempts = max(1, self._config.max_attempts)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = await self._tavily.search(
                    query=query,
                    max_results=self._config.max_results,
                    search_depth=self._config.search_depth,
                    include_answer=False,
                    include_images=False,
                )
            except _FINAL_ERRORS as e:
                # Retrying will not fix a bad key, an exhausted quota or a rejected query.
                log.warning("tavily_search_rejected", error_type=type(e).__name__, error=str(e)[:300])
                raise SearchFailed(f"Tavily rejected the search ({type(e).__name__}): {e}") from e
            except _RETRYABLE_ERRORS as e:
                last_error = e
                log.warning("tavily_search_attempt_failed", attempt=attempt, error=str(e)[:300])
                continue
            return self._parse(response)

        raise SearchFailed(f"Tavily search failed: {last_error}") from last_error

    @staticmethod
    def _parse(response: Any) -> list[RawResult]:
        results = (response or {}).get("results") or []
        parsed: list[RawResult] = []
        for r in results:
            url = (r.get("url") or "").strip()
            if not url:
                continue
            snippet = r.get("content") or r.get("raw_content") or ""
            if len(snippet) > _SNIPPET_LIMIT:
                snippet = snippet[:_SNIPPET_LIMIT] + "..."
            parsed.append(
                RawResult(
                    url=url,
                    title=r.get("title") or "",
                    snippet=snippet,
                    score=r.get("score"),
                    published_at=r.get("published_date"),
                )
            )
        return parsed
