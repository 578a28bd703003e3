"""Capability adapter contracts consumed by the research orchestrator."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from src.models.research_models import Claim, Draft, EvidenceCard, PlanQuestion, RawResult, ResearchMode


class ResearchAdapterError(RuntimeError):
    """Base error for capability adapter failures.

    Raised only after the adapter has used up its own retries.
    """

    stage: str = "unknown"


class ResearchConfigError(ResearchAdapterError):
    stage = "config"


class PlanningFailed(ResearchAdapterError):
    stage = "planning"


class SearchFailed(ResearchAdapterError):
    stage = "gathering"


class ExtractionFailed(ResearchAdapterError):
    stage = "extracting"


class DraftingFailed(ResearchAdapterError):
    stage = "drafting"


@runtime_checkable
class Planner(Protocol):
    async def plan(self, goal: str, mode: ResearchMode) -> list[PlanQuestion]:
        """Return ordered sub-questions; raise PlanningFailed if there are none."""
        raise NotImplementedError


@runtime_checkable
class Searcher(Protocol):
    async def search(self, query: str) -> list[RawResult]:
        """Return ranked results for `query`; an empty list is not an error."""
        raise NotImplementedError


@runtime_checkable
class Extractor(Protocol):
    async def extract(self, evidence: list[EvidenceCard]) -> list[Claim]:
        raise NotImplementedError


@runtime_checkable
class Drafter(Protocol):
    async def draft(
        self,
        goal: str,
        plan: list[PlanQuestion],
        claims: list[Claim],
        evidence: list[EvidenceCard],
    ) -> Draft:
        raise NotImplementedError
