"""Research pipeline: planning -> gathering -> extracting -> drafting.

One `ResearchOrchestrator.run` call owns one task id from creation to its
terminal status. It keeps the task's collections locally and pushes them to
the store after every observable event, so polling clients see progress while
the pipeline is still running.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import structlog

from src.agents.base import Drafter, Extractor, Planner, PlanningFailed, ResearchAdapterError, Searcher
from src.agents.planner_agent import normalize_coverage
from src.core.evidence import EvidenceCollector, split_valid_claims
from src.core.settings import Settings
from src.db.task_store import TaskStore
from src.models.research_models import (
    Claim,
    PlanQuestion,
    RawResult,
    ResearchMode,
    ResearchStatus,
    Step,
    StepKind,
    StepStatus,
    utc_now,
)

log = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "Research cancelled"
INTERRUPTED_MESSAGE = "Research interrupted"
_RAW_OUTPUT_LIMIT = 4000


class ResearchCancelled(Exception):
    """Raised inside the pipeline when the task's cancel signal is set."""


@dataclass(frozen=True)
class OrchestratorConfig:
    heavy_concurrency: int = 3
    quick_max_questions: int = 4
    heavy_max_questions: int = 7
    quick_results_per_question: int = 3
    heavy_results_per_question: int = 6

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            heavy_concurrency=settings.HEAVY_SEARCH_CONCURRENCY,
            quick_max_questions=settings.QUICK_MAX_QUESTIONS,
            heavy_max_questions=settings.HEAVY_MAX_QUESTIONS,
            quick_results_per_question=settings.QUICK_RESULTS_PER_QUESTION,
            heavy_results_per_question=settings.HEAVY_RESULTS_PER_QUESTION,
        )

    def max_questions(self, mode: ResearchMode) -> int:
        return self.heavy_max_questions if mode is ResearchMode.heavy else self.quick_max_questions

    def results_per_question(self, mode: ResearchMode) -> int:
        return self.heavy_results_per_question if mode is ResearchMode.heavy else self.quick_results_per_question


@dataclass
class _RunState:
    task_id: str
    goal: str
    mode: ResearchMode
    cancel_event: asyncio.Event | None = None
    plan: list[PlanQuestion] = field(default_factory=list)
    steps: list[Step] = field(default_factory=list)
    evidence: EvidenceCollector = field(default_factory=EvidenceCollector)
    claims: list[Claim] = field(default_factory=list)
    # Serializes store writes so readers never see an older snapshot after a newer one.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass
class _SearchOutcome:
    index: int
    step: Step
    results: list[RawResult] | None = None
    error: ResearchAdapterError | None = None


class ResearchOrchestrator:
    """Drives a single research task through the pipeline stages."""

    def __init__(
        self,
        store: TaskStore,
        *,
        planner: Planner,
        searcher: Searcher,
        extractor: Extractor,
        drafter: Drafter,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._store = store
        self._planner = planner
        self._searcher = searcher
        self._extractor = extractor
        self._drafter = drafter
        self._config = config or OrchestratorConfig()

    async def run(
        self,
        task_id: str,
        goal: str,
        mode: ResearchMode | str = ResearchMode.quick,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResearchStatus:
        """Execute the whole pipeline and return the terminal status.

        Adapter failures never escape: they end up as failed Step records and,
        when fatal, as `status=error` on the task.
        """
        state = _RunState(task_id=task_id, goal=goal, mode=ResearchMode.quick, cancel_event=cancel_event)
        try:
            state.mode = ResearchMode(mode)
        except ValueError:
            log.error("research_invalid_mode", task_id=task_id, mode=str(mode))
            await self._fail(state, f"Invalid research mode: {mode!r}")
            return ResearchStatus.error

        log.info("research_started", task_id=task_id, mode=state.mode.value)
        try:
            if not await self._plan(state):
                return ResearchStatus.error
            self._check_cancelled(state)
            await self._gather(state)
            self._check_cancelled(state)
            await self._extract(state)
            self._check_cancelled(state)
            return await self._draft(state)
        except ResearchCancelled:
            log.info("research_cancelled", task_id=task_id)
            await self._fail(state, CANCELLED_MESSAGE)
            return ResearchStatus.error
        except asyncio.CancelledError:
            log.warning("research_interrupted", task_id=task_id)
            await asyncio.shield(self._fail(state, INTERRUPTED_MESSAGE))
            raise
        except Exception as e:
            # Anything unexpected must still leave the task in a terminal state.
            log.error("research_failed_unexpectedly", task_id=task_id, error=str(e), exc_info=True)
            try:
                await self._fail(state, f"Unexpected error: {e}")
            except Exception as store_error:
                log.error("research_fail_write_failed", task_id=task_id, error=str(store_error))
            return ResearchStatus.error

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _plan(self, state: _RunState) -> bool:
        step = self._start_step(state, StepKind.planning, input={"goal": state.goal, "mode": state.mode.value})
        await self._commit(state, "steps")
        try:
            questions = await self._planner.plan(state.goal, state.mode)
            if not questions:
                raise PlanningFailed("Planner returned no sub-questions")
        except ResearchAdapterError as e:
            log.warning("research_planning_failed", task_id=state.task_id, error=str(e))
            self._finish_step(state, step, StepStatus.failed, error=str(e))
            await self._fail(state, str(e))
            return False

        limit = self._config.max_questions(state.mode)
        state.plan = [q.model_copy(update={"done": False}) for q in questions[:limit]]
        trace = getattr(self._planner, "last_trace", None) or {}
        coverage = normalize_coverage(trace.get("coverage"))
        self._finish_step(
            state,
            step,
            StepStatus.ok,
            output={"questions": len(state.plan), "coverage": coverage, **self._trace_output(self._planner)},
        )
        await self._commit(state, "plan", "steps", coverage=coverage)
        log.info("research_planned", task_id=state.task_id, questions=len(state.plan), coverage=coverage)
        return True

    async def _gather(self, state: _RunState) -> None:
        if state.mode is ResearchMode.heavy and self._config.heavy_concurrency > 1:
            outcomes = await self._gather_concurrently(state)
        else:
            outcomes = await self._gather_sequentially(state)

        failures = sum(1 for outcome in outcomes if outcome.error is not None)
        if outcomes and failures == len(outcomes):
            # Extraction and drafting still run; the drafter reports the gap.
            log.warning("research_gathering_all_failed", task_id=state.task_id, questions=len(outcomes))
        log.info(
            "research_gathered",
            task_id=state.task_id,
            evidence=len(state.evidence.cards),
            failed_questions=failures,
        )

    async def _gather_sequentially(self, state: _RunState) -> list[_SearchOutcome]:
        outcomes = []
        for index in range(len(state.plan)):
            self._check_cancelled(state)
            outcome = await self._search_question(state, index)
            await self._record_search(state, outcome)
            outcomes.append(outcome)
        return outcomes

    async def _gather_concurrently(self, state: _RunState) -> list[_SearchOutcome]:
        semaphore = asyncio.Semaphore(self._config.heavy_concurrency)

        async def bounded(index: int) -> _SearchOutcome:
            async with semaphore:
                self._check_cancelled(state)
                return await self._search_question(state, index)

        pending = [asyncio.create_task(bounded(index)) for index in range(len(state.plan))]
        outcomes = []
        try:
            # Commit in question order so evidence keeps discovery order.
            for task in pending:
                outcome = await task
                await self._record_search(state, outcome)
                outcomes.append(outcome)
        finally:
            for task in pending:
                if not task.done():
                    task.cancel()
        return outcomes

    async def _search_question(self, state: _RunState, index: int) -> _SearchOutcome:
        question = state.plan[index]
        step = self._start_step(
            state,
            StepKind.gathering,
            question_id=question.id,
            input={"query": question.text},
        )
        await self._commit(state, "steps")
        try:
            results = await self._searcher.search(question.text)
        except ResearchAdapterError as e:
            log.warning("research_search_failed", task_id=state.task_id, question_id=question.id, error=str(e))
            return _SearchOutcome(index=index, step=step, error=e)
        return _SearchOutcome(index=index, step=step, results=list(results or []))

    async def _record_search(self, state: _RunState, outcome: _SearchOutcome) -> None:
        question = state.plan[outcome.index]
        if outcome.error is not None:
            self._finish_step(state, outcome.step, StepStatus.failed, error=str(outcome.error))
            await self._commit(state, "steps")
            return

        results = outcome.results or []
        limit = self._config.results_per_question(state.mode)
        added = state.evidence.add_results(results[:limit], question_id=question.id)
        # An empty result set still answers the question (answered-empty).
        state.plan[outcome.index] = question.model_copy(update={"done": True})
        self._finish_step(
            state,
            outcome.step,
            StepStatus.ok,
            output={"results": len(results), "added": len(added), "evidence_ids": [c.id for c in added]},
        )
        await self._commit(state, "plan", "steps", "evidence")

    async def _extract(self, state: _RunState) -> None:
        evidence = list(state.evidence.cards)
        step = self._start_step(state, StepKind.extracting, input={"evidence": len(evidence)})
        await self._commit(state, "steps")
        try:
            claims = await self._extractor.extract(evidence)
        except ResearchAdapterError as e:
            log.warning("research_extraction_failed", task_id=state.task_id, error=str(e))
            state.claims = []
            self._finish_step(state, step, StepStatus.failed, error=str(e))
            await self._commit(state, "claims", "steps")
            return

        valid, dropped = split_valid_claims(list(claims or []), state.evidence.ids)
        if dropped:
            log.warning(
                "research_claims_dropped",
                task_id=state.task_id,
                dropped=len(dropped),
                claim_ids=[c.id for c in dropped],
            )
        state.claims = valid
        self._finish_step(
            state,
            step,
            StepStatus.ok,
            output={"claims": len(valid), "dropped": len(dropped), **self._trace_output(self._extractor)},
        )
        await self._commit(state, "claims", "steps")

    async def _draft(self, state: _RunState) -> ResearchStatus:
        step = self._start_step(state, StepKind.drafting, input={"claims": len(state.claims)})
        await self._commit(state, "steps")
        try:
            draft = await self._drafter.draft(
                state.goal,
                list(state.plan),
                list(state.claims),
                list(state.evidence.cards),
            )
        except ResearchAdapterError as e:
            log.warning("research_drafting_failed", task_id=state.task_id, error=str(e))
            self._finish_step(state, step, StepStatus.failed, error=str(e))
            await self._fail(state, str(e))
            return ResearchStatus.error

        self._finish_step(
            state,
            step,
            StepStatus.ok,
            output={"sections": len(draft.sections), **self._trace_output(self._drafter)},
        )
        await self._commit(state, "steps", draft=draft, status=ResearchStatus.done)
        log.info(
            "research_completed",
            task_id=state.task_id,
            evidence=len(state.evidence.cards),
            claims=len(state.claims),
            steps=len(state.steps),
        )
        return ResearchStatus.done

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _trace_output(adapter: Any) -> dict[str, Any]:
        """Model name, attempt count and raw answer from an adapter's last call."""
        trace = getattr(adapter, "last_trace", None) or {}
        output: dict[str, Any] = {}
        if trace.get("model"):
            output["model_used"] = trace["model"]
        if "attempts" in trace:
            output["attempts"] = trace["attempts"]
        raw = trace.get("raw_output")
        if isinstance(raw, str):
            output["raw_output"] = raw[:_RAW_OUTPUT_LIMIT]
        return output

    @staticmethod
    def _check_cancelled(state: _RunState) -> None:
        if state.cancel_event is not None and state.cancel_event.is_set():
            raise ResearchCancelled()

    @staticmethod
    def _start_step(
        state: _RunState,
        kind: StepKind,
        *,
        question_id: str | None = None,
        input: dict[str, Any] | None = None,
    ) -> Step:
        step = Step(id=uuid4().hex, kind=kind, question_id=question_id, input=input or {})
        state.steps.append(step)
        return step

    @staticmethod
    def _finish_step(
        state: _RunState,
        step: Step,
        status: StepStatus,
        *,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Step:
        finished_at = utc_now()
        elapsed_ms = max((finished_at - step.started_at).total_seconds() * 1000.0, 0.0)
        finished = step.model_copy(
            update={
                "status": status,
                "output": output or {},
                "finished_at": finished_at,
                "elapsed_ms": elapsed_ms,
                "error_message": error,
            }
        )
        # Steps are keyed by id: replace, never duplicate.
        for idx, existing in enumerate(state.steps):
            if existing.id == step.id:
                state.steps[idx] = finished
                break
        else:
            state.steps.append(finished)
        return finished

    async def _commit(self, state: _RunState, *collections: str, **fields: Any) -> None:
        async with state.lock:
            update: dict[str, Any] = dict(fields)
            for name in collections:
                if name == "evidence":
                    update["evidence"] = list(state.evidence.cards)
                else:
                    update[name] = list(getattr(state, name))
            await self._store.update(state.task_id, **update)

    async def _fail(self, state: _RunState, message: str) -> None:
        for step in list(state.steps):
            if step.status is StepStatus.running:
                self._finish_step(state, step, StepStatus.failed, error=message)
        await self._commit(
            state,
            "plan",
            "steps",
            "evidence",
            "claims",
            status=ResearchStatus.error,
            error_message=message,
        )
