"""Pipeline tests: stage ordering, partial failure, invariants seen by readers."""

from __future__ import annotations

import asyncio

import pytest
from tavily.errors import TimeoutError as TavilyTimeoutError

from src.agents.base import DraftingFailed, ExtractionFailed, PlanningFailed, SearchFailed
from src.agents.search_agent import TavilySearcher, TavilySearcherConfig
from src.core.orchestrator import CANCELLED_MESSAGE, OrchestratorConfig, ResearchOrchestrator
from src.db.task_store import InMemoryTaskStore
from src.models.research_models import (
    Claim,
    Draft,
    DraftSection,
    PlanQuestion,
    RawResult,
    ResearchMode,
    ResearchStatus,
    ResearchTask,
    StepKind,
    StepStatus,
)


# ---------------------------------------------------------------------------
# Helper classes for mocking
# ---------------------------------------------------------------------------
class DummyPlanner:
    def __init__(self, count: int = 3, error: Exception | None = None, trace: dict | None = None):
        self.count = count
        self.error = error
        self.last_trace = trace

    async def plan(self, goal, mode):
        _ = (goal, mode)
        if self.error is not None:
            raise self.error
        return [PlanQuestion(id=f"sq{i}", text=f"question {i}") for i in range(1, self.count + 1)]


class DummySearcher:
    def __init__(self, responses: dict | None = None):
        self.responses = responses or {}
        self.queries: list[str] = []

    async def search(self, query):
        self.queries.append(query)
        response = self.responses.get(query, [])
        if isinstance(response, Exception):
            raise response
        return response


class DummyExtractor:
    """Returns one claim per evidence card unless given explicit claims."""

    def __init__(self, claims: list[Claim] | None = None, error: Exception | None = None):
        self.claims = claims
        self.error = error
        self.seen: list | None = None

    async def extract(self, evidence):
        self.seen = list(evidence)
        if self.error is not None:
            raise self.error
        if self.claims is not None:
            return self.claims
        return [
            Claim(id=f"c{i}", text=f"claim from {e.title}", supporting_evidence_ids=[e.id], confidence=0.7)
            for i, e in enumerate(evidence, start=1)
        ]


class DummyDrafter:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    async def draft(self, goal, plan, claims, evidence):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Draft(
            executive_summary=f"Summary of {goal} from {len(claims)} claims",
            sections=[DraftSection(heading="Findings", body="Body")],
            bibliography=[e.url for e in evidence],
        )


class RecordingStore(InMemoryTaskStore):
    """Keeps every snapshot a reader could have observed after each write."""

    def __init__(self):
        super().__init__()
        self.snapshots: list[ResearchTask] = []

    async def update(self, task_id, **fields):
        await super().update(task_id, **fields)
        snapshot = await self.get(task_id)
        if snapshot is not None:
            self.snapshots.append(snapshot)


def _results(host: str, count: int) -> list[RawResult]:
    return [
        RawResult(url=f"https://{host}.example/article-{i}", title=f"{host} {i}", snippet=f"snippet {i}")
        for i in range(1, count + 1)
    ]


async def _run(
    store,
    *,
    planner=None,
    searcher=None,
    extractor=None,
    drafter=None,
    mode=ResearchMode.quick,
    config=None,
    cancel_event=None,
):
    task = ResearchTask(id="t1", goal="impact of X", mode=mode)
    await store.save(task)
    orchestrator = ResearchOrchestrator(
        store,
        planner=planner or DummyPlanner(),
        searcher=searcher or DummySearcher(),
        extractor=extractor or DummyExtractor(),
        drafter=drafter or DummyDrafter(),
        config=config,
    )
    status = await orchestrator.run(task.id, task.goal, task.mode, cancel_event=cancel_event)
    return status, await store.get(task.id)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_quick_run_completes_all_stages_in_order():
    searcher = DummySearcher(
        {
            "question 1": _results("a", 2),
            "question 2": _results("b", 2),
            "question 3": _results("c", 1),
        }
    )
    status, task = await _run(InMemoryTaskStore(), searcher=searcher)

    assert status == ResearchStatus.done
    assert task.status == ResearchStatus.done
    assert task.error_message is None
    assert searcher.queries == ["question 1", "question 2", "question 3"]
    assert [q.done for q in task.plan] == [True, True, True]
    assert len(task.evidence) == 5
    assert [e.id for e in task.evidence] == ["e1", "e2", "e3", "e4", "e5"]
    assert len(task.claims) == 5
    assert task.draft.executive_summary.startswith("Summary of impact of X")

    kinds = [s.kind for s in task.steps]
    assert kinds == [
        StepKind.planning,
        StepKind.gathering,
        StepKind.gathering,
        StepKind.gathering,
        StepKind.extracting,
        StepKind.drafting,
    ]
    assert all(s.status == StepStatus.ok for s in task.steps)
    assert all(s.finished_at is not None and s.elapsed_ms is not None for s in task.steps)
    assert [s.question_id for s in task.steps if s.kind == StepKind.gathering] == ["sq1", "sq2", "sq3"]


@pytest.mark.asyncio
async def test_every_claim_references_existing_evidence():
    searcher = DummySearcher({"question 1": _results("a", 2), "question 2": _results("b", 1)})
    _status, task = await _run(InMemoryTaskStore(), planner=DummyPlanner(count=2), searcher=searcher)

    evidence_ids = {e.id for e in task.evidence}
    assert task.claims
    for claim in task.claims:
        assert claim.supporting_evidence_ids
        assert set(claim.supporting_evidence_ids) <= evidence_ids


@pytest.mark.asyncio
async def test_coverage_is_taken_from_planner_trace():
    _status, task = await _run(InMemoryTaskStore(), planner=DummyPlanner(trace={"coverage": 0.8}))
    assert task.coverage == pytest.approx(0.8)


# ---------------------------------------------------------------------------
# Partial failure
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_search_failure_for_one_question_is_not_fatal():
    searcher = DummySearcher(
        {
            "question 1": SearchFailed("search backend timed out"),
            "question 2": _results("b", 2),
        }
    )
    status, task = await _run(InMemoryTaskStore(), planner=DummyPlanner(count=2), searcher=searcher)

    assert status == ResearchStatus.done
    assert task.status == ResearchStatus.done
    assert [e.question_id for e in task.evidence] == ["sq2", "sq2"]
    assert all("b.example" in e.url for e in task.evidence)

    gathering = [s for s in task.steps if s.kind == StepKind.gathering]
    failed = [s for s in gathering if s.status == StepStatus.failed]
    assert len(failed) == 1
    assert failed[0].question_id == "sq1"
    assert failed[0].error_message == "search backend timed out"
    assert task.plan[0].done is False
    assert task.plan[1].done is True


@pytest.mark.asyncio
async def test_question_with_zero_results_is_answered_empty():
    searcher = DummySearcher({"question 1": [], "question 2": _results("b", 1)})
    status, task = await _run(InMemoryTaskStore(), planner=DummyPlanner(count=2), searcher=searcher)

    assert status == ResearchStatus.done
    assert [q.done for q in task.plan] == [True, True]
    first = next(s for s in task.steps if s.question_id == "sq1")
    assert first.status == StepStatus.ok
    assert first.output["added"] == 0


@pytest.mark.asyncio
async def test_all_searches_failing_still_reaches_extraction_and_drafting():
    searcher = DummySearcher({f"question {i}": SearchFailed(f"fail {i}") for i in range(1, 4)})
    extractor = DummyExtractor()
    drafter = DummyDrafter()
    status, task = await _run(InMemoryTaskStore(), searcher=searcher, extractor=extractor, drafter=drafter)

    assert status == ResearchStatus.done
    assert extractor.seen == []
    assert drafter.calls == 1
    assert task.evidence == []
    assert task.claims == []
    gathering = [s for s in task.steps if s.kind == StepKind.gathering]
    assert len(gathering) == 3
    assert all(s.status == StepStatus.failed for s in gathering)
    extracting = next(s for s in task.steps if s.kind == StepKind.extracting)
    assert extracting.status == StepStatus.ok


@pytest.mark.asyncio
async def test_extraction_failure_degrades_to_empty_claims():
    searcher = DummySearcher({"question 1": _results("a", 2)})
    status, task = await _run(
        InMemoryTaskStore(),
        planner=DummyPlanner(count=1),
        searcher=searcher,
        extractor=DummyExtractor(error=ExtractionFailed("could not parse claims")),
    )

    assert status == ResearchStatus.done
    assert task.claims == []
    assert len(task.evidence) == 2
    extracting = next(s for s in task.steps if s.kind == StepKind.extracting)
    assert extracting.status == StepStatus.failed
    assert extracting.error_message == "could not parse claims"


@pytest.mark.asyncio
async def test_drafting_failure_keeps_partial_research():
    searcher = DummySearcher(
        {
            "question 1": _results("a", 1),
            "question 2": _results("b", 1),
            "question 3": _results("c", 1),
        }
    )
    status, task = await _run(
        InMemoryTaskStore(),
        searcher=searcher,
        drafter=DummyDrafter(error=DraftingFailed("drafting model unavailable")),
    )

    assert status == ResearchStatus.error
    assert task.status == ResearchStatus.error
    assert task.error_message == "drafting model unavailable"
    assert len(task.evidence) == 3
    assert len(task.claims) == 3
    assert len(task.plan) == 3
    assert task.draft.sections == []
    last = task.steps[-1]
    assert last.kind == StepKind.drafting
    assert last.status == StepStatus.failed
    assert last.error_message == "drafting model unavailable"


@pytest.mark.asyncio
async def test_planning_failure_is_fatal():
    searcher = DummySearcher()
    status, task = await _run(
        InMemoryTaskStore(),
        planner=DummyPlanner(error=PlanningFailed("no sub-questions")),
        searcher=searcher,
    )

    assert status == ResearchStatus.error
    assert task.error_message == "no sub-questions"
    assert task.plan == []
    assert searcher.queries == []
    assert len(task.steps) == 1
    assert task.steps[0].kind == StepKind.planning
    assert task.steps[0].status == StepStatus.failed
    assert task.steps[0].error_message == "no sub-questions"


@pytest.mark.asyncio
async def test_empty_plan_is_treated_as_planning_failure():
    status, task = await _run(InMemoryTaskStore(), planner=DummyPlanner(count=0))
    assert status == ResearchStatus.error
    assert task.steps[0].status == StepStatus.failed


@pytest.mark.asyncio
async def test_unexpected_searcher_error_marks_task_failed():
    class BrokenSearcher:
        async def search(self, query):
            raise KeyError(query)

    status, task = await _run(InMemoryTaskStore(), searcher=BrokenSearcher())

    assert status == ResearchStatus.error
    assert task.status == ResearchStatus.error
    assert task.error_message.startswith("Unexpected error")
    assert all(s.status != StepStatus.running for s in task.steps)


# ---------------------------------------------------------------------------
# Evidence and claims
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_invalid_claims_are_dropped_not_fatal():
    searcher = DummySearcher({"question 1": _results("a", 2)})
    claims = [
        Claim(id="c1", text="supported", supporting_evidence_ids=["e1"]),
        Claim(id="c2", text="cites unknown evidence", supporting_evidence_ids=["e1", "e99"]),
        Claim(id="c3", text="cites nothing", supporting_evidence_ids=[]),
    ]
    status, task = await _run(
        InMemoryTaskStore(),
        planner=DummyPlanner(count=1),
        searcher=searcher,
        extractor=DummyExtractor(claims=claims),
    )

    assert status == ResearchStatus.done
    assert [c.id for c in task.claims] == ["c1"]
    extracting = next(s for s in task.steps if s.kind == StepKind.extracting)
    assert extracting.output == {"claims": 1, "dropped": 2}


@pytest.mark.asyncio
async def test_evidence_is_deduplicated_across_questions_by_normalized_url():
    searcher = DummySearcher(
        {
            "question 1": [
                RawResult(url="https://www.Example.com/page/", title="first"),
                RawResult(url="https://example.com/other", title="other"),
            ],
            "question 2": [
                RawResult(url="https://example.com/page?utm_source=news", title="duplicate"),
                RawResult(url="https://example.com/new", title="new"),
            ],
        }
    )
    _status, task = await _run(InMemoryTaskStore(), planner=DummyPlanner(count=2), searcher=searcher)

    assert [e.title for e in task.evidence] == ["first", "other", "new"]
    assert len({e.hash for e in task.evidence}) == 3


@pytest.mark.asyncio
async def test_quick_mode_caps_results_per_question():
    searcher = DummySearcher({"question 1": _results("a", 5)})
    config = OrchestratorConfig(quick_results_per_question=2)
    _status, task = await _run(InMemoryTaskStore(), planner=DummyPlanner(count=1), searcher=searcher, config=config)

    assert [e.url for e in task.evidence] == ["https://a.example/article-1", "https://a.example/article-2"]


@pytest.mark.asyncio
async def test_plan_is_truncated_to_mode_limit():
    config = OrchestratorConfig(heavy_max_questions=4, heavy_concurrency=2)
    _status, task = await _run(
        InMemoryTaskStore(),
        planner=DummyPlanner(count=9),
        mode=ResearchMode.heavy,
        config=config,
    )
    assert [q.id for q in task.plan] == ["sq1", "sq2", "sq3", "sq4"]


# ---------------------------------------------------------------------------
# Concurrency and reader-visible invariants
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_heavy_mode_bounds_concurrency_and_keeps_discovery_order():
    class SlowSearcher:
        def __init__(self):
            self.in_flight = 0
            self.max_in_flight = 0

        async def search(self, query):
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                # Later questions finish first.
                number = int(query.split()[-1])
                await asyncio.sleep(0.01 * (6 - number))
            finally:
                self.in_flight -= 1
            return [RawResult(url=f"https://q{number}.example/", title=query)]

    searcher = SlowSearcher()
    config = OrchestratorConfig(heavy_concurrency=2, heavy_max_questions=5)
    status, task = await _run(
        InMemoryTaskStore(),
        planner=DummyPlanner(count=5),
        searcher=searcher,
        mode=ResearchMode.heavy,
        config=config,
    )

    assert status == ResearchStatus.done
    assert searcher.max_in_flight == 2
    assert [e.question_id for e in task.evidence] == ["sq1", "sq2", "sq3", "sq4", "sq5"]
    assert [e.id for e in task.evidence] == ["e1", "e2", "e3", "e4", "e5"]


@pytest.mark.asyncio
async def test_progress_is_visible_while_gathering():
    store = InMemoryTaskStore()
    observed: list[ResearchTask] = []

    class PeekingSearcher:
        async def search(self, query):
            observed.append(await store.get("t1"))
            return _results(query.replace(" ", "-"), 1)

    await _run(store, searcher=PeekingSearcher())

    first, second = observed[0], observed[1]
    # After planning: plan written, exactly one successful planning step.
    assert first.status == ResearchStatus.running
    assert len(first.plan) == 3
    planning = [s for s in first.steps if s.kind == StepKind.planning]
    assert len(planning) == 1
    assert planning[0].status == StepStatus.ok
    # The current question is visible as a running step.
    assert first.steps[-1].kind == StepKind.gathering
    assert first.steps[-1].status == StepStatus.running
    # Mid-stage: evidence from question 1 already stored.
    assert len(second.evidence) == 1
    assert second.plan[0].done is True
    assert second.plan[1].done is False


@pytest.mark.asyncio
async def test_snapshots_are_monotonic_and_frozen_after_terminal():
    store = RecordingStore()
    searcher = DummySearcher({"question 1": _results("a", 2), "question 2": SearchFailed("x")})
    await _run(store, planner=DummyPlanner(count=2), searcher=searcher)

    snapshots = store.snapshots
    assert snapshots
    for previous, current in zip(snapshots, snapshots[1:]):
        assert len(current.evidence) >= len(previous.evidence)
        assert len(current.steps) >= len(previous.steps)
        assert len(current.claims) >= len(previous.claims)
        if previous.status.is_terminal:
            assert current.status == previous.status
    for snapshot in snapshots:
        step_ids = [s.id for s in snapshot.steps]
        assert len(step_ids) == len(set(step_ids))

    final = await store.get("t1")
    await store.update("t1", evidence=[], steps=[], status=ResearchStatus.running)
    after = await store.get("t1")
    assert after == final


@pytest.mark.asyncio
async def test_cancellation_is_checked_between_stages():
    cancel_event = asyncio.Event()

    class CancellingPlanner(DummyPlanner):
        async def plan(self, goal, mode):
            questions = await super().plan(goal, mode)
            cancel_event.set()
            return questions

    searcher = DummySearcher()
    status, task = await _run(
        InMemoryTaskStore(),
        planner=CancellingPlanner(count=2),
        searcher=searcher,
        cancel_event=cancel_event,
    )

    assert status == ResearchStatus.error
    assert task.error_message == CANCELLED_MESSAGE
    assert searcher.queries == []
    assert len(task.plan) == 2
    assert task.steps[-1].kind == StepKind.planning


# ---------------------------------------------------------------------------
# Adapter integration and step traces
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_tavily_timeout_on_one_question_does_not_fail_the_task():
    class TimeoutTavily:
        def __init__(self):
            self.calls: list[str] = []

        async def search(self, query, **kwargs):
            _ = kwargs
            self.calls.append(query)
            if query == "question 1":
                raise TavilyTimeoutError(10)
            return {"results": [{"title": "B", "url": "https://b.example/1", "content": "beta"}]}

    tavily = TimeoutTavily()
    searcher = TavilySearcher(TavilySearcherConfig(tavily_api_key="y", max_attempts=2), tavily_client=tavily)
    status, task = await _run(InMemoryTaskStore(), planner=DummyPlanner(count=2), searcher=searcher)

    assert status == ResearchStatus.done
    assert tavily.calls == ["question 1", "question 1", "question 2"]
    assert [e.url for e in task.evidence] == ["https://b.example/1"]
    failed = next(s for s in task.steps if s.question_id == "sq1")
    assert failed.status == StepStatus.failed
    assert "timed out" in failed.error_message


@pytest.mark.asyncio
async def test_stage_steps_record_model_attempts_and_raw_output():
    class TracedExtractor(DummyExtractor):
        async def extract(self, evidence):
            claims = await super().extract(evidence)
            self.last_trace = {"model": "gemini-2.5-flash-lite", "attempts": 3, "raw_output": '{"claims": []}'}
            return claims

    class TracedDrafter(DummyDrafter):
        async def draft(self, goal, plan, claims, evidence):
            report = await super().draft(goal, plan, claims, evidence)
            self.last_trace = {"model": "gemini-2.5-flash", "attempts": 1, "raw_output": "x" * 10000}
            return report

    planner = DummyPlanner(count=1, trace={"model": "gemini-2.5-flash", "attempts": 1, "raw_output": "{}"})
    searcher = DummySearcher({"question 1": _results("a", 1)})
    _status, task = await _run(
        InMemoryTaskStore(),
        planner=planner,
        searcher=searcher,
        extractor=TracedExtractor(),
        drafter=TracedDrafter(),
    )

    by_kind = {s.kind: s for s in task.steps}
    assert by_kind[StepKind.planning].output["model_used"] == "gemini-2.5-flash"
    assert by_kind[StepKind.planning].output["raw_output"] == "{}"
    assert by_kind[StepKind.extracting].output["model_used"] == "gemini-2.5-flash-lite"
    assert by_kind[StepKind.extracting].output["attempts"] == 3
    assert by_kind[StepKind.extracting].output["claims"] == 1
    assert by_kind[StepKind.drafting].output["sections"] == 1
    assert len(by_kind[StepKind.drafting].output["raw_output"]) == 4000
    assert "model_used" not in by_kind[StepKind.gathering].output


@pytest.mark.asyncio
async def test_out_of_range_planner_coverage_is_clamped():
    _status, task = await _run(InMemoryTaskStore(), planner=DummyPlanner(trace={"coverage": 250}))
    assert task.status == ResearchStatus.done
    assert task.coverage == 1.0


@pytest.mark.asyncio
async def test_invalid_mode_ends_task_in_error():
    store = InMemoryTaskStore()
    await store.save(ResearchTask(id="t1", goal="goal"))
    planner = DummyPlanner()
    orchestrator = ResearchOrchestrator(
        store,
        planner=planner,
        searcher=DummySearcher(),
        extractor=DummyExtractor(),
        drafter=DummyDrafter(),
    )

    status = await orchestrator.run("t1", "goal", "medium")

    task = await store.get("t1")
    assert status == ResearchStatus.error
    assert task.status == ResearchStatus.error
    assert task.error_message == "Invalid research mode: 'medium'"
    assert task.steps == []
