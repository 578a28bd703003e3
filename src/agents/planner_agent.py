"""GeminiPlanner: breaks a research goal into ordered sub-questions."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError

from src.agents.base import PlanningFailed
from src.agents.llm import LLMAdapterConfig, build_candidate_models, invoke_json
from src.models.research_models import PlanQuestion, ResearchMode

QUESTION_RANGE = {
    ResearchMode.quick: (3, 4),
    ResearchMode.heavy: (5, 7),
}

PLANNER_PROMPT = """Break down this research goal into {low}-{high} focused sub-questions that can each be answered with a web search. For each sub-question, give success criteria describing what would make it answered. Also estimate a coverage score (0-1): how completely these questions cover the goal.

Research Goal: {goal}

Respond with JSON only:
{{
  "plan": [
    {{"id": "sq1", "text": "question text", "successCriteria": "what would make this answered"}}
  ],
  "coverage": 0.85
}}"""


class _PlannerItem(BaseModel):
    id: str | None = None
    text: str | None = None
    question: str | None = None
    successCriteria: str | None = None
    criteria: str | None = None


class _PlannerOutput(BaseModel):
    plan: list[_PlannerItem] = Field(default_factory=list)
    coverage: float | str | None = None


def normalize_coverage(value: Any) -> float | None:
    """Coerce a model-reported coverage (0-1, percent, or numeric string) into [0, 1]."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%")
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    number = float(value)
    if number != number:  # NaN
        return None
    if number > 1:
        number = number / 100.0
    return min(max(number, 0.0), 1.0)


def sanitize_plan(items: list[_PlannerItem]) -> list[PlanQuestion]:
    questions: list[PlanQuestion] = []
    seen_ids: set[str] = set()
    for item in items:
        text = (item.text or item.question or "").strip()
        if not text:
            continue
        qid = (item.id or "").strip() or f"sq-{len(questions) + 1}"
        if qid in seen_ids:
            qid = f"{qid}-{len(questions) + 1}"
        seen_ids.add(qid)
        questions.append(
            PlanQuestion(
                id=qid,
                text=text,
                done=False,
                success_criteria=item.successCriteria or item.criteria,
            )
        )
    return questions


class GeminiPlanner:
    """Planner backed by a Gemini chat model via LangChain."""

    def __init__(
        self,
        config: LLMAdapterConfig,
        *,
        llm: Any | None = None,
        fallback_llm: Any | None = None,
    ) -> None:
        self._config = config
        self._models = build_candidate_models(config, llm=llm, fallback_llm=fallback_llm)
        self.last_trace: dict[str, Any] | None = None

    async def plan(self, goal: str, mode: ResearchMode) -> list[PlanQuestion]:
        self.last_trace = None
        goal = goal.strip()
        if not goal:
            raise PlanningFailed("Cannot plan an empty goal")

        low, high = QUESTION_RANGE[ResearchMode(mode)]
        prompt = PLANNER_PROMPT.format(goal=goal, low=low, high=high)
        data, trace = await invoke_json(
            self._models,
            prompt,
            description="planning",
            system="You are a research planner. You reply with JSON only.",
            max_attempts=self._config.max_attempts,
            error_cls=PlanningFailed,
        )

        if isinstance(data, list):
            data = {"plan": data}
        try:
            output = _PlannerOutput.model_validate(data)
        except ValidationError as e:
            raise PlanningFailed(f"Planner returned an invalid plan: {e}") from e

        questions = sanitize_plan(output.plan)
        if not questions:
            raise PlanningFailed("Planner returned no sub-questions")

        coverage = normalize_coverage(output.coverage)
        self.last_trace = {
            **trace,
            "agent": "planner",
            "parsed_output": [q.model_dump() for q in questions],
            "coverage": coverage,
        }
        return questions
