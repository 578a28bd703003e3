"""Pydantic models for research tasks, their pipeline records and wire events.

Python attributes are snake_case; the JSON wire format uses camelCase aliases.
Both spellings are accepted on input so snapshots round-trip through the API.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ResearchMode(str, Enum):
    quick = "quick"
    heavy = "heavy"


class ResearchStatus(str, Enum):
    running = "running"
    done = "done"
    error = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ResearchStatus.running


class StepKind(str, Enum):
    planning = "planning"
    gathering = "gathering"
    extracting = "extracting"
    drafting = "drafting"


class StepStatus(str, Enum):
    running = "running"
    ok = "ok"
    failed = "failed"


class PlanQuestion(WireModel):
    id: str
    text: str
    done: bool = False
    success_criteria: str | None = None


class Step(WireModel):
    """One recorded execution of a stage, or of one question within gathering."""

    id: str
    kind: StepKind
    status: StepStatus = StepStatus.running
    question_id: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    elapsed_ms: float | None = Field(default=None, ge=0.0)
    error_message: str | None = None


class RawResult(WireModel):
    """A single ranked search hit as returned by a Searcher."""

    url: str
    title: str = ""
    snippet: str = ""
    score: float | None = None
    published_at: str | None = None


class EvidenceCard(WireModel):
    id: str
    url: str
    title: str = ""
    snippet: str = ""
    question_id: str | None = None
    score: float | None = None
    published_at: str | None = None
    hash: str = ""


class Claim(WireModel):
    id: str
    text: str
    supporting_evidence_ids: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.5
        return min(max(number, 0.0), 1.0)


class DraftSection(WireModel):
    heading: str
    body: str = ""


class FaqItem(WireModel):
    q: str
    a: str = ""


class Draft(WireModel):
    executive_summary: str = ""
    sections: list[DraftSection] = Field(default_factory=list)
    faq: list[FaqItem] = Field(default_factory=list)
    bibliography: list[str] = Field(default_factory=list)
    limitations: list[str] = Field(default_factory=list)


class ResearchTask(WireModel):
    """Full snapshot of one research request and everything accumulated for it."""

    id: str = Field(..., min_length=1)
    goal: str
    mode: ResearchMode = ResearchMode.quick
    status: ResearchStatus = ResearchStatus.running
    created_at: datetime = Field(default_factory=utc_now)
    plan: list[PlanQuestion] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)
    evidence: list[EvidenceCard] = Field(default_factory=list)
    claims: list[Claim] = Field(default_factory=list)
    draft: Draft = Field(default_factory=Draft)
    error_message: str | None = None
    coverage: float | None = Field(default=None, ge=0.0, le=1.0)


class TaskSummary(WireModel):
    id: str
    goal: str
    mode: ResearchMode
    status: ResearchStatus
    created_at: datetime
    evidence_count: int = 0
    claim_count: int = 0

    @classmethod
    def from_task(cls, task: ResearchTask) -> "TaskSummary":
        return cls(
            id=task.id,
            goal=task.goal,
            mode=task.mode,
            status=task.status,
            created_at=task.created_at,
            evidence_count=len(task.evidence),
            claim_count=len(task.claims),
        )


class CreateResearchRequest(WireModel):
    # Optional here so an empty or missing goal gets our structured 400.
    goal: str = ""
    mode: ResearchMode = ResearchMode.quick


class CreateResearchResponse(WireModel):
    task_id: str


class StatusEvent(WireModel):
    type: Literal["connected", "status", "complete", "error"]
    task_id: str
    status: ResearchStatus | None = None
    message: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
