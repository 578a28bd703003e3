"""GeminiDrafter: synthesizes the cited research report."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError

from src.agents.base import DraftingFailed
from src.agents.llm import LLMAdapterConfig, build_candidate_models, invoke_json
from src.models.research_models import Claim, Draft, DraftSection, EvidenceCard, FaqItem, PlanQuestion

DRAFTER_PROMPT = """You are an expert researcher writing a cited report.

## Research Goal
{goal}

## Sub-questions
{plan}

## Claims (cite evidence ids in square brackets, e.g. [e1])
{claims}

## Sources
{sources}

## Rules
- Use ONLY the claims and sources above; do not invent facts, dates or statistics.
- Cite evidence ids inline, e.g. "X grew in 2024 [e2]".
- If the material is thin or missing, say so in the limitations.

Respond with JSON only:
{{
  "executiveSummary": "summary with [e1] citations",
  "sections": [{{"heading": "Section title", "body": "content with [e2] citations"}}],
  "faq": [{{"q": "question", "a": "answer"}}],
  "bibliography": ["[e1] Title - https://example.com"],
  "limitations": ["limitation"]
}}"""


class _SectionItem(BaseModel):
    heading: str | None = None
    body: str | None = None


class _FaqEntry(BaseModel):
    q: str | None = None
    a: str | None = None


class _DrafterOutput(BaseModel):
    executiveSummary: str | None = None
    sections: list[_SectionItem] = Field(default_factory=list)
    faq: list[_FaqEntry] = Field(default_factory=list)
    bibliography: list[str] = Field(default_factory=list)
    limitations: list[str] = Field(default_factory=list)


def default_bibliography(evidence: list[EvidenceCard]) -> list[str]:
    return [f"[{e.id}] {e.title or 'Untitled'} - {e.url}" for e in evidence]


class GeminiDrafter:
    """Report drafter backed by a Gemini chat model."""

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

    async def draft(
        self,
        goal: str,
        plan: list[PlanQuestion],
        claims: list[Claim],
        evidence: list[EvidenceCard],
    ) -> Draft:
        self.last_trace = None
        prompt = DRAFTER_PROMPT.format(
            goal=goal,
            plan="\n".join(f"- {q.text}" for q in plan) or "- (none)",
            claims="\n".join(
                f"- {c.text} [{', '.join(c.supporting_evidence_ids)}] (confidence {c.confidence:.2f})" for c in claims
            )
            or "- (no claims could be extracted)",
            sources="\n".join(default_bibliography(evidence)) or "- (no sources found)",
        )
        data, trace = await invoke_json(
            self._models,
            prompt,
            description="drafting",
            system="You write concise, well-cited research reports. You reply with JSON only.",
            max_attempts=self._config.max_attempts,
            error_cls=DraftingFailed,
        )
        try:
            output = _DrafterOutput.model_validate(data)
        except ValidationError as e:
            raise DraftingFailed(f"Drafter returned an invalid report: {e}") from e

        draft = Draft(
            executive_summary=(output.executiveSummary or "").strip(),
            sections=[
                DraftSection(heading=(s.heading or "").strip() or f"Section {i}", body=s.body or "")
                for i, s in enumerate(output.sections, start=1)
            ],
            faq=[FaqItem(q=f.q, a=f.a or "") for f in output.faq if f.q],
            bibliography=output.bibliography or default_bibliography(evidence),
            limitations=output.limitations,
        )
        if not draft.executive_summary and not draft.sections:
            raise DraftingFailed("Drafter returned an empty report")

        self.last_trace = {
            **trace,
            "agent": "drafter",
            "parsed_output": draft.model_dump(),
        }
        return draft
