"""GeminiExtractor: turns gathered evidence into claims that cite it."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError

from src.agents.base import ExtractionFailed
from src.agents.llm import LLMAdapterConfig, build_candidate_models, invoke_json
from src.models.research_models import Claim, EvidenceCard

EXTRACTOR_PROMPT = """Extract verifiable factual claims from the evidence below. Every claim must cite the ids of the evidence items that support it, using only the ids listed. Give each claim a confidence between 0 and 1 reflecting how well the cited evidence supports it.

Evidence:
{evidence}

Respond with JSON only:
{{
  "claims": [
    {{"id": "c1", "text": "claim text", "supporting": ["e1", "e2"], "confidence": 0.8}}
  ]
}}"""


class _ClaimItem(BaseModel):
    id: str | None = None
    text: str | None = None
    supporting: list[str] = Field(default_factory=list)
    supportingEvidenceIds: list[str] = Field(default_factory=list)
    confidence: Any = 0.5


class _ExtractorOutput(BaseModel):
    claims: list[_ClaimItem] = Field(default_factory=list)


def format_evidence(evidence: list[EvidenceCard]) -> str:
    return "\n\n".join(f"{e.id}: {e.title or 'Untitled'} ({e.url})\n{e.snippet}" for e in evidence)


class GeminiExtractor:
    """Claim extractor backed by a Gemini chat model.

    Evidence-id validity is checked again by the orchestrator; this class only
    drops claims with no text.
    """

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

    async def extract(self, evidence: list[EvidenceCard]) -> list[Claim]:
        self.last_trace = None
        if not evidence:
            return []

        prompt = EXTRACTOR_PROMPT.format(evidence=format_evidence(evidence))
        data, trace = await invoke_json(
            self._models,
            prompt,
            description="extracting",
            system="You extract evidence-backed claims. You reply with JSON only.",
            max_attempts=self._config.max_attempts,
            error_cls=ExtractionFailed,
        )
        if isinstance(data, list):
            data = {"claims": data}
        try:
            output = _ExtractorOutput.model_validate(data)
        except ValidationError as e:
            raise ExtractionFailed(f"Extractor returned invalid claims: {e}") from e

        claims: list[Claim] = []
        for idx, item in enumerate(output.claims, start=1):
            text = (item.text or "").strip()
            if not text:
                continue
            claims.append(
                Claim(
                    id=(item.id or "").strip() or f"c{idx}",
                    text=text,
                    supporting_evidence_ids=item.supportingEvidenceIds or item.supporting,
                    confidence=item.confidence,
                )
            )

        self.last_trace = {
            **trace,
            "agent": "extractor",
            "parsed_output": [c.model_dump() for c in claims],
        }
        return claims
