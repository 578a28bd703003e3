"""Shared plumbing for the Gemini-backed adapters: model setup, JSON parsing, retries."""

from __future__ import annotations

from dataclasses import dataclass
import json
import time
from typing import Any, Sequence

import httpx
import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_google_genai.chat_models import ChatGoogleGenerativeAIError

from src.agents.base import ResearchAdapterError, ResearchConfigError

log = structlog.get_logger(__name__)

LLM_CALL_ERRORS = (
    httpx.HTTPError,
    TimeoutError,
    OSError,
    ValueError,
    RuntimeError,
    ChatGoogleGenerativeAIError,
)


@dataclass(frozen=True)
class LLMAdapterConfig:
    google_api_key: str
    model: str
    max_attempts: int = 2
    temperature: float | None = None
    fallback_model: str | None = None

    @property
    def model_names(self) -> list[str]:
        names = [self.model]
        if self.fallback_model and self.fallback_model != self.model:
            names.append(self.fallback_model)
        return names


def build_chat_model(config: LLMAdapterConfig, model: str | None = None) -> ChatGoogleGenerativeAI:
    if not config.google_api_key:
        raise ResearchConfigError("GOOGLE_API_KEY is required for research adapters")
    model = model or config.model
    temperature = config.temperature
    if temperature is None:
        # Gemini 3 models are tuned for the default temperature.
        temperature = 1.0 if model.startswith("gemini-3") else 0.3
    return ChatGoogleGenerativeAI(
        model=model,
        google_api_key=config.google_api_key,
        temperature=temperature,
    )


def build_candidate_models(
    config: LLMAdapterConfig,
    *,
    llm: Any | None = None,
    fallback_llm: Any | None = None,
) -> list[tuple[str, Any]]:
    """Primary model first, then the fallback when one is configured.

    Injected clients take the place of the models they stand for.
    """
    names = config.model_names
    candidates = [(names[0], llm or build_chat_model(config, names[0]))]
    if len(names) > 1:
        candidates.append((names[1], fallback_llm or build_chat_model(config, names[1])))
    return candidates


def extract_llm_content(content: Any) -> str:
    """Extract text from an LLM response.

    Gemini 3 returns a list of content blocks
    (`[{'type': 'text', 'text': ...}]`); older models return a plain string.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif isinstance(block, str):
                texts.append(block)
        return "\n".join(texts)
    return ""


def parse_json_block(raw: str) -> Any:
    """Parse the first JSON object or array in `raw`.

    Accepts bare JSON, fenced ```json blocks, and JSON embedded in prose.
    Raises ValueError when nothing parseable is found.
    """
    text = raw.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
            if text.startswith("json"):
                text = text[4:]
            text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    for idx, char in enumerate(text):
        if char not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(text[idx:])
        except json.JSONDecodeError:
            continue
        return value

    preview = raw[:200].replace("\n", " ")
    raise ValueError(f"No JSON found in model output: {preview!r}")


async def invoke_json(
    models: Sequence[tuple[str, Any]],
    prompt: str,
    *,
    description: str,
    system: str,
    max_attempts: int,
    error_cls: type[ResearchAdapterError],
) -> tuple[Any, dict[str, Any]]:
    """Call each candidate model in turn and parse its JSON answer.

    Every model gets `max_attempts` tries with no backoff before the next one is
    used. Returns the parsed payload and a trace dict naming the model that
    answered; raises `error_cls` once every attempt on every model has failed.
    """
    attempts = max(1, int(max_attempts))
    failures: list[str] = []
    total = 0
    for model_name, llm in models:
        for attempt in range(1, attempts + 1):
            total += 1
            attempt_prompt = prompt
            if attempt > 1:
                attempt_prompt = (
                    f"{prompt}\n\nRemember: output only valid JSON matching the format above, "
                    "with no explanation or commentary."
                )
            start = time.perf_counter()
            try:
                resp = await llm.ainvoke([SystemMessage(content=system), HumanMessage(content=attempt_prompt)])
                raw = extract_llm_content(getattr(resp, "content", None))
                if not raw.strip():
                    raise ValueError("LLM returned empty content")
                data = parse_json_block(raw)
            except LLM_CALL_ERRORS as e:
                failures.append(f"{model_name} attempt {attempt}: {e}")
                log.warning(
                    "llm_attempt_failed",
                    description=description,
                    model=model_name,
                    attempt=attempt,
                    error=str(e)[:300],
                )
                continue

            trace = {
                "stage": description,
                "model": model_name,
                "prompt": prompt[:500],
                "raw_output": raw,
                "latency_ms": (time.perf_counter() - start) * 1000.0,
                "attempts": total,
            }
            return data, trace

    raise error_cls(f"{description} failed after {total} attempt(s): {' | '.join(failures)}")
