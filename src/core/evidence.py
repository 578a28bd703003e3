"""Evidence card construction, url normalization and claim validation."""

from __future__ import annotations

import hashlib
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from src.models.research_models import Claim, EvidenceCard, RawResult

_TRACKING_PARAMS = frozenset({"fbclid", "gclid", "mc_cid", "mc_eid", "ref", "ref_src"})
_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Canonical form used to detect the same source under different urls.

    Lower-cases scheme and host, drops `www.`, default ports, fragments,
    trailing slashes and tracking parameters, and sorts the remaining query.
    """
    parts = urlsplit(url.strip())
    scheme = (parts.scheme or "http").lower()
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    try:
        port = parts.port
    except ValueError:
        port = None
    netloc = host
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{port}"

    path = parts.path.rstrip("/")
    query = sorted(
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in _TRACKING_PARAMS
    )
    return urlunsplit((scheme, netloc, path, urlencode(query), ""))


def url_hash(normalized_url: str) -> str:
    return hashlib.sha1(normalized_url.encode("utf-8")).hexdigest()


class EvidenceCollector:
    """Accumulates evidence for one task, deduplicated by normalized url."""

    def __init__(self) -> None:
        self.cards: list[EvidenceCard] = []
        self._seen: set[str] = set()

    @property
    def ids(self) -> set[str]:
        return {card.id for card in self.cards}

    def add_results(self, results: list[RawResult], *, question_id: str | None) -> list[EvidenceCard]:
        """Append new cards in result order and return only the ones added."""
        added: list[EvidenceCard] = []
        for result in results:
            if not result.url.strip():
                continue
            key = normalize_url(result.url)
            if key in self._seen:
                continue
            self._seen.add(key)
            card = EvidenceCard(
                id=f"e{len(self.cards) + 1}",
                url=result.url.strip(),
                title=result.title,
                snippet=result.snippet,
                question_id=question_id,
                score=result.score,
                published_at=result.published_at,
                hash=url_hash(key),
            )
            self.cards.append(card)
            added.append(card)
        return added


def split_valid_claims(claims: list[Claim], evidence_ids: set[str]) -> tuple[list[Claim], list[Claim]]:
    """Partition claims into (valid, dropped).

    A claim is valid when it cites at least one evidence id and every cited id
    exists. Duplicate claim ids keep the first occurrence.
    """
    valid: list[Claim] = []
    dropped: list[Claim] = []
    seen_ids: set[str] = set()
    for claim in claims:
        cited = claim.supporting_evidence_ids
        if not cited or not set(cited) <= evidence_ids or claim.id in seen_ids:
            dropped.append(claim)
            continue
        seen_ids.add(claim.id)
        valid.append(claim)
    return valid, dropped
