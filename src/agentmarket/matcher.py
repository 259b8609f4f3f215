"""
Capability matcher.

Turns a free-text intent into a ranked list of candidate services by
additive scoring over independent signals:

1. capability phrase present in the query: +40 each
2. partial capability-word overlap: up to +20 per capability
3. service-name word overlap: up to +15
4. description overlap (query words longer than 3 chars): up to +10
5. synonym groups: +15 per matched group
6. quality bonus (quality_score / 10), only when another signal fired

Totals are rounded and clamped to [0, 100]; zero scores are dropped.
"""
from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .models import Service, ServiceMatch
from .registry import ServiceRegistry

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE_SCORE = 50
DEFAULT_CACHE_TTL_SECONDS = 60.0

_SEPARATORS = re.compile(r"[-_]+")


@dataclass(frozen=True)
class SynonymGroup:
    """Related terms that imply a capability the query never names."""

    capability: str
    triggers: Tuple[str, ...]  # service must carry one of these capabilities
    keywords: Tuple[str, ...]


SYNONYM_GROUPS: Tuple[SynonymGroup, ...] = (
    SynonymGroup(
        capability="sentiment-analysis",
        triggers=("sentiment-analysis", "emotion-detection"),
        keywords=("feeling", "opinion", "mood", "tone", "emotion", "positive", "negative", "attitude"),
    ),
    SynonymGroup(
        capability="image-classification",
        triggers=("image-classification", "object-detection", "visual-analysis"),
        keywords=("picture", "photo", "visual", "see", "look", "recognize", "identify"),
    ),
    SynonymGroup(
        capability="text-summarization",
        triggers=("text-summarization",),
        keywords=("summarize", "summary", "brief", "tldr", "overview", "key points", "main ideas"),
    ),
    SynonymGroup(
        capability="web-search",
        triggers=("web-search",),
        keywords=("search", "find", "look up", "google", "news", "latest", "current"),
    ),
)

# (name, first stage capabilities, second stage capabilities)
PIPELINES: Tuple[Tuple[str, Tuple[str, ...], Tuple[str, ...]], ...] = (
    ("search-sentiment", ("web-search",), ("sentiment-analysis", "emotion-detection")),
    ("search-summarization", ("web-search",), ("text-summarization",)),
    (
        "image-text",
        ("image-classification", "object-detection", "ocr"),
        ("text-summarization", "sentiment-analysis"),
    ),
)


def quality_score(service: Service) -> int:
    """
    Blend reputation into a 0-100 quality score.

    rating 0-40, success rate 0-30, experience (jobs capped at 100) 0-20,
    response time bonus +10 under 1s, +5 under 3s.
    """
    rep = service.reputation
    score = (rep.rating / 5) * 40
    score += (rep.success_rate / 100) * 30
    score += min(rep.total_jobs / 100, 1) * 20
    seconds = rep.avg_response_seconds
    if seconds < 1:
        score += 10
    elif seconds < 3:
        score += 5
    return _round(score)


def _round(value: float) -> int:
    # half-up, not banker's rounding
    return int(math.floor(value + 0.5))


def _capability_words(capability: str) -> List[str]:
    return [w for w in _SEPARATORS.split(capability.lower()) if w]


def score_service(service: Service, query: str) -> Tuple[int, List[str]]:
    """Score one service against a lower-cased query."""
    score = 0.0
    matched: List[str] = []

    for capability in service.capabilities:
        words = _capability_words(capability)
        if not words:
            continue
        if " ".join(words) in query:
            score += 40
            matched.append(capability)
        hits = [w for w in words if w in query]
        if hits:
            score += 20 * (len(hits) / len(words))
            if capability not in matched:
                matched.append(capability)

    name_words = [w for w in service.name.lower().split() if w]
    if name_words:
        name_hits = [w for w in name_words if w in query]
        if name_hits:
            score += 15 * (len(name_hits) / len(name_words))

    description = service.description.lower()
    query_words = [w for w in query.split() if len(w) > 3]
    if query_words and description:
        desc_hits = [w for w in query_words if w in description]
        if desc_hits:
            score += 10 * (len(desc_hits) / len(query_words))

    for group in SYNONYM_GROUPS:
        if not any(c in group.triggers for c in service.capabilities):
            continue
        if any(kw in query for kw in group.keywords):
            score += 15
            if group.capability not in matched:
                matched.append(group.capability)

    if score > 0:
        score += quality_score(service) / 10

    return min(100, max(0, _round(score))), matched


class CapabilityMatcher:
    """
    Ranks registry listings against free-text intents.

    Listings are pulled from the registry and cached for ``cache_ttl``
    seconds; staleness inside that window is accepted.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: List[Service] = []
        self._cached_at: Optional[float] = None

    def _services(self) -> List[Service]:
        now = self._clock()
        if self._cached_at is None or now - self._cached_at > self.cache_ttl:
            self._cache = self._registry.all()
            self._cached_at = now
            logger.debug(f"Matcher cache refreshed: {len(self._cache)} services")
        return self._cache

    def invalidate(self) -> None:
        """Drop the cache so the next call re-pulls from the registry."""
        self._cached_at = None

    def match(self, query: str) -> List[ServiceMatch]:
        """Rank services for a query, best first. Ties keep listing order."""
        text = (query or "").lower()
        matches: List[ServiceMatch] = []
        for service in self._services():
            score, capabilities = score_service(service, text)
            if score > 0:
                matches.append(ServiceMatch(
                    service_id=service.id,
                    service_name=service.name,
                    score=score,
                    matched_capabilities=capabilities,
                ))

        matches.sort(key=lambda m: m.score, reverse=True)
        if matches:
            top = ", ".join(f"{m.service_name} ({m.score})" for m in matches[:3])
            logger.info(f"Matched {len(matches)} services for query {query[:50]!r}: {top}")
        return matches

    def detect_multi_service_workflow(self, query: str) -> List[str]:
        """
        Detect intents that need several services chained together.

        Among matches scoring above 50, a known pipeline shape
        (search -> sentiment, search -> summarization, image -> text)
        returns exactly that pipeline's service ids in pipeline order.
        Otherwise every high-confidence id is returned.
        """
        high = [m for m in self.match(query) if m.score > HIGH_CONFIDENCE_SCORE]
        if len(high) > 1:
            for name, first, second in PIPELINES:
                head = _first_with(high, first)
                tail = _first_with(high, second, exclude=head)
                if head and tail:
                    logger.info(f"Detected multi-service pipeline {name}: {head} -> {tail}")
                    return [head, tail]
        return [m.service_id for m in high]

    def best_for_capability(self, capability: str) -> Optional[Service]:
        """Highest quality service carrying a capability tag."""
        candidates = [s for s in self._services() if capability in s.capabilities]
        if not candidates:
            return None
        return max(candidates, key=quality_score)


def _first_with(
    matches: Sequence[ServiceMatch],
    capabilities: Sequence[str],
    exclude: Optional[str] = None,
) -> Optional[str]:
    for m in matches:
        if m.service_id != exclude and any(c in capabilities for c in m.matched_capabilities):
            return m.service_id
    return None
