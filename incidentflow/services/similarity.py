from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

_NON_WORD_RE = re.compile(r"[^\w\s]")
_STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "this", "that",
    "these", "those", "than", "when", "where", "which", "who", "whom", "whose",
}

EARTH_RADIUS_KM = 6371.0
TYPE_WEIGHT = 0.2
GEO_DISTANCE_WEIGHT = 0.3
GEO_ADMIN_WEIGHT = 0.2
TITLE_WEIGHT = 0.25
SUMMARY_WEIGHT = 0.15
TEMPORAL_WEIGHT = 0.1
TEMPORAL_WINDOW_DAYS = 7.0

ClusterAction = Literal["new", "merged"]


@dataclass(slots=True)
class EventSnapshot:
    event_id: int
    title: str
    event_type_primary: str
    severity_level: int
    confidence_extraction: float
    country: str
    admin1: str | None
    latitude: float | None
    longitude: float | None
    start_date: datetime | None
    summary_short: str
    source_count: int
    created_at: datetime
    status: str = "active"
    merged_into_id: int | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(slots=True)
class SimilarityScore:
    candidate_id: int
    score: float
    components: dict[str, float] = field(default_factory=dict)
    weights: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class ClusterDecision:
    action: ClusterAction
    primary_event_id: int | None
    score: float | None
    ranked: list[SimilarityScore]


@dataclass(slots=True)
class MergedAttributes:
    source_count: int
    confidence_extraction: float
    severity_level: int
    confidence_boost: float


def narrow_candidates(
    event: EventSnapshot,
    candidates: list[EventSnapshot],
    *,
    max_distance_km: float,
) -> list[EventSnapshot]:
    """Drop candidates that are geographically implausible.

    Missing data never disqualifies a candidate: admin-only events are common.
    """
    if event.has_coordinates:
        kept = []
        for candidate in candidates:
            if not candidate.has_coordinates:
                kept.append(candidate)
                continue
            distance = haversine_km(event.latitude, event.longitude, candidate.latitude, candidate.longitude)
            if distance <= max_distance_km:
                kept.append(candidate)
        return kept

    return [
        candidate
        for candidate in candidates
        if not event.admin1 or not candidate.admin1 or candidate.admin1 == event.admin1
    ]


def score_event_pair(
    event: EventSnapshot,
    candidate: EventSnapshot,
    *,
    max_distance_km: float,
) -> SimilarityScore:
    components: dict[str, float] = {}
    weights: dict[str, float] = {}

    components["event_type"] = 1.0 if event.event_type_primary == candidate.event_type_primary else 0.0
    weights["event_type"] = TYPE_WEIGHT

    if event.has_coordinates and candidate.has_coordinates:
        distance = haversine_km(event.latitude, event.longitude, candidate.latitude, candidate.longitude)
        components["geo"] = max(0.0, 1.0 - distance / max_distance_km) if max_distance_km > 0 else 0.0
        weights["geo"] = GEO_DISTANCE_WEIGHT
    elif event.admin1 and candidate.admin1:
        components["geo"] = 1.0 if event.admin1 == candidate.admin1 else 0.0
        weights["geo"] = GEO_ADMIN_WEIGHT

    components["title"] = text_similarity(event.title, candidate.title)
    weights["title"] = TITLE_WEIGHT

    event_summary_tokens = tokenize(event.summary_short)
    candidate_summary_tokens = tokenize(candidate.summary_short)
    if event_summary_tokens and candidate_summary_tokens:
        components["summary"] = jaccard(event_summary_tokens, candidate_summary_tokens)
        weights["summary"] = SUMMARY_WEIGHT

    if event.start_date is not None and candidate.start_date is not None:
        days = abs((event.start_date - candidate.start_date).total_seconds()) / 86400.0
        components["temporal"] = max(0.0, 1.0 - days / TEMPORAL_WINDOW_DAYS)
        weights["temporal"] = TEMPORAL_WEIGHT

    return SimilarityScore(
        candidate_id=candidate.event_id,
        score=weighted_average(components, weights),
        components={name: round(value, 4) for name, value in components.items()},
        weights=weights,
    )


def weighted_average(components: dict[str, float], weights: dict[str, float]) -> float:
    total_weight = sum(weights.values())
    if total_weight <= 0:
        return 0.0
    return sum(components[name] * weight for name, weight in weights.items()) / total_weight


def evaluate_cluster_decision(
    event: EventSnapshot,
    candidates: list[EventSnapshot],
    *,
    max_distance_km: float,
    threshold: float,
) -> ClusterDecision:
    scores = [score_event_pair(event, candidate, max_distance_km=max_distance_km) for candidate in candidates]
    return choose_merge_target(scores, threshold=threshold)


def choose_merge_target(scores: list[SimilarityScore], *, threshold: float) -> ClusterDecision:
    """Pick the best-scoring candidate; ties keep the earlier (more recent) entry."""
    if not scores:
        return ClusterDecision(action="new", primary_event_id=None, score=None, ranked=[])

    ranked = sorted(scores, key=lambda row: -row.score)
    best = ranked[0]
    if best.score >= threshold:
        return ClusterDecision(action="merged", primary_event_id=best.candidate_id, score=best.score, ranked=ranked)
    return ClusterDecision(action="new", primary_event_id=None, score=best.score, ranked=ranked)


def merged_attributes(
    primary: EventSnapshot,
    absorbed: EventSnapshot,
    *,
    boost_per_source: float,
    max_confidence: float,
    added_sources: int | None = None,
) -> MergedAttributes:
    """Combine an absorbed event into its primary.

    ``added_sources`` is the number of sources the primary did not already
    carry; it defaults to the absorbed event's own count.
    """
    added = absorbed.source_count if added_sources is None else max(0, added_sources)
    boost = added * boost_per_source
    boosted = min(primary.confidence_extraction + boost, max_confidence)
    return MergedAttributes(
        source_count=primary.source_count + added,
        confidence_extraction=max(primary.confidence_extraction, boosted),
        severity_level=max(primary.severity_level, absorbed.severity_level),
        confidence_boost=boost,
    )


def text_similarity(left: str | None, right: str | None) -> float:
    left_tokens = tokenize(left)
    right_tokens = tokenize(right)
    if not left_tokens and not right_tokens:
        return 1.0
    return jaccard(left_tokens, right_tokens)


def jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def tokenize(value: str | None) -> set[str]:
    if not value:
        return set()
    words = _NON_WORD_RE.sub(" ", value.lower()).split()
    return {word for word in words if len(word) > 2 and word not in _STOP_WORDS}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
