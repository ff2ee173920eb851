from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace

from incidentflow.jobs.context import JobContext
from incidentflow.jobs.envelope import ClusterJob
from incidentflow.jobs.errors import JobNotFoundError
from incidentflow.services.similarity import evaluate_cluster_decision, narrow_candidates

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_cluster_job(envelope: ClusterJob, context: JobContext) -> dict[str, Any]:
    payload = envelope.payload
    window_hours = payload.window_hours or context.settings.cluster_time_window_hours

    with tracer.start_as_current_span("job.cluster") as span:
        span.set_attribute("job.id", envelope.job_id)
        span.set_attribute("job.correlation_id", envelope.correlation_id)
        if payload.event_id is None:
            span.set_attribute("cluster.mode", "batch")
            return await cluster_recent_events(context, window_hours=window_hours)

        span.set_attribute("cluster.mode", "single")
        span.set_attribute("event.id", payload.event_id)
        result = await cluster_event(payload.event_id, context, window_hours=window_hours)
        span.set_attribute("cluster.action", result["action"])
        return result


async def cluster_event(event_id: int, context: JobContext, *, window_hours: int) -> dict[str, Any]:
    """Merge ``event_id`` into the most similar earlier event, if one is close enough."""
    settings = context.settings
    repository = context.repository
    logger.info("starting event clustering event_id=%s window_hours=%s", event_id, window_hours)

    event = await repository.get_event(event_id)
    if event is None:
        raise JobNotFoundError(f"event not found: {event_id}")

    if event.status == "merged":
        logger.info(
            "event already merged; nothing to do event_id=%s merged_into_id=%s",
            event_id,
            event.merged_into_id,
        )
        return _result(event_id, action="merged", primary_event_id=event.merged_into_id, reason="already_merged")
    if event.status != "active":
        return _result(event_id, action="new", primary_event_id=event_id, reason=f"event_{event.status}")

    candidates = await repository.find_cluster_candidates(
        event,
        window_hours=window_hours,
        limit=settings.cluster_max_candidates,
    )
    candidates = narrow_candidates(event, candidates, max_distance_km=settings.cluster_max_distance_km)
    if not candidates:
        logger.info("no duplicates found; event is unique event_id=%s", event_id)
        return _result(event_id, action="new", primary_event_id=event_id, reason="no_candidates")

    decision = evaluate_cluster_decision(
        event,
        candidates,
        max_distance_km=settings.cluster_max_distance_km,
        threshold=settings.cluster_min_similarity_score,
    )
    if decision.action == "new" or decision.primary_event_id is None:
        logger.info(
            "candidates found but similarity too low event_id=%s candidates=%s best_score=%.3f",
            event_id,
            len(candidates),
            decision.score or 0.0,
        )
        return _result(
            event_id,
            action="new",
            primary_event_id=event_id,
            reason="below_threshold",
            score=decision.score,
            candidate_count=len(candidates),
        )

    best = decision.ranked[0]
    logger.info(
        "found matching event; merging event_id=%s primary_event_id=%s score=%.3f",
        event_id,
        decision.primary_event_id,
        best.score,
    )
    outcome = await repository.merge_events(
        primary_id=decision.primary_event_id,
        absorbed_id=event_id,
        similarity_score=best.score,
        merge_reason=merge_reason(best.components),
        boost_per_source=settings.cluster_source_confidence_boost,
        max_confidence=settings.cluster_max_boosted_confidence,
    )
    if not outcome.merged:
        logger.info("merge skipped event_id=%s reason=%s", event_id, outcome.reason)
        action = "merged" if outcome.reason == "already_merged" else "new"
        return _result(
            event_id,
            action=action,
            primary_event_id=outcome.primary_event_id or event_id,
            reason=outcome.reason,
            score=best.score,
        )

    logger.info(
        "events merged primary_event_id=%s merged_event_id=%s source_count=%s confidence=%.3f",
        outcome.primary_event_id,
        event_id,
        outcome.source_count,
        outcome.confidence_extraction or 0.0,
    )
    return _result(
        event_id,
        action="merged",
        primary_event_id=outcome.primary_event_id,
        reason="similarity_match",
        merged_event_ids=[event_id],
        score=best.score,
        source_count=outcome.source_count,
        confidence_extraction=outcome.confidence_extraction,
    )


async def cluster_recent_events(context: JobContext, *, window_hours: int) -> dict[str, Any]:
    event_ids = await context.repository.list_recent_active_event_ids(window_hours=window_hours)
    logger.info("batch clustering started events=%s window_hours=%s", len(event_ids), window_hours)

    merged_event_ids: list[int] = []
    for event_id in event_ids:
        try:
            result = await cluster_event(event_id, context, window_hours=window_hours)
        except JobNotFoundError:
            logger.warning("event disappeared during batch clustering event_id=%s", event_id)
            continue
        merged_event_ids.extend(result["merged_event_ids"])

    logger.info("batch clustering finished events=%s merged=%s", len(event_ids), len(merged_event_ids))
    return {
        "handled": True,
        "job_type": "CLUSTER",
        "mode": "batch",
        "action": "merged" if merged_event_ids else "new",
        "evaluated": len(event_ids),
        "merged_event_ids": merged_event_ids,
    }


def merge_reason(components: dict[str, float]) -> str:
    parts = ", ".join(f"{name}={value:.2f}" for name, value in components.items())
    return f"similarity match ({parts})"


def _result(
    event_id: int,
    *,
    action: str,
    primary_event_id: int | None,
    reason: str,
    merged_event_ids: list[int] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "handled": True,
        "job_type": "CLUSTER",
        "event_id": event_id,
        "action": action,
        "primary_event_id": primary_event_id,
        "merged_event_ids": merged_event_ids or [],
        "reason": reason,
        **extra,
    }
