from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace

from incidentflow.jobs.context import JobContext
from incidentflow.jobs.envelope import ROUTE_BY_JOB_TYPE, ExtractJob, JobType, create_job_message
from incidentflow.jobs.errors import JobNotFoundError, JobValidationError
from incidentflow.schemas.extraction import EventExtraction, validate_extraction
from incidentflow.services.extraction_client import (
    ExtractionCapability,
    ExtractionOutputError,
    build_system_prompt,
    build_user_prompt,
)
from incidentflow.services.geo import GeoValidationResult, validate_geolocation
from incidentflow.services.repository import SourceRecord

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TRUNCATION_MARKER = "\n\n[TRUNCATED]"


async def run_extract_job(envelope: ExtractJob, context: JobContext) -> dict[str, Any]:
    payload = envelope.payload
    settings = context.settings
    repository = context.repository

    with tracer.start_as_current_span("job.extract") as span:
        span.set_attribute("job.id", envelope.job_id)
        span.set_attribute("job.correlation_id", envelope.correlation_id)
        span.set_attribute("source.id", payload.source_id)
        logger.info("EXTRACT job started job_id=%s source_id=%s", envelope.job_id, payload.source_id)

        source = await repository.get_source(payload.source_id)
        if source is None:
            raise JobNotFoundError(f"source not found: {payload.source_id}")

        if not payload.force_reextract and await repository.has_extraction(payload.source_id):
            logger.info("extraction already exists; skipping source_id=%s", payload.source_id)
            return _result(envelope, status="skipped", reason="already_extracted")

        text = source.raw_text.strip()
        if len(text) < settings.extraction_min_source_chars:
            logger.warning("source text too short source_id=%s length=%s", payload.source_id, len(text))
            await repository.mark_source_status(payload.source_id, "too_short")
            return _result(envelope, status="too_short", reason="source_text_too_short")

        text = truncate_text(text, settings.extraction_max_source_chars)
        capability = context.capability_for(payload.model_hint)
        extraction = await extract_with_strict_retry(capability, source, text)
        if extraction is None:
            await repository.mark_source_status(payload.source_id, "extraction_failed")
            raise JobValidationError(f"invalid event_extraction_v1 output for source_id={payload.source_id}")

        geo_validation = validate_geolocation(extraction.model_dump(mode="json"))
        apply_geo_validation(extraction, geo_validation)
        if not geo_validation.valid:
            logger.warning(
                "geolocation validation issues source_id=%s issues=%s adjusted_confidence=%.2f",
                payload.source_id,
                geo_validation.issues,
                geo_validation.adjusted_confidence,
            )

        event_id = await repository.save_extraction(
            source_id=payload.source_id,
            extraction=extraction,
            model=capability.model_name,
            geo_validation=geo_validation.as_dict(),
            replace_existing=payload.force_reextract,
        )
        if event_id is None:
            logger.info("extraction recorded concurrently; skipping source_id=%s", payload.source_id)
            return _result(envelope, status="skipped", reason="concurrent_extraction")

        span.set_attribute("event.id", event_id)
        logger.info("extraction saved source_id=%s event_id=%s", payload.source_id, event_id)

        cluster_job = create_job_message(JobType.CLUSTER, {"event_id": event_id}, envelope.correlation_id)
        try:
            await context.queue.enqueue(ROUTE_BY_JOB_TYPE[JobType.CLUSTER], cluster_job)
        except Exception:
            # A redelivered EXTRACT hits the idempotency skip, so only batch clustering reaches this event.
            logger.error(
                "CLUSTER enqueue failed after extraction was saved; event awaits batch clustering "
                "source_id=%s event_id=%s",
                payload.source_id,
                event_id,
            )
            raise
        logger.info(
            "CLUSTER job enqueued source_id=%s event_id=%s job_id=%s",
            payload.source_id,
            event_id,
            cluster_job.job_id,
        )

        return _result(
            envelope,
            status="extracted",
            reason="event_created",
            event_id=event_id,
            cluster_job_id=cluster_job.job_id,
            confidence=extraction.confidence.extraction,
            geo_valid=geo_validation.valid,
        )


async def extract_with_strict_retry(
    capability: ExtractionCapability,
    source: SourceRecord,
    text: str,
) -> EventExtraction | None:
    """Call the capability, retrying once with strict instructions on a schema failure.

    Provider errors propagate unchanged; only unusable output triggers the retry.
    """
    system_prompt = build_system_prompt()
    metadata = source.prompt_metadata()
    errors: list[str] = []
    for strict in (False, True):
        try:
            payload = await capability.extract(
                system_prompt=system_prompt,
                user_prompt=build_user_prompt(metadata, text, strict=strict),
            )
        except ExtractionOutputError as exc:
            errors = [str(exc)]
        else:
            extraction, errors = validate_extraction(payload)
            if extraction is not None:
                return extraction

        if not strict:
            logger.warning(
                "validation failed on attempt 1; retrying with strict prompt source_id=%s errors=%s",
                source.id,
                errors[:3],
            )

    logger.error("extraction invalid after retry source_id=%s errors=%s", source.id, errors[:5])
    return None


def apply_geo_validation(extraction: EventExtraction, result: GeoValidationResult) -> None:
    if result.valid:
        if extraction.confidence.geolocation is None:
            extraction.confidence.geolocation = result.adjusted_confidence
        return

    extraction.confidence.geolocation = result.adjusted_confidence
    if result.should_nullify_coords:
        extraction.clear_coordinates()


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def _result(envelope: ExtractJob, *, status: str, reason: str, **extra: Any) -> dict[str, Any]:
    return {
        "handled": True,
        "job_type": envelope.job_type,
        "job_id": envelope.job_id,
        "source_id": envelope.payload.source_id,
        "status": status,
        "reason": reason,
        **extra,
    }
