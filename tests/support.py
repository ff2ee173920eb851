from __future__ import annotations

import copy
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

from incidentflow.jobs.envelope import ClusterJob, ExtractJob, JobType, create_job_message
from incidentflow.schemas.extraction import EventExtraction
from incidentflow.services.extraction_client import ExtractionOutputError
from incidentflow.services.queue_client import BatchSendResult, ReceivedMessage
from incidentflow.services.repository import (
    SOURCE_STATUSES,
    MergeOutcome,
    RepositoryNotFoundError,
    SourceRecord,
)
from incidentflow.services.similarity import EventSnapshot, merged_attributes

WILDFIRE_TEXT = (
    "A fast-moving wildfire burned through dry chaparral north of Santa Clarita on Tuesday, "
    "forcing evacuations in several canyon communities. Fire crews reported limited containment "
    "as strong winds pushed flames toward the highway, and officials warned residents to stay alert. "
) * 2


class FakeRepository:
    """In-memory stand-in mirroring the persistence contract of PostgresRepository."""

    def __init__(self) -> None:
        self.sources: dict[int, SourceRecord] = {}
        self.events: dict[int, EventSnapshot] = {}
        self.event_sources: set[tuple[int, int, str]] = set()
        self.extractions: dict[int, dict[str, Any]] = {}
        self.merges: list[dict[str, Any]] = []
        self.status_updates: list[tuple[int, str]] = []
        self.save_calls = 0
        self._next_event_id = 1
        self._clock = datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc)

    def add_source(self, source_id: int, raw_text: str = WILDFIRE_TEXT, **fields: Any) -> SourceRecord:
        record = SourceRecord(
            id=source_id,
            url=fields.get("url", f"https://news.example.org/articles/{source_id}"),
            publisher=fields.get("publisher", "Example News"),
            title=fields.get("title", "Wildfire forces evacuations"),
            language=fields.get("language", "en"),
            published_at=fields.get("published_at"),
            raw_text=raw_text,
            source_type=fields.get("source_type", "news"),
            extraction_status=fields.get("extraction_status", "pending"),
        )
        self.sources[source_id] = record
        return record

    def add_event(self, **fields: Any) -> EventSnapshot:
        event_id = fields.pop("event_id", None) or self._allocate_event_id()
        # Every event starts with one primary source; ad-hoc events get a synthetic one.
        source_id = fields.pop("source_id", None) or 1000 + event_id
        values: dict[str, Any] = {
            "event_id": event_id,
            "title": "Wildfire near Santa Clarita forces evacuations",
            "event_type_primary": "wildfire",
            "severity_level": 3,
            "confidence_extraction": 0.8,
            "country": "United States",
            "admin1": "California",
            "latitude": 34.39,
            "longitude": -118.54,
            "start_date": datetime(2024, 7, 1, tzinfo=timezone.utc),
            "summary_short": "Wildfire burns chaparral and forces canyon evacuations",
            "source_count": 1,
            "created_at": self._tick(),
        }
        values.update(fields)
        event = EventSnapshot(**values)
        self.events[event.event_id] = event
        self.event_sources.add((event.event_id, source_id, "primary"))
        return event

    async def get_source(self, source_id: int) -> SourceRecord | None:
        return self.sources.get(source_id)

    async def has_extraction(self, source_id: int) -> bool:
        return source_id in self.extractions

    async def mark_source_status(self, source_id: int, status: str) -> None:
        assert status in SOURCE_STATUSES
        if source_id not in self.sources:
            raise RepositoryNotFoundError(f"source not found: {source_id}")
        self.sources[source_id] = replace(self.sources[source_id], extraction_status=status)
        self.status_updates.append((source_id, status))

    async def save_extraction(
        self,
        *,
        source_id: int,
        extraction: EventExtraction,
        model: str,
        geo_validation: dict[str, Any],
        replace_existing: bool = False,
    ) -> int | None:
        self.save_calls += 1
        if source_id in self.extractions and not replace_existing:
            return None

        coordinates = extraction.coordinates
        start = extraction.temporal.start_date
        event = self.add_event(
            title=extraction.title,
            event_type_primary=extraction.event_type.primary,
            severity_level=extraction.severity.level,
            confidence_extraction=extraction.confidence.extraction,
            country=extraction.location.admin.country,
            admin1=extraction.location.admin.admin1,
            latitude=coordinates[1] if coordinates else None,
            longitude=coordinates[0] if coordinates else None,
            start_date=datetime.fromisoformat(start).replace(tzinfo=timezone.utc) if start else None,
            summary_short=extraction.summary.short,
            source_id=source_id,
        )
        self.sources[source_id] = replace(self.sources[source_id], extraction_status="extracted")
        self.extractions[source_id] = {
            "event_id": event.event_id,
            "model": model,
            "extraction": extraction.model_dump(mode="json"),
            "geo_validation": geo_validation,
        }
        return event.event_id

    async def get_event(self, event_id: int) -> EventSnapshot | None:
        event = self.events.get(event_id)
        return replace(event) if event else None

    async def find_cluster_candidates(
        self,
        event: EventSnapshot,
        *,
        window_hours: int,
        limit: int,
    ) -> list[EventSnapshot]:
        window_start = event.created_at - timedelta(hours=window_hours)
        rows = [
            candidate
            for candidate in self.events.values()
            if candidate.status == "active"
            and candidate.event_id != event.event_id
            and candidate.event_type_primary == event.event_type_primary
            and candidate.country == event.country
            and window_start <= candidate.created_at
            and (candidate.created_at, candidate.event_id) < (event.created_at, event.event_id)
        ]
        rows.sort(key=lambda row: (row.created_at, row.event_id), reverse=True)
        return [replace(row) for row in rows[:limit]]

    async def list_recent_active_event_ids(self, *, window_hours: int) -> list[int]:
        rows = [event for event in self.events.values() if event.status == "active"]
        rows.sort(key=lambda row: (row.created_at, row.event_id))
        return [row.event_id for row in rows]

    async def merge_events(
        self,
        *,
        primary_id: int,
        absorbed_id: int,
        similarity_score: float,
        merge_reason: str,
        boost_per_source: float,
        max_confidence: float,
    ) -> MergeOutcome:
        absorbed = self.events.get(absorbed_id)
        primary = self.events.get(primary_id)
        if absorbed is None or primary is None:
            raise RepositoryNotFoundError("event not found")
        if absorbed.status == "merged":
            return MergeOutcome(
                merged=False,
                primary_event_id=absorbed.merged_into_id,
                absorbed_event_id=absorbed_id,
                reason="already_merged",
            )
        if primary.status == "merged" and primary.merged_into_id is not None:
            primary = self.events[primary.merged_into_id]
        if primary.status != "active" or primary.event_id == absorbed_id:
            return MergeOutcome(
                merged=False,
                primary_event_id=None,
                absorbed_event_id=absorbed_id,
                reason="primary_unavailable",
            )

        linked = {source_id for event_id, source_id, _ in self.event_sources if event_id == primary.event_id}
        added = {
            source_id
            for event_id, source_id, _ in self.event_sources
            if event_id == absorbed_id and source_id not in linked
        }
        for source_id in added:
            self.event_sources.add((primary.event_id, source_id, "supporting"))
        merged = merged_attributes(
            primary,
            absorbed,
            boost_per_source=boost_per_source,
            max_confidence=max_confidence,
            added_sources=len(added),
        )
        primary.source_count = merged.source_count
        primary.confidence_extraction = merged.confidence_extraction
        primary.severity_level = merged.severity_level
        absorbed.status = "merged"
        absorbed.merged_into_id = primary.event_id
        for event in self.events.values():
            if event.status == "merged" and event.merged_into_id == absorbed_id:
                event.merged_into_id = primary.event_id
        self.merges.append(
            {
                "primary_event_id": primary.event_id,
                "merged_event_id": absorbed_id,
                "similarity_score": similarity_score,
                "merge_reason": merge_reason,
            }
        )
        return MergeOutcome(
            merged=True,
            primary_event_id=primary.event_id,
            absorbed_event_id=absorbed_id,
            reason=merge_reason,
            source_count=merged.source_count,
            confidence_extraction=merged.confidence_extraction,
        )

    def _allocate_event_id(self) -> int:
        event_id = self._next_event_id
        self._next_event_id += 1
        return event_id

    def _tick(self) -> datetime:
        self._clock += timedelta(minutes=5)
        return self._clock


class FakeQueue:
    def __init__(self, messages: dict[str, list[ReceivedMessage]] | None = None) -> None:
        self.pending = messages or {}
        self.enqueued: list[tuple[str, ExtractJob | ClusterJob]] = []
        self.deleted: list[tuple[str, str]] = []
        self.extended: list[tuple[str, str, float]] = []
        self.poisoned: list[tuple[str, str]] = []
        self.receive_calls: list[str] = []
        self.delays: dict[str, float] = {}

    async def enqueue(self, queue: str, envelope: ExtractJob | ClusterJob) -> str:
        self.enqueued.append((queue, envelope))
        return f"msg-{len(self.enqueued)}"

    async def enqueue_routed(self, envelope: ExtractJob | ClusterJob) -> str:
        queue = "q_extract" if envelope.job_type == JobType.EXTRACT.value else "q_cluster"
        return await self.enqueue(queue, envelope)

    async def enqueue_delayed(self, queue: str, envelope: ExtractJob | ClusterJob, delay_seconds: float) -> str:
        self.delays[envelope.job_id] = delay_seconds
        return await self.enqueue(queue, envelope)

    async def enqueue_batch(self, queue: str, envelopes: list[ExtractJob | ClusterJob]) -> BatchSendResult:
        for envelope in envelopes:
            await self.enqueue(queue, envelope)
        return BatchSendResult(successful=[envelope.job_id for envelope in envelopes], failed=[])

    async def receive(self, queue: str, **_: Any) -> list[ReceivedMessage]:
        self.receive_calls.append(queue)
        return self.pending.pop(queue, [])

    async def delete(self, queue: str, receipt_handle: str) -> bool:
        self.deleted.append((queue, receipt_handle))
        return True

    async def extend_visibility(self, queue: str, receipt_handle: str, delay_seconds: float) -> bool:
        self.extended.append((queue, receipt_handle, delay_seconds))
        return True

    async def handle_poison_message(self, queue: str, receipt_handle: str, raw_body: str) -> None:
        self.poisoned.append((queue, raw_body))
        await self.delete(queue, receipt_handle)


class FakeCapability:
    def __init__(self, *responses: dict[str, Any] | Exception, model_name: str = "fake-extract-model") -> None:
        self.model_name = model_name
        self.responses = list(responses)
        self.prompts: list[tuple[str, str]] = []

    async def extract(self, *, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        self.prompts.append((system_prompt, user_prompt))
        if not self.responses:
            raise ExtractionOutputError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return copy.deepcopy(response)


def make_extraction(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "schema_version": "event_extraction_v1",
        "title": "Wildfire near Santa Clarita forces evacuations",
        "event_type": {"primary": "wildfire", "secondary": None},
        "severity": {"level": 3, "rationale": "evacuations ordered"},
        "confidence": {"extraction": 0.8},
        "location": {
            "geometry": {"type": "Point", "coordinates": [-118.54, 34.39], "precision": "approximate"},
            "admin": {"country": "United States", "admin1": "California", "locality": "Santa Clarita"},
        },
        "temporal": {"start_date": "2024-07-01", "is_ongoing": True},
        "summary": {"short": "Wildfire burns chaparral and forces canyon evacuations"},
        "source_ref": {"url": "https://news.example.org/articles/1", "publisher": "Example News"},
    }
    payload.update(overrides)
    return payload


def make_received(envelope: ExtractJob | ClusterJob | None, **fields: Any) -> ReceivedMessage:
    raw_body = fields.pop("raw_body", envelope.to_wire() if envelope is not None else "")
    return ReceivedMessage(
        receipt_handle=fields.pop("receipt_handle", "rh-1"),
        raw_body=raw_body,
        envelope=envelope,
        message_id=fields.pop("message_id", "m-1"),
        receive_count=fields.pop("receive_count", 1),
        job_type=envelope.job_type if envelope is not None else fields.pop("job_type", None),
        **fields,
    )


def extract_envelope(source_id: int = 1, **payload: Any) -> ExtractJob:
    return create_job_message(JobType.EXTRACT, {"source_id": source_id, **payload})


def cluster_envelope(event_id: int | None = None, **payload: Any) -> ClusterJob:
    body = {"event_id": event_id, **payload} if event_id is not None else dict(payload)
    return create_job_message(JobType.CLUSTER, body)
