from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from incidentflow.core.config import get_settings
from incidentflow.jobs.errors import ErrorKind, JobError
from incidentflow.schemas.extraction import SCHEMA_VERSION, EventExtraction
from incidentflow.services.similarity import EventSnapshot, merged_attributes


class RepositoryError(JobError):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""

    kind = ErrorKind.TRANSIENT


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""

    kind = ErrorKind.NOT_FOUND


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""

    kind = ErrorKind.VALIDATION


SOURCE_STATUSES = {"pending", "extracted", "extraction_failed", "too_short", "irrelevant"}

_EVENT_COLUMNS = """
  id,
  title,
  event_type_primary,
  severity_level,
  confidence_extraction,
  country,
  admin1,
  latitude,
  longitude,
  event_start,
  summary_short,
  source_count,
  status,
  merged_into_id,
  created_at
"""


@dataclass(slots=True)
class SourceRecord:
    id: int
    url: str | None
    publisher: str | None
    title: str | None
    language: str | None
    published_at: datetime | None
    raw_text: str
    source_type: str | None
    extraction_status: str

    def prompt_metadata(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "publisher": self.publisher,
            "title": self.title,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "language": self.language,
        }


@dataclass(slots=True)
class MergeOutcome:
    merged: bool
    primary_event_id: int | None
    absorbed_event_id: int
    reason: str
    source_count: int | None = None
    confidence_extraction: float | None = None


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> bool:
        pool = await self._get_pool()
        return await pool.fetchval("select 1") == 1

    async def get_source(self, source_id: int) -> SourceRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              id,
              url,
              publisher,
              title,
              language,
              published_at,
              coalesce(raw_text, '') as raw_text,
              source_type,
              extraction_status
            from sources
            where id = $1
            """,
            source_id,
        )
        if row is None:
            return None
        return SourceRecord(
            id=row["id"],
            url=row["url"],
            publisher=row["publisher"],
            title=row["title"],
            language=row["language"],
            published_at=row["published_at"],
            raw_text=row["raw_text"],
            source_type=row["source_type"],
            extraction_status=row["extraction_status"],
        )

    async def has_extraction(self, source_id: int) -> bool:
        pool = await self._get_pool()
        return bool(
            await pool.fetchval(
                "select exists(select 1 from source_extractions where source_id = $1)",
                source_id,
            )
        )

    async def mark_source_status(self, source_id: int, status: str) -> None:
        if status not in SOURCE_STATUSES:
            raise RepositoryConflictError(f"unsupported source status: {status}")

        pool = await self._get_pool()
        result = await pool.execute(
            """
            update sources
            set extraction_status = $2, updated_at = now()
            where id = $1
            """,
            source_id,
            status,
        )
        if result.endswith(" 0"):
            raise RepositoryNotFoundError(f"source not found: {source_id}")

    async def save_extraction(
        self,
        *,
        source_id: int,
        extraction: EventExtraction,
        model: str,
        geo_validation: dict[str, Any],
        replace_existing: bool = False,
    ) -> int | None:
        """Create the event and every row tied to it in one transaction.

        Returns the new event id, or ``None`` when another worker already
        recorded an extraction for this source (the whole write is rolled back).
        """
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    return await self._write_extraction(
                        conn,
                        source_id=source_id,
                        extraction=extraction,
                        model=model,
                        geo_validation=geo_validation,
                        replace_existing=replace_existing,
                    )
        except pg_exc.UniqueViolationError:
            return None
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError(f"source not found: {source_id}") from exc

    async def get_event(self, event_id: int) -> EventSnapshot | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_EVENT_COLUMNS} from events where id = $1", event_id)
        return self._event_from_row(row) if row else None

    async def find_cluster_candidates(
        self,
        event: EventSnapshot,
        *,
        window_hours: int,
        limit: int,
    ) -> list[EventSnapshot]:
        window_start = event.created_at - timedelta(hours=max(1, window_hours))
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_EVENT_COLUMNS}
            from events
            where status = 'active'
              and id <> $1
              and event_type_primary = $2
              and country = $3
              and created_at >= $4
              and (created_at, id) < ($5, $1)
            order by created_at desc, id desc
            limit $6
            """,
            event.event_id,
            event.event_type_primary,
            event.country,
            window_start,
            event.created_at,
            max(1, limit),
        )
        return [self._event_from_row(row) for row in rows]

    async def list_recent_active_event_ids(self, *, window_hours: int) -> list[int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id
            from events
            where status = 'active'
              and created_at >= now() - ($1::int * interval '1 hour')
            order by created_at asc, id asc
            """,
            max(1, window_hours),
        )
        return [int(row["id"]) for row in rows]

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
        """Fold ``absorbed_id`` into ``primary_id`` under row locks.

        Safe to repeat: an absorbed event that is already merged is a no-op, and
        a primary merged in the meantime is replaced by its active root.
        """
        if primary_id == absorbed_id:
            raise RepositoryConflictError("an event cannot be merged into itself")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                return await self._merge_locked(
                    conn,
                    primary_id=primary_id,
                    absorbed_id=absorbed_id,
                    similarity_score=similarity_score,
                    merge_reason=merge_reason,
                    boost_per_source=boost_per_source,
                    max_confidence=max_confidence,
                )

    async def _write_extraction(
        self,
        conn: asyncpg.Connection,
        *,
        source_id: int,
        extraction: EventExtraction,
        model: str,
        geo_validation: dict[str, Any],
        replace_existing: bool,
    ) -> int:
        admin = extraction.location.admin
        coordinates = extraction.coordinates
        classification = extraction.classification
        event_id = await conn.fetchval(
            """
            insert into events (
              title,
              event_type_primary,
              event_type_secondary,
              severity_level,
              confidence_extraction,
              confidence_geolocation,
              summary_short,
              summary_detailed,
              event_start,
              event_end,
              is_ongoing,
              country,
              admin1,
              admin2,
              location_name,
              latitude,
              longitude,
              is_classroom_safe,
              classroom_topic_tags,
              status,
              source_count
            )
            values (
              $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
              $11, $12, $13, $14, $15, $16, $17, $18, $19,
              'active', 1
            )
            returning id
            """,
            extraction.title,
            extraction.event_type.primary,
            extraction.event_type.secondary,
            extraction.severity.level,
            extraction.confidence.extraction,
            extraction.confidence.geolocation,
            extraction.summary.short,
            extraction.summary.detailed,
            self._coerce_datetime(extraction.temporal.start_date),
            self._coerce_datetime(extraction.temporal.end_date),
            extraction.temporal.is_ongoing if extraction.temporal.is_ongoing is not None else True,
            admin.country,
            admin.admin1,
            admin.admin2,
            admin.locality or extraction.location.description or "",
            coordinates[1] if coordinates else None,
            coordinates[0] if coordinates else None,
            bool(classification and classification.is_classroom_safe),
            list(classification.classroom_topic_tags) if classification else [],
        )
        await conn.execute(
            """
            insert into event_sources (event_id, source_id, relation)
            values ($1, $2, 'primary')
            """,
            event_id,
            source_id,
        )
        await conn.execute(
            """
            update sources
            set extraction_status = 'extracted', updated_at = now()
            where id = $1
            """,
            source_id,
        )

        # Without replace_existing a second row for the source raises UniqueViolationError.
        conflict_clause = (
            """
            on conflict (source_id) do update
            set
              event_id = excluded.event_id,
              schema_version = excluded.schema_version,
              model = excluded.model,
              extraction_json = excluded.extraction_json,
              geo_validation = excluded.geo_validation,
              updated_at = now()
            """
            if replace_existing
            else ""
        )
        await conn.execute(
            f"""
            insert into source_extractions (
              source_id, event_id, schema_version, model, extraction_json, geo_validation
            )
            values ($1, $2, $3, $4, $5::jsonb, $6::jsonb)
            {conflict_clause}
            """,
            source_id,
            event_id,
            SCHEMA_VERSION,
            model,
            json.dumps(extraction.model_dump(mode="json")),
            json.dumps(geo_validation),
        )
        return int(event_id)

    async def _merge_locked(
        self,
        conn: asyncpg.Connection,
        *,
        primary_id: int,
        absorbed_id: int,
        similarity_score: float,
        merge_reason: str,
        boost_per_source: float,
        max_confidence: float,
    ) -> MergeOutcome:
        rows = await conn.fetch(
            f"""
            select {_EVENT_COLUMNS}
            from events
            where id = any($1::bigint[])
            order by id
            for update
            """,
            [primary_id, absorbed_id],
        )
        locked = {int(row["id"]): self._event_from_row(row) for row in rows}
        absorbed = locked.get(absorbed_id)
        if absorbed is None:
            raise RepositoryNotFoundError(f"event not found: {absorbed_id}")
        if absorbed.status == "merged":
            return MergeOutcome(
                merged=False,
                primary_event_id=absorbed.merged_into_id,
                absorbed_event_id=absorbed_id,
                reason="already_merged",
            )
        if absorbed.status != "active":
            return MergeOutcome(
                merged=False,
                primary_event_id=None,
                absorbed_event_id=absorbed_id,
                reason=f"absorbed_{absorbed.status}",
            )

        primary = locked.get(primary_id)
        if primary is None:
            raise RepositoryNotFoundError(f"event not found: {primary_id}")
        if primary.status == "merged" and primary.merged_into_id is not None:
            root_row = await conn.fetchrow(
                f"select {_EVENT_COLUMNS} from events where id = $1 for update",
                primary.merged_into_id,
            )
            primary = self._event_from_row(root_row) if root_row else primary
        if primary.status != "active" or primary.event_id == absorbed_id:
            return MergeOutcome(
                merged=False,
                primary_event_id=None,
                absorbed_event_id=absorbed_id,
                reason="primary_unavailable",
            )

        # Sources the primary already carries (e.g. after a forced re-extraction) add nothing.
        added = await conn.fetch(
            """
            insert into event_sources (event_id, source_id, relation)
            select $1, source_id, 'supporting'
            from event_sources
            where event_id = $2
            on conflict (event_id, source_id) do nothing
            returning source_id
            """,
            primary.event_id,
            absorbed_id,
        )
        merged = merged_attributes(
            primary,
            absorbed,
            boost_per_source=boost_per_source,
            max_confidence=max_confidence,
            added_sources=len(added),
        )
        await conn.execute(
            """
            update events
            set
              source_count = $2,
              confidence_extraction = $3,
              severity_level = $4,
              updated_at = now()
            where id = $1
            """,
            primary.event_id,
            merged.source_count,
            merged.confidence_extraction,
            merged.severity_level,
        )
        await conn.execute(
            """
            update events
            set status = 'merged', merged_into_id = $2, updated_at = now()
            where id = $1
            """,
            absorbed_id,
            primary.event_id,
        )
        # Events merged into the absorbed one now point at the surviving root.
        await conn.execute(
            """
            update events
            set merged_into_id = $2, updated_at = now()
            where merged_into_id = $1 and status = 'merged'
            """,
            absorbed_id,
            primary.event_id,
        )
        await conn.execute(
            """
            insert into event_merges (primary_event_id, merged_event_id, similarity_score, merge_reason)
            values ($1, $2, $3, $4)
            """,
            primary.event_id,
            absorbed_id,
            similarity_score,
            merge_reason,
        )
        return MergeOutcome(
            merged=True,
            primary_event_id=primary.event_id,
            absorbed_event_id=absorbed_id,
            reason=merge_reason,
            source_count=merged.source_count,
            confidence_extraction=merged.confidence_extraction,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("IF_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except (OSError, asyncpg.PostgresError) as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _event_from_row(row: asyncpg.Record) -> EventSnapshot:
        return EventSnapshot(
            event_id=int(row["id"]),
            title=row["title"] or "",
            event_type_primary=row["event_type_primary"],
            severity_level=int(row["severity_level"]),
            confidence_extraction=float(row["confidence_extraction"]),
            country=row["country"] or "",
            admin1=row["admin1"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            start_date=row["event_start"],
            summary_short=row["summary_short"] or "",
            source_count=int(row["source_count"] or 1),
            created_at=row["created_at"],
            status=row["status"],
            merged_into_id=row["merged_into_id"],
        )

    @staticmethod
    def _coerce_datetime(value: Any) -> datetime | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return None
            try:
                parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return None


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
