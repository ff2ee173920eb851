from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import lru_cache

import asyncpg  # type: ignore[import-untyped]

from incidentflow.core.config import QueueConfig, QueueRoute, build_queue_config, get_settings
from incidentflow.jobs.envelope import (
    ROUTE_BY_JOB_TYPE,
    ClusterJob,
    ExtractJob,
    JobType,
    PoisonReason,
    parse_envelope,
)
from incidentflow.jobs.errors import TransientJobError

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10
MAX_DELAY_SECONDS = 15 * 60
MAX_VISIBILITY_TIMEOUT_SECONDS = 12 * 60 * 60
MAX_RECEIVE_MESSAGES = 10
MAX_WAIT_SECONDS = 20
POISON_BODY_LOG_CHARS = 500


class QueueUnavailableError(TransientJobError):
    """Raised when the queue provider cannot be reached."""


@dataclass(slots=True)
class ReceivedMessage:
    receipt_handle: str
    raw_body: str
    envelope: ExtractJob | ClusterJob | None
    message_id: str | None = None
    receive_count: int | None = None
    poison_reason: PoisonReason | None = None
    poison_detail: str | None = None
    job_type: str | None = None


@dataclass(slots=True)
class BatchSendResult:
    successful: list[str]
    failed: list[str]


def clamp_visibility_timeout(delay_seconds: float) -> int:
    return int(max(0, min(delay_seconds, MAX_VISIBILITY_TIMEOUT_SECONDS)))


def clamp_delay(delay_seconds: float) -> int:
    return int(max(0, min(delay_seconds, MAX_DELAY_SECONDS)))


class QueueClient:
    """Named-queue client over the ``queue_messages`` table.

    Visibility, receive counts and dead-letter redrive live in the table, so the
    client itself keeps nothing between calls beyond the queue mapping and the
    connection pool.
    """

    def __init__(
        self,
        config: QueueConfig,
        *,
        database_url: str | None,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
        long_poll_interval_seconds: float = 1.0,
    ) -> None:
        self.config = config
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.long_poll_interval_seconds = max(0.05, long_poll_interval_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def enqueue(self, queue: str, envelope: ExtractJob | ClusterJob) -> str:
        return await self._send(queue, envelope, delay_seconds=0)

    async def enqueue_routed(self, envelope: ExtractJob | ClusterJob) -> str:
        return await self.enqueue(ROUTE_BY_JOB_TYPE[JobType(envelope.job_type)], envelope)

    async def enqueue_delayed(self, queue: str, envelope: ExtractJob | ClusterJob, delay_seconds: float) -> str:
        return await self._send(queue, envelope, delay_seconds=clamp_delay(delay_seconds))

    async def enqueue_batch(self, queue: str, envelopes: list[ExtractJob | ClusterJob]) -> BatchSendResult:
        route = self.config.route(queue)
        successful: list[str] = []
        failed: list[str] = []
        for start in range(0, len(envelopes), MAX_BATCH_SIZE):
            chunk = envelopes[start : start + MAX_BATCH_SIZE]
            try:
                await self._send_chunk(route, chunk)
            except (asyncpg.PostgresError, OSError, QueueUnavailableError) as exc:
                logger.error(
                    "batch send failed queue=%s chunk_start=%s size=%s error=%s",
                    queue,
                    start,
                    len(chunk),
                    exc,
                )
                failed.extend(envelope.job_id for envelope in chunk)
                continue
            successful.extend(envelope.job_id for envelope in chunk)
        return BatchSendResult(successful=successful, failed=failed)

    async def receive(
        self,
        queue: str,
        *,
        max_messages: int = 5,
        wait_seconds: float = 20,
        visibility_timeout_seconds: int = 60,
    ) -> list[ReceivedMessage]:
        route = self.config.route(queue)
        bounded_max = max(1, min(max_messages, MAX_RECEIVE_MESSAGES))
        bounded_wait = max(0.0, min(float(wait_seconds), MAX_WAIT_SECONDS))
        visibility = clamp_visibility_timeout(visibility_timeout_seconds)

        deadline = time.monotonic() + bounded_wait
        while True:
            rows = await self._claim_visible(route, limit=bounded_max, visibility_timeout_seconds=visibility)
            if rows:
                return [self._to_received_message(row) for row in rows]
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            await asyncio.sleep(min(self.long_poll_interval_seconds, remaining))

    async def delete(self, queue: str, receipt_handle: str) -> bool:
        route = self.config.route(queue)
        pool = await self._get_pool()
        deleted = await pool.fetchval(
            """
            with removed as (
              delete from queue_messages
              where queue_name = $1 and receipt_handle = $2
              returning 1
            )
            select count(*) from removed
            """,
            route.physical_name,
            receipt_handle,
        )
        if not deleted:
            logger.debug("delete matched no message queue=%s receipt_handle=%s", queue, receipt_handle)
        return bool(deleted)

    async def extend_visibility(self, queue: str, receipt_handle: str, delay_seconds: float) -> bool:
        route = self.config.route(queue)
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            with changed as (
              update queue_messages
              set visible_at = now() + ($3::int * interval '1 second')
              where queue_name = $1 and receipt_handle = $2
              returning 1
            )
            select count(*) from changed
            """,
            route.physical_name,
            receipt_handle,
            clamp_visibility_timeout(delay_seconds),
        )
        return bool(updated)

    async def handle_poison_message(self, queue: str, receipt_handle: str, raw_body: str) -> None:
        logger.error(
            "poison message (invalid JSON/envelope); deleting queue=%s body=%s",
            queue,
            raw_body[:POISON_BODY_LOG_CHARS],
        )
        await self.delete(queue, receipt_handle)

    async def _send(self, queue: str, envelope: ExtractJob | ClusterJob, *, delay_seconds: int) -> str:
        route = self.config.route(queue)
        pool = await self._get_pool()
        message_id = await pool.fetchval(
            """
            insert into queue_messages (queue_name, body, job_type, correlation_id, visible_at)
            values ($1, $2, $3, $4, now() + ($5::int * interval '1 second'))
            returning message_id::text
            """,
            route.physical_name,
            envelope.to_wire(),
            envelope.job_type,
            envelope.correlation_id,
            delay_seconds,
        )
        logger.debug(
            "message enqueued queue=%s job_type=%s job_id=%s message_id=%s",
            queue,
            envelope.job_type,
            envelope.job_id,
            message_id,
        )
        return message_id or envelope.job_id

    async def _send_chunk(self, route: QueueRoute, chunk: list[ExtractJob | ClusterJob]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    insert into queue_messages (queue_name, body, job_type, correlation_id)
                    values ($1, $2, $3, $4)
                    """,
                    [
                        (route.physical_name, envelope.to_wire(), envelope.job_type, envelope.correlation_id)
                        for envelope in chunk
                    ],
                )

    async def _claim_visible(
        self,
        route: QueueRoute,
        *,
        limit: int,
        visibility_timeout_seconds: int,
    ) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                redriven = await conn.fetchval(
                    """
                    with exhausted as (
                      select id
                      from queue_messages
                      where queue_name = $1
                        and visible_at <= now()
                        and receive_count >= $3
                      for update skip locked
                    ),
                    moved as (
                      update queue_messages q
                      set
                        queue_name = $2,
                        receive_count = 0,
                        receipt_handle = null,
                        visible_at = now()
                      from exhausted e
                      where q.id = e.id
                      returning 1
                    )
                    select count(*) from moved
                    """,
                    route.physical_name,
                    route.dead_letter_name,
                    route.max_receive_count,
                )
                if redriven:
                    logger.warning(
                        "redrove messages to dead-letter queue queue=%s dead_letter=%s count=%s",
                        route.name,
                        route.dead_letter_name,
                        redriven,
                    )

                rows = await conn.fetch(
                    """
                    with next_messages as (
                      select id
                      from queue_messages
                      where queue_name = $1 and visible_at <= now()
                      order by visible_at asc, id asc
                      limit $2
                      for update skip locked
                    )
                    update queue_messages q
                    set
                      receive_count = q.receive_count + 1,
                      receipt_handle = gen_random_uuid()::text,
                      visible_at = now() + ($3::int * interval '1 second'),
                      first_received_at = coalesce(q.first_received_at, now())
                    from next_messages n
                    where q.id = n.id
                    returning
                      q.id,
                      q.message_id::text as message_id,
                      q.receipt_handle,
                      q.body,
                      q.receive_count
                    """,
                    route.physical_name,
                    limit,
                    visibility_timeout_seconds,
                )
        return sorted(rows, key=lambda row: row["id"])

    @staticmethod
    def _to_received_message(row: asyncpg.Record) -> ReceivedMessage:
        raw_body = row["body"]
        parsed = parse_envelope(raw_body)
        return ReceivedMessage(
            receipt_handle=row["receipt_handle"],
            raw_body=raw_body,
            envelope=parsed.envelope,
            message_id=row["message_id"],
            receive_count=int(row["receive_count"]),
            poison_reason=parsed.poison_reason,
            poison_detail=parsed.detail,
            job_type=parsed.job_type,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise QueueUnavailableError("IF_DATABASE_URL is required for the queue provider")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=30,
            )
            return self._pool
        except (OSError, asyncpg.PostgresError) as exc:  # pragma: no cover - depends on environment
            raise QueueUnavailableError("queue provider unavailable") from exc


@lru_cache
def get_queue_client() -> QueueClient:
    settings = get_settings()
    return QueueClient(
        build_queue_config(settings),
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        long_poll_interval_seconds=settings.queue_long_poll_interval_seconds,
    )
