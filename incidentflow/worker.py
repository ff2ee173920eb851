from __future__ import annotations

import asyncio
import itertools
import logging
import random
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any, Literal

from opentelemetry import trace

from incidentflow.core.config import Settings
from incidentflow.core.telemetry import bind_job_context
from incidentflow.jobs.context import JobContext
from incidentflow.jobs.envelope import ClusterJob, ExtractJob, PoisonReason
from incidentflow.jobs.errors import RETRYABLE_KINDS, classify_error
from incidentflow.jobs.executor import execute_job
from incidentflow.services.queue_client import QueueClient, ReceivedMessage

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_BACKOFF_SECONDS = 15 * 60
BACKOFF_JITTER_RATIO = 0.2

MessageAction = Literal["completed", "failed", "retry", "exhausted", "poison", "skipped", "error"]
JobExecutor = Callable[[ExtractJob | ClusterJob, JobContext], Awaitable[dict[str, Any]]]


def compute_backoff_seconds(
    attempt: int,
    base_delay_seconds: float,
    *,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff with up to 20% additive jitter, capped at 15 minutes."""
    exponent = min(max(0, attempt - 1), 32)
    delay = base_delay_seconds * (2**exponent)
    jitter = delay * (rng or random).uniform(0.0, BACKOFF_JITTER_RATIO)
    return min(delay + jitter, MAX_BACKOFF_SECONDS)


class Consumer:
    """Round-robin long-poll loop over the configured queues.

    Each message ends in exactly one acknowledgement decision: delete on
    success, poison or non-retryable failure; extend visibility on a retryable
    failure and let the queue's redrive policy take over once attempts run out.
    """

    def __init__(
        self,
        queue: QueueClient,
        context: JobContext,
        *,
        queues: list[str],
        max_messages: int = 5,
        wait_seconds: float = 20,
        visibility_timeout_seconds: int = 120,
        max_app_retries: int = 2,
        retry_base_delay_seconds: float = 30.0,
        shutdown_grace_seconds: float = 10.0,
        max_in_flight: int = 1,
        poll_error_pause_seconds: float = 1.0,
        executor: JobExecutor = execute_job,
    ) -> None:
        if not queues:
            raise ValueError("at least one queue is required")
        self.queue = queue
        self.context = context
        self.queues = list(queues)
        self.max_messages = max_messages
        self.wait_seconds = wait_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.max_app_retries = max(0, max_app_retries)
        self.retry_base_delay_seconds = max(0.0, retry_base_delay_seconds)
        self.shutdown_grace_seconds = max(0.0, shutdown_grace_seconds)
        self.max_in_flight = max(1, max_in_flight)
        self.poll_error_pause_seconds = max(0.0, poll_error_pause_seconds)
        self.executor = executor
        self._stop = asyncio.Event()
        self._semaphore = asyncio.Semaphore(self.max_in_flight)

    @classmethod
    def from_settings(cls, settings: Settings, *, queue: QueueClient, context: JobContext) -> Consumer:
        return cls(
            queue,
            context,
            queues=settings.worker_queues,
            max_messages=settings.worker_max_messages,
            wait_seconds=settings.worker_wait_seconds,
            visibility_timeout_seconds=settings.worker_visibility_timeout_seconds,
            max_app_retries=settings.worker_max_app_retries,
            retry_base_delay_seconds=settings.worker_retry_base_delay_seconds,
            shutdown_grace_seconds=settings.worker_shutdown_grace_seconds,
            max_in_flight=settings.worker_max_in_flight,
            poll_error_pause_seconds=settings.worker_poll_error_pause_seconds,
        )

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, reason: str = "requested") -> None:
        if not self._stop.is_set():
            logger.info("shutdown requested reason=%s; no new polls will start", reason)
        self._stop.set()

    async def run(self) -> None:
        logger.info("consumer started queues=%s max_in_flight=%s", ",".join(self.queues), self.max_in_flight)
        loop_task = asyncio.create_task(self._poll_loop())
        stop_task = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({loop_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if not loop_task.done():
                try:
                    await asyncio.wait_for(asyncio.shield(loop_task), timeout=self.shutdown_grace_seconds)
                except TimeoutError:
                    logger.warning(
                        "shutdown grace period elapsed; cancelling in-flight work grace_seconds=%.1f",
                        self.shutdown_grace_seconds,
                    )
                    loop_task.cancel()
                    with suppress(asyncio.CancelledError):
                        await loop_task
            else:
                loop_task.result()
        finally:
            stop_task.cancel()
            with suppress(asyncio.CancelledError):
                await stop_task
        logger.info("consumer stopped")

    async def _poll_loop(self) -> None:
        for queue_name in itertools.cycle(self.queues):
            if self.stopping:
                return
            await self.poll_once(queue_name)

    async def poll_once(self, queue_name: str) -> list[MessageAction]:
        with tracer.start_as_current_span("worker.poll_cycle") as span:
            span.set_attribute("queue.name", queue_name)
            try:
                messages = await self._receive(queue_name)
            except Exception:
                logger.exception("queue poll failed queue=%s", queue_name)
                await asyncio.sleep(self.poll_error_pause_seconds)
                return []

            span.set_attribute("queue.received", len(messages))
            if not messages:
                return []
            return await self.process_messages(queue_name, messages)

    async def process_messages(self, queue_name: str, messages: list[ReceivedMessage]) -> list[MessageAction]:
        return list(await asyncio.gather(*(self._process_bounded(queue_name, message) for message in messages)))

    async def handle_message(self, queue_name: str, message: ReceivedMessage) -> MessageAction:
        if message.envelope is None:
            await self._discard_poison(queue_name, message)
            return "poison"

        envelope = message.envelope
        attempt = message.receive_count or (envelope.attempt or 0) + 1
        job_context = bind_job_context(envelope.correlation_id, job_id=envelope.job_id, job_type=envelope.job_type)
        with job_context, tracer.start_as_current_span("worker.process_job") as span:
            span.set_attribute("job.id", envelope.job_id)
            span.set_attribute("job.type", envelope.job_type)
            span.set_attribute("job.correlation_id", envelope.correlation_id)
            span.set_attribute("job.attempt", attempt)
            span.set_attribute("queue.name", queue_name)
            try:
                result = await self.executor(envelope, self.context)
            except Exception as exc:
                span.record_exception(exc)
                return await self._handle_failure(queue_name, message, attempt, exc)

            await self.queue.delete(queue_name, message.receipt_handle)
            logger.info(
                "job completed queue=%s job_type=%s job_id=%s correlation_id=%s attempt=%s status=%s",
                queue_name,
                envelope.job_type,
                envelope.job_id,
                envelope.correlation_id,
                attempt,
                result.get("status") or result.get("action"),
            )
            return "completed"

    async def _handle_failure(
        self,
        queue_name: str,
        message: ReceivedMessage,
        attempt: int,
        exc: Exception,
    ) -> MessageAction:
        envelope = message.envelope
        assert envelope is not None
        kind = classify_error(exc)

        if kind not in RETRYABLE_KINDS:
            logger.error(
                "job failed (non-retryable); deleting queue=%s job_type=%s job_id=%s kind=%s error=%s",
                queue_name,
                envelope.job_type,
                envelope.job_id,
                kind.value,
                exc,
            )
            await self.queue.delete(queue_name, message.receipt_handle)
            return "failed"

        delay = compute_backoff_seconds(attempt, self.retry_base_delay_seconds)
        await self.queue.extend_visibility(queue_name, message.receipt_handle, delay)
        if attempt < self.max_app_retries:
            logger.warning(
                "job failed (retryable); retrying queue=%s job_type=%s job_id=%s attempt=%s delay_seconds=%.1f "
                "kind=%s error=%s",
                queue_name,
                envelope.job_type,
                envelope.job_id,
                attempt,
                delay,
                kind.value,
                exc,
            )
            return "retry"

        logger.error(
            "job failed; retries exhausted, leaving for dead-letter redrive queue=%s job_type=%s job_id=%s "
            "attempt=%s kind=%s error=%s",
            queue_name,
            envelope.job_type,
            envelope.job_id,
            attempt,
            kind.value,
            exc,
        )
        return "exhausted"

    async def _discard_poison(self, queue_name: str, message: ReceivedMessage) -> None:
        if message.poison_reason is PoisonReason.UNKNOWN_JOB_TYPE:
            logger.error(
                "unknown job type; deleting queue=%s job_type=%s message_id=%s",
                queue_name,
                message.job_type,
                message.message_id,
            )
            await self.queue.delete(queue_name, message.receipt_handle)
            return

        logger.error(
            "discarding poison message queue=%s reason=%s detail=%s message_id=%s",
            queue_name,
            message.poison_reason.value if message.poison_reason else None,
            message.poison_detail,
            message.message_id,
        )
        await self.queue.handle_poison_message(queue_name, message.receipt_handle, message.raw_body)

    async def _process_bounded(self, queue_name: str, message: ReceivedMessage) -> MessageAction:
        async with self._semaphore:
            if self.stopping:
                # Left unacknowledged; it becomes visible again after its timeout.
                return "skipped"
            try:
                return await self.handle_message(queue_name, message)
            except Exception:
                logger.exception(
                    "message handling failed queue=%s message_id=%s",
                    queue_name,
                    message.message_id,
                )
                return "error"

    async def _receive(self, queue_name: str) -> list[ReceivedMessage]:
        receive_task = asyncio.create_task(
            self.queue.receive(
                queue_name,
                max_messages=self.max_messages,
                wait_seconds=self.wait_seconds,
                visibility_timeout_seconds=self.visibility_timeout_seconds,
            )
        )
        stop_task = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({receive_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
        if not receive_task.done():
            receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await receive_task
            return []
        return receive_task.result()
