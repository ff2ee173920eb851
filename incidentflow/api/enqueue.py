import logging

import asyncpg  # type: ignore[import-untyped]
from fastapi import HTTPException, status

from incidentflow.api.schemas import JobAccepted
from incidentflow.core.telemetry import bind_job_context
from incidentflow.jobs.envelope import ROUTE_BY_JOB_TYPE, ClusterJob, ExtractJob, JobType
from incidentflow.services.queue_client import QueueClient, QueueUnavailableError

logger = logging.getLogger(__name__)


async def enqueue_job(
    queue: QueueClient,
    envelope: ExtractJob | ClusterJob,
    *,
    delay_seconds: int = 0,
) -> JobAccepted:
    queue_name = ROUTE_BY_JOB_TYPE[JobType(envelope.job_type)]
    with bind_job_context(envelope.correlation_id, job_id=envelope.job_id, job_type=envelope.job_type):
        try:
            if delay_seconds > 0:
                message_id = await queue.enqueue_delayed(queue_name, envelope, delay_seconds)
            else:
                message_id = await queue.enqueue_routed(envelope)
        except (QueueUnavailableError, asyncpg.PostgresError, OSError) as exc:
            logger.error("enqueue failed job_type=%s error=%s", envelope.job_type, exc)
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="queue unavailable") from exc

        logger.info("job accepted job_type=%s delay_seconds=%s", envelope.job_type, delay_seconds)
    return JobAccepted(
        job_id=envelope.job_id,
        job_type=envelope.job_type,
        correlation_id=envelope.correlation_id,
        queue=queue_name,
        message_id=message_id,
    )
