import logging

from fastapi import APIRouter, Depends, Header, status

from incidentflow.api.schemas import BatchAccepted, BatchExtractRequest
from incidentflow.api.security import require_producer_key
from incidentflow.jobs.envelope import ROUTE_BY_JOB_TYPE, JobType, create_job_message, generate_correlation_id
from incidentflow.services.queue_client import get_queue_client

router = APIRouter(dependencies=[Depends(require_producer_key)])
logger = logging.getLogger(__name__)


@router.post("/batch", response_model=BatchAccepted, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_extract_batch(
    payload: BatchExtractRequest,
    queue=Depends(get_queue_client),
    x_correlation_id: str | None = Header(default=None, alias="X-Correlation-Id"),
) -> BatchAccepted:
    correlation_id = x_correlation_id or generate_correlation_id()
    options = payload.model_dump(exclude_none=True, exclude={"source_ids"})
    envelopes = [
        create_job_message(JobType.EXTRACT, {"source_id": source_id, **options}, correlation_id)
        for source_id in payload.source_ids
    ]
    queue_name = ROUTE_BY_JOB_TYPE[JobType.EXTRACT]
    result = await queue.enqueue_batch(queue_name, envelopes)
    if result.failed:
        logger.warning(
            "batch enqueue partially failed queue=%s successful=%s failed=%s",
            queue_name,
            len(result.successful),
            len(result.failed),
        )
    return BatchAccepted(
        queue=queue_name,
        correlation_id=correlation_id,
        successful=result.successful,
        failed=result.failed,
    )
