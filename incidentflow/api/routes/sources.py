from fastapi import APIRouter, Depends, Header, status

from incidentflow.api.enqueue import enqueue_job
from incidentflow.api.schemas import ExtractRequest, JobAccepted
from incidentflow.api.security import require_producer_key
from incidentflow.jobs.envelope import JobType, create_job_message
from incidentflow.services.queue_client import get_queue_client

router = APIRouter(dependencies=[Depends(require_producer_key)])


@router.post("/{source_id}/extract", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def request_extraction(
    source_id: int,
    payload: ExtractRequest,
    queue=Depends(get_queue_client),
    x_correlation_id: str | None = Header(default=None, alias="X-Correlation-Id"),
) -> JobAccepted:
    envelope = create_job_message(
        JobType.EXTRACT,
        {"source_id": source_id, **payload.model_dump(exclude_none=True)},
        x_correlation_id,
    )
    return await enqueue_job(queue, envelope)
