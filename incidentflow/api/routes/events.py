from fastapi import APIRouter, Depends, Header, status

from incidentflow.api.enqueue import enqueue_job
from incidentflow.api.schemas import ClusterRequest, JobAccepted
from incidentflow.api.security import require_producer_key
from incidentflow.jobs.envelope import JobType, create_job_message
from incidentflow.services.queue_client import get_queue_client

router = APIRouter(dependencies=[Depends(require_producer_key)])


@router.post("/cluster", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def request_batch_clustering(
    payload: ClusterRequest,
    queue=Depends(get_queue_client),
    x_correlation_id: str | None = Header(default=None, alias="X-Correlation-Id"),
) -> JobAccepted:
    """Cluster every active event in the trailing window."""
    envelope = create_job_message(
        JobType.CLUSTER,
        payload.model_dump(exclude_none=True, exclude={"delay_seconds"}),
        x_correlation_id,
    )
    return await enqueue_job(queue, envelope, delay_seconds=payload.delay_seconds)


@router.post("/{event_id}/cluster", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def request_clustering(
    event_id: int,
    payload: ClusterRequest,
    queue=Depends(get_queue_client),
    x_correlation_id: str | None = Header(default=None, alias="X-Correlation-Id"),
) -> JobAccepted:
    envelope = create_job_message(
        JobType.CLUSTER,
        {"event_id": event_id, **payload.model_dump(exclude_none=True, exclude={"delay_seconds"})},
        x_correlation_id,
    )
    return await enqueue_job(queue, envelope, delay_seconds=payload.delay_seconds)
