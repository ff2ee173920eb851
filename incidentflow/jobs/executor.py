from __future__ import annotations

from typing import Any

from incidentflow.jobs.cluster import run_cluster_job
from incidentflow.jobs.context import JobContext
from incidentflow.jobs.envelope import ClusterJob, ExtractJob
from incidentflow.jobs.errors import PoisonMessageError
from incidentflow.jobs.extract import run_extract_job


async def execute_job(envelope: ExtractJob | ClusterJob, context: JobContext) -> dict[str, Any]:
    if isinstance(envelope, ExtractJob):
        return await run_extract_job(envelope, context)
    if isinstance(envelope, ClusterJob):
        return await run_cluster_job(envelope, context)
    raise PoisonMessageError(f"no handler for envelope type: {type(envelope).__name__}")
