"""Job catalogue and checkpoint endpoints."""

from fastapi import APIRouter, HTTPException

from ...errors import CheckpointError
from ...jobs import list_jobs
from ..models import CheckpointResponse, FieldInfo, JobInfo, JobListResponse
from ..storage import run_storage

router = APIRouter()


@router.get("/jobs", response_model=JobListResponse)
async def get_jobs():
    """List the job catalogue."""
    jobs = [
        JobInfo(
            name=job.name,
            table_prefix=job.table_prefix,
            description=job.description,
            order_by=list(job.order_by),
            fields=[
                FieldInfo(
                    name=spec.name,
                    type=spec.type.value,
                    null_policy=spec.null_policy.value,
                    column_type=spec.column_type,
                )
                for spec in job.fields
            ],
        )
        for job in list_jobs()
    ]
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/checkpoints/{job_key}", response_model=CheckpointResponse)
def get_checkpoint(job_key: str):
    """Get the stored watermark of a job."""
    try:
        checkpoint = run_storage.get_checkpoint(job_key)
    except CheckpointError as e:
        raise HTTPException(status_code=503, detail=e.message)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail="Checkpoint not found")
    return CheckpointResponse(**checkpoint.to_dict())
