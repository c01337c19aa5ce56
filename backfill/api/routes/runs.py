"""Run start, inspection and cancellation endpoints."""

from fastapi import APIRouter, HTTPException

from ...errors import BackfillError
from ...models.migration import TERMINAL_STATUSES
from ..models import RunActionResponse, RunCreate, RunListResponse, RunResponse
from ..storage import run_storage

router = APIRouter()


@router.post("", response_model=RunResponse)
def start_run(data: RunCreate):
    """Start a run of one job for one provider."""
    try:
        record = run_storage.start(data)
    except BackfillError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return record.to_response()


@router.get("", response_model=RunListResponse)
async def list_runs():
    """List all runs, newest first."""
    runs = [record.to_response() for record in run_storage.list_all()]
    return RunListResponse(runs=runs, total=len(runs))


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    """Get a specific run."""
    record = run_storage.get(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return record.to_response()


@router.post("/{run_id}/cancel", response_model=RunActionResponse)
async def cancel_run(run_id: str):
    """Stop a run after its current page."""
    record = run_storage.get(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")

    status = record.orchestrator.status
    if record.finished or status in TERMINAL_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel run in status: {status.value}"
        )

    run_storage.cancel(run_id)
    return RunActionResponse(
        id=run_id,
        status="cancelling",
        detail={"job_key": record.orchestrator.job_run.job_key},
    )
