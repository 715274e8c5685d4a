"""Background job API."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from eventflow.api.deps import get_event_system
from eventflow.schemas import JobCreate, JobList, JobOut, ProcessResult
from eventflow.system import EventSystem

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/", response_model=JobOut, status_code=201)
async def schedule_job(data: JobCreate, system: EventSystem = Depends(get_event_system)):
    job = await system.job_queue.schedule(
        data.type,
        payload=data.payload,
        scheduled_for=data.scheduled_for,
        priority=data.priority,
        max_retries=data.max_retries,
    )
    return JobOut.from_model(job)


@router.get("/", response_model=JobList)
async def list_jobs(
    status: Optional[str] = None,
    type: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    system: EventSystem = Depends(get_event_system),
):
    rows, total = await system.job_queue.list_jobs(status=status, type=type, limit=limit, offset=skip)
    return JobList(items=[JobOut.from_model(j) for j in rows], total=total)


@router.post("/process", response_model=ProcessResult)
async def process_jobs(system: EventSystem = Depends(get_event_system)):
    """Run one batch of due jobs now."""
    return ProcessResult(processed=await system.job_queue.process_due_jobs())


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, system: EventSystem = Depends(get_event_system)):
    job = await system.job_queue.get_job(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return JobOut.from_model(job)
