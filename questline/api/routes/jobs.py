from fastapi import APIRouter, Depends, Query, status

from questline.api.deps import get_current_user_id, get_services
from questline.api.models import JobCreateRequest, JobCreateResponse, JobListResponse, JobStatusResponse
from questline.jobs.models import JobCorrelation
from questline.services import jobs as job_service
from questline.services.container import Services

router = APIRouter()


@router.post("", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(  # noqa: B008
  request: JobCreateRequest,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  services: Services = Depends(get_services),  # noqa: B008
) -> JobCreateResponse:
  """Persist a content job and hand it to the broker."""
  correlation = JobCorrelation(session_id=request.session_id, chapter_id=request.chapter_id, adventure_id=request.adventure_id, chapter_quest_id=request.chapter_quest_id)
  # Jobs may only point at the caller's own progression rows.
  await services.progression.authorize_refs(user_id, **correlation.as_dict())
  job_id = await job_service.enqueue_for_user(
    services.repositories.jobs,
    services.enqueuer,
    services.settings,
    user_id=user_id,
    job_type=request.job_type,
    payload=request.payload,
    correlation=correlation,
    priority=request.priority,
    max_attempts=request.max_attempts,
  )
  return JobCreateResponse(job_id=job_id)


@router.get("", response_model=JobListResponse)
async def list_jobs(  # noqa: B008
  status_filter: str | None = Query(default=None, alias="status"),
  job_type: str | None = Query(default=None),
  limit: int | None = Query(default=None),
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  services: Services = Depends(get_services),  # noqa: B008
) -> JobListResponse:
  """List the caller's jobs, newest first."""
  records = await job_service.list_jobs(services.repositories.jobs, user_id, status=status_filter, job_type=job_type, limit=limit)
  return JobListResponse(jobs=[JobStatusResponse.from_record(record) for record in records])


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(  # noqa: B008
  job_id: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  services: Services = Depends(get_services),  # noqa: B008
) -> JobStatusResponse:
  """Fetch the status and result of a job."""
  record = await job_service.get_job(services.repositories.jobs, user_id, job_id)
  return JobStatusResponse.from_record(record)


@router.post("/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(  # noqa: B008
  job_id: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  services: Services = Depends(get_services),  # noqa: B008
) -> JobStatusResponse:
  """Cancel a job that has not started yet."""
  record = await job_service.cancel_job(services.repositories.jobs, user_id, job_id)
  return JobStatusResponse.from_record(record)
