from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, Header, status

from questline.api.deps import get_services, verify_worker_secret
from questline.api.models import RunJobResponse, RunJobTask, SweepRequest, SweepResponse
from questline.jobs.sweep import run_sweep
from questline.services.container import Services

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/run-job", response_model=RunJobResponse, status_code=status.HTTP_200_OK)
async def run_job_task(task: RunJobTask, services: Services = Depends(get_services)) -> RunJobResponse:  # noqa: B008
  """
  Broker callback: claim and run one job inline.
  Always answers 2xx once authenticated, so the broker never redelivers a settled outcome.
  """
  verify_worker_secret(task.worker_secret, services.settings)
  logger.info("Received task for job %s", task.job_id)
  outcome = await services.dispatcher.run(task.job_id)
  return RunJobResponse(job_id=outcome.job_id, status=outcome.status, attempts=outcome.attempts, republished=outcome.republished)


@router.post("/sweep", response_model=SweepResponse, status_code=status.HTTP_200_OK)
async def sweep_task(
  body: SweepRequest | None = Body(default=None),  # noqa: B008
  x_questline_worker_secret: str | None = Header(default=None),
  services: Services = Depends(get_services),  # noqa: B008
) -> SweepResponse:
  """Scheduler entrypoint for lease expiry and orphan re-publishing."""
  # Schedulers usually send the secret as a header; brokers send it in the body.
  provided = x_questline_worker_secret or (body.worker_secret if body is not None else None)
  verify_worker_secret(provided, services.settings)
  result = await run_sweep(services.repositories.jobs, services.enqueuer, services.settings)
  return SweepResponse(**result.as_dict())
