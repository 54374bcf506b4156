"""Job intake: validate, persist, publish; plus the owner-scoped read and cancel paths."""

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from questline.config import Settings
from questline.core.exceptions import BrokerPublishError, JobStateConflictError, JobValidationError, NotFoundError
from questline.jobs.dedup import dispatch_dedup_key
from questline.jobs.models import DEFAULT_MAX_ATTEMPTS, DEFAULT_PRIORITY, INTERNAL_JOB_TYPES, JOB_STATUSES, JOB_TYPES, JobCorrelation, JobRecord, dump_job_payload, parse_job_payload
from questline.services.tasks.interface import TaskEnqueuer
from questline.storage.jobs_repo import JobsRepository
from questline.utils.ids import generate_job_id
from questline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

_JOB_NOT_FOUND_MSG = "Job not found."
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200


def _validate_bounds(priority: int | None, max_attempts: int | None) -> tuple[int, int]:
  resolved_priority = DEFAULT_PRIORITY if priority is None else priority
  resolved_max_attempts = DEFAULT_MAX_ATTEMPTS if max_attempts is None else max_attempts
  if not 0 <= resolved_priority <= 100:
    raise JobValidationError("priority must be between 0 and 100.", details={"priority": resolved_priority})
  if not 1 <= resolved_max_attempts <= 10:
    raise JobValidationError("max_attempts must be between 1 and 10.", details={"max_attempts": resolved_max_attempts})
  return resolved_priority, resolved_max_attempts


def _validate_payload(job_type: str, payload: dict[str, Any] | None, correlation: JobCorrelation) -> dict[str, Any]:
  """Parse the payload for its job type and check the correlation ids the type depends on."""
  if job_type not in JOB_TYPES:
    raise JobValidationError(f"Unknown job type: {job_type}", details={"job_type": job_type})

  try:
    parsed = parse_job_payload(job_type, payload)
  except ValidationError as exc:
    errors = [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]
    raise JobValidationError(f"Invalid payload for job type {job_type}.", details={"errors": errors}) from exc

  refs = correlation.as_dict()
  missing = [name for name in parsed.required_refs if not refs.get(name)]
  if missing:
    raise JobValidationError(f"Job type {job_type} requires {', '.join(missing)}.", details={"missing": missing})

  return dump_job_payload(parsed)


async def enqueue_job(repo: JobsRepository, enqueuer: TaskEnqueuer, settings: Settings, *, owner_id: str, job_type: str, payload: dict[str, Any] | None, correlation: JobCorrelation | None = None, priority: int | None = None, max_attempts: int | None = None) -> str:
  """Persist a queued job and publish it to the broker.

  Raises JobValidationError before anything is written. If the broker publish fails the row stays
  queued and BrokerPublishError carries its id; the reconciliation sweep re-publishes it later.
  """
  if not owner_id or not owner_id.strip():
    raise JobValidationError("owner_id is required.")

  correlation = correlation or JobCorrelation()
  resolved_priority, resolved_max_attempts = _validate_bounds(priority, max_attempts)
  stored_payload = _validate_payload(job_type, payload, correlation)

  now = utcnow()
  record = JobRecord(
    id=generate_job_id(),
    owner_id=owner_id,
    job_type=job_type,  # type: ignore[arg-type]
    payload=stored_payload,
    status="queued",
    priority=resolved_priority,
    attempts=0,
    max_attempts=resolved_max_attempts,
    created_at=now,
    updated_at=now,
    session_id=correlation.session_id,
    chapter_id=correlation.chapter_id,
    adventure_id=correlation.adventure_id,
    chapter_quest_id=correlation.chapter_quest_id,
  )
  await repo.create_job(record)
  logger.info("Job queued job_id=%s type=%s owner=%s priority=%s", record.id, job_type, owner_id, resolved_priority)

  try:
    await asyncio.wait_for(enqueuer.publish(record.id, dedup_key=dispatch_dedup_key(record.id)), timeout=settings.broker_timeout_seconds)
  except BrokerPublishError as exc:
    exc.job_id = exc.job_id or record.id
    logger.error("Broker publish failed job_id=%s; left queued for the sweep: %s", record.id, exc.message)
    raise
  except TimeoutError as exc:
    logger.error("Broker publish timed out job_id=%s after %.1fs; left queued for the sweep", record.id, settings.broker_timeout_seconds)
    raise BrokerPublishError("Broker publish timed out.", job_id=record.id) from exc

  return record.id


async def enqueue_for_user(repo: JobsRepository, enqueuer: TaskEnqueuer, settings: Settings, *, user_id: str, job_type: str, payload: dict[str, Any] | None, correlation: JobCorrelation | None = None, priority: int | None = None, max_attempts: int | None = None) -> str:
  """Enqueue on behalf of the authenticated caller, who becomes the owner.

  Reward evaluations are refused here; they are scheduled by server code through `enqueue_internal`.
  """
  if job_type in INTERNAL_JOB_TYPES:
    raise JobValidationError(f"Job type {job_type} cannot be requested directly.", details={"job_type": job_type})
  return await enqueue_job(repo, enqueuer, settings, owner_id=user_id, job_type=job_type, payload=payload, correlation=correlation, priority=priority, max_attempts=max_attempts)


async def enqueue_internal(repo: JobsRepository, enqueuer: TaskEnqueuer, settings: Settings, *, owner_id: str, job_type: str, payload: dict[str, Any] | None, correlation: JobCorrelation | None = None, priority: int | None = None, max_attempts: int | None = None) -> str:
  """Enqueue from trusted server code that names the owner explicitly."""
  return await enqueue_job(repo, enqueuer, settings, owner_id=owner_id, job_type=job_type, payload=payload, correlation=correlation, priority=priority, max_attempts=max_attempts)


def clamp_list_limit(limit: int | None) -> int:
  if limit is None:
    return DEFAULT_LIST_LIMIT
  return max(1, min(MAX_LIST_LIMIT, limit))


async def list_jobs(repo: JobsRepository, owner_id: str, *, status: str | None = None, job_type: str | None = None, limit: int | None = None) -> list[JobRecord]:
  """Return the owner's jobs newest first; this is where execution failures become visible."""
  if status is not None and status not in JOB_STATUSES:
    raise JobValidationError(f"Unknown job status: {status}", details={"status": status})
  if job_type is not None and job_type not in JOB_TYPES:
    raise JobValidationError(f"Unknown job type: {job_type}", details={"job_type": job_type})
  return await repo.list_jobs(owner_id, status=status, job_type=job_type, limit=clamp_list_limit(limit))  # type: ignore[arg-type]


async def get_job(repo: JobsRepository, owner_id: str, job_id: str) -> JobRecord:
  record = await repo.get_job(job_id)
  # Other owners' jobs are indistinguishable from missing ones.
  if record is None or record.owner_id != owner_id:
    raise NotFoundError(_JOB_NOT_FOUND_MSG, details={"job_id": job_id})
  return record


async def cancel_job(repo: JobsRepository, owner_id: str, job_id: str) -> JobRecord:
  """Cancel a job that has not started yet."""
  cancelled = await repo.cancel_job(job_id, owner_id=owner_id)
  if cancelled is not None:
    logger.info("Job cancelled job_id=%s owner=%s", job_id, owner_id)
    return cancelled

  current = await get_job(repo, owner_id, job_id)
  raise JobStateConflictError(f"Job cannot be cancelled while {current.status}.", details={"job_id": job_id, "status": current.status})
