"""Claim, execute and settle one job per broker delivery."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Literal

from questline.config import Settings
from questline.jobs.dedup import retry_dedup_key
from questline.jobs.dispatch import JobHandlerRegistry, JobRefs
from questline.jobs.models import JobRecord, parse_job_payload
from questline.services.tasks.interface import TaskEnqueuer
from questline.storage.jobs_repo import JobsRepository
from questline.utils.timeutil import ms_since, utcnow

logger = logging.getLogger(__name__)

# Broker delay before retry N (1-based); the last step repeats.
RETRY_BACKOFF_SECONDS: tuple[int, ...] = (15, 60, 180, 600, 1800)
_MAX_ERROR_MESSAGE_CHARS = 2000

DispatchStatus = Literal["done", "requeued", "error", "skipped", "not_found"]


@dataclass(frozen=True)
class DispatchOutcome:
  job_id: str
  status: DispatchStatus
  attempts: int | None = None
  error_message: str | None = None
  republished: bool | None = None


def retry_delay_seconds(attempt: int) -> int:
  """Backoff before delivery of the given retry attempt."""
  index = min(max(attempt, 1), len(RETRY_BACKOFF_SECONDS)) - 1
  return RETRY_BACKOFF_SECONDS[index]


def _describe_failure(exc: BaseException, timeout_seconds: float) -> str:
  if isinstance(exc, TimeoutError):
    return f"timed out after {timeout_seconds:g}s"
  message = str(exc) or type(exc).__name__
  return f"{type(exc).__name__}: {message}"[:_MAX_ERROR_MESSAGE_CHARS]


async def republish(enqueuer: TaskEnqueuer, settings: Settings, job: JobRecord, *, delay_seconds: int) -> bool:
  """Best-effort re-publish of a requeued job; failures leave it for the reconciliation sweep."""
  try:
    await asyncio.wait_for(enqueuer.publish(job.id, dedup_key=retry_dedup_key(job.id, job.attempts), delay_seconds=delay_seconds), timeout=settings.broker_timeout_seconds)
  except Exception as exc:
    logger.warning("Re-publish failed job_id=%s attempt=%s; the sweep will retry: %s", job.id, job.attempts, exc)
    return False
  return True


class JobDispatcher:
  """Drives one job through claim, execute and settle.

  A job only runs after a successful compare-and-set claim, so duplicate broker deliveries are harmless.
  Handler failures are recorded on the row and never propagate to the caller.
  """

  def __init__(self, repo: JobsRepository, registry: JobHandlerRegistry, enqueuer: TaskEnqueuer, settings: Settings) -> None:
    self._repo = repo
    self._registry = registry
    self._enqueuer = enqueuer
    self._settings = settings

  @property
  def worker_id(self) -> str:
    return self._settings.worker_id

  async def run(self, job_id: str) -> DispatchOutcome:
    claimed = await self._repo.claim_job(job_id, worker_id=self.worker_id)
    if claimed is None:
      existing = await self._repo.get_job(job_id)
      if existing is None:
        logger.warning("Worker callback for unknown job_id=%s", job_id)
        return DispatchOutcome(job_id=job_id, status="not_found")
      logger.info("Skipping job_id=%s status=%s (not claimable)", job_id, existing.status)
      return DispatchOutcome(job_id=job_id, status="skipped", attempts=existing.attempts)

    logger.info("Claimed job_id=%s type=%s attempt=%s/%s worker=%s", job_id, claimed.job_type, claimed.attempts + 1, claimed.max_attempts, self.worker_id)
    timeout_seconds = self._settings.job_timeout_for(claimed.job_type)
    started = time.monotonic()
    try:
      result = await asyncio.wait_for(self._execute(claimed), timeout=timeout_seconds)
    except Exception as exc:
      error_message = _describe_failure(exc, timeout_seconds)
      logger.warning("Job failed job_id=%s type=%s after %sms: %s", job_id, claimed.job_type, ms_since(started, time.monotonic()), error_message, exc_info=not isinstance(exc, TimeoutError))
      return await self._settle_failure(claimed, error_message)

    completed = await self._repo.complete_job(job_id, worker_id=self.worker_id, result=result)
    if completed is None:
      # Lease expired and the sweep took the job back while the handler ran.
      logger.warning("Job finished after losing its lease job_id=%s; result discarded", job_id)
      return DispatchOutcome(job_id=job_id, status="skipped", attempts=claimed.attempts)

    logger.info("Job done job_id=%s type=%s in %sms", job_id, claimed.job_type, ms_since(started, time.monotonic()))
    return DispatchOutcome(job_id=job_id, status="done", attempts=completed.attempts)

  async def _execute(self, job: JobRecord) -> dict[str, Any]:
    handler = self._registry.resolve(job.job_type)
    payload = parse_job_payload(job.job_type, job.payload)
    return await handler(payload, JobRefs.from_record(job))

  async def _settle_failure(self, claimed: JobRecord, error_message: str) -> DispatchOutcome:
    next_attempt = claimed.attempts + 1
    delay_seconds = retry_delay_seconds(next_attempt)
    retry_at = utcnow() + timedelta(seconds=delay_seconds)
    failed = await self._repo.fail_job(claimed.id, worker_id=self.worker_id, error_message=error_message, retry_at=retry_at)
    if failed is None:
      logger.warning("Could not record failure job_id=%s; lease lost", claimed.id)
      return DispatchOutcome(job_id=claimed.id, status="skipped", attempts=claimed.attempts, error_message=error_message)

    if failed.status == "error":
      logger.error("Job exhausted attempts job_id=%s attempts=%s/%s: %s", failed.id, failed.attempts, failed.max_attempts, error_message)
      return DispatchOutcome(job_id=failed.id, status="error", attempts=failed.attempts, error_message=error_message)

    republished = await republish(self._enqueuer, self._settings, failed, delay_seconds=delay_seconds)
    logger.info("Job requeued job_id=%s attempts=%s/%s delay=%ss republished=%s", failed.id, failed.attempts, failed.max_attempts, delay_seconds, republished)
    return DispatchOutcome(job_id=failed.id, status="requeued", attempts=failed.attempts, error_message=error_message, republished=republished)
