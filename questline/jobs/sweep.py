"""Reconciliation sweep: expire stale leases and re-publish orphaned queued jobs.

Without it a worker crash leaves a job `running` forever and a lost publish leaves it `queued`
forever; both are recovered here, on a schedule, through the same broker path as normal retries.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from questline.config import Settings
from questline.jobs.worker import republish
from questline.services.tasks.interface import TaskEnqueuer
from questline.storage.jobs_repo import JobsRepository
from questline.utils.timeutil import seconds_ago

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
  requeued: int = 0
  failed: int = 0
  republished: int = 0

  def as_dict(self) -> dict[str, int]:
    return asdict(self)


async def run_sweep(repo: JobsRepository, enqueuer: TaskEnqueuer, settings: Settings) -> SweepResult:
  requeued = 0
  failed = 0
  republished = 0

  expired = await repo.expire_leases(locked_before=seconds_ago(settings.job_lease_ttl_seconds), limit=settings.sweep_batch_size)
  for job in expired:
    if job.status == "error":
      failed += 1
      logger.error("Lease expired on final attempt job_id=%s attempts=%s/%s", job.id, job.attempts, job.max_attempts)
      continue
    requeued += 1
    logger.warning("Lease expired job_id=%s; requeued attempt %s/%s", job.id, job.attempts, job.max_attempts)
    if await republish(enqueuer, settings, job, delay_seconds=0):
      await repo.mark_republished(job.id)
      republished += 1

  orphans = await repo.find_orphans(idle_before=seconds_ago(settings.orphan_requeue_after_seconds), limit=settings.sweep_batch_size)
  for job in orphans:
    if await republish(enqueuer, settings, job, delay_seconds=0):
      await repo.mark_republished(job.id)
      republished += 1
      logger.info("Re-published orphaned job_id=%s attempts=%s", job.id, job.attempts)

  result = SweepResult(requeued=requeued, failed=failed, republished=republished)
  logger.info("Sweep finished requeued=%s failed=%s republished=%s", result.requeued, result.failed, result.republished)
  return result
