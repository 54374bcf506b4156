"""Storage interfaces for content-generation jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from questline.jobs.models import JobRecord, JobStatus, JobType


class JobsRepository(Protocol):
  """Repository contract for job persistence.

  Every state change is a conditional write: the `WHERE` guard (expected status, lock owner)
  is what keeps concurrent workers from double-executing or overwriting a finished row.
  """

  async def create_job(self, record: JobRecord) -> None:
    """Persist a freshly queued job."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def list_jobs(self, owner_id: str, *, status: JobStatus | None = None, job_type: JobType | None = None, limit: int = 50) -> list[JobRecord]:
    """Return the owner's jobs, newest first."""

  async def claim_job(self, job_id: str, *, worker_id: str) -> JobRecord | None:
    """Move a queued job to running and lock it; `None` when the job is not queued."""

  async def complete_job(self, job_id: str, *, worker_id: str, result: dict[str, Any]) -> JobRecord | None:
    """Record success for a job this worker holds."""

  async def fail_job(self, job_id: str, *, worker_id: str, error_message: str, retry_at: datetime | None) -> JobRecord | None:
    """Count a failed attempt; requeue while attempts remain, else mark the job errored."""

  async def cancel_job(self, job_id: str, *, owner_id: str) -> JobRecord | None:
    """Cancel a queued job owned by `owner_id`; `None` when it is no longer queued."""

  async def expire_leases(self, *, locked_before: datetime, limit: int) -> list[JobRecord]:
    """Fail running jobs whose lock is older than `locked_before`; returns the updated rows."""

  async def find_orphans(self, *, idle_before: datetime, limit: int) -> list[JobRecord]:
    """Return unlocked queued jobs that have not moved since `idle_before`."""

  async def mark_republished(self, job_id: str) -> bool:
    """Reset the idle clock of a queued job after a successful re-publish."""
