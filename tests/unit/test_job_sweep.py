from __future__ import annotations

from datetime import timedelta

import pytest

from questline.jobs.dedup import retry_dedup_key
from questline.jobs.sweep import run_sweep
from questline.utils.timeutil import utcnow


@pytest.mark.anyio
async def test_expired_lease_is_requeued_and_republished(repositories, enqueuer, settings, make_job, state) -> None:
  stale = utcnow() - timedelta(seconds=settings.job_lease_ttl_seconds + 60)
  make_job("job-1", status="running", locked_by="worker-dead", locked_at=stale, started_at=stale)

  result = await run_sweep(repositories.jobs, enqueuer, settings)

  assert result.as_dict() == {"requeued": 1, "failed": 0, "republished": 1}
  job = state.jobs["job-1"]
  assert job.status == "queued"
  assert job.attempts == 1
  assert job.error_message == "lease expired"
  assert job.locked_by is None
  assert enqueuer.dedup_keys == [retry_dedup_key("job-1", 1)]


@pytest.mark.anyio
async def test_expired_lease_on_final_attempt_errors(repositories, enqueuer, settings, make_job, state) -> None:
  stale = utcnow() - timedelta(seconds=settings.job_lease_ttl_seconds + 60)
  make_job("job-1", status="running", attempts=2, max_attempts=3, locked_by="worker-dead", locked_at=stale)

  result = await run_sweep(repositories.jobs, enqueuer, settings)

  assert result.as_dict() == {"requeued": 0, "failed": 1, "republished": 0}
  job = state.jobs["job-1"]
  assert job.status == "error"
  assert job.error_message == "lease expired"
  assert job.finished_at is not None
  assert enqueuer.calls == []


@pytest.mark.anyio
async def test_fresh_lease_is_left_alone(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1", status="running", locked_by="worker-live", locked_at=utcnow())

  result = await run_sweep(repositories.jobs, enqueuer, settings)

  assert result.as_dict() == {"requeued": 0, "failed": 0, "republished": 0}
  assert state.jobs["job-1"].status == "running"


@pytest.mark.anyio
async def test_orphaned_queued_job_is_republished_once(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1", age_seconds=settings.orphan_requeue_after_seconds + 30)
  make_job("job-2")

  first = await run_sweep(repositories.jobs, enqueuer, settings)
  second = await run_sweep(repositories.jobs, enqueuer, settings)

  assert first.republished == 1
  assert second.republished == 0
  assert enqueuer.dedup_keys == [retry_dedup_key("job-1", 0)]
  assert state.jobs["job-1"].status == "queued"


@pytest.mark.anyio
async def test_pending_retry_is_not_treated_as_orphan(repositories, enqueuer, settings, make_job) -> None:
  idle = settings.orphan_requeue_after_seconds + 30
  make_job("job-1", attempts=1, age_seconds=idle, retry_at=utcnow() + timedelta(seconds=600))

  result = await run_sweep(repositories.jobs, enqueuer, settings)

  assert result.republished == 0
  assert enqueuer.calls == []


@pytest.mark.anyio
async def test_overdue_retry_is_republished(repositories, enqueuer, settings, make_job) -> None:
  idle = settings.orphan_requeue_after_seconds + 30
  make_job("job-1", attempts=1, age_seconds=idle * 2, retry_at=utcnow() - timedelta(seconds=idle))

  result = await run_sweep(repositories.jobs, enqueuer, settings)

  assert result.republished == 1
  assert enqueuer.dedup_keys == [retry_dedup_key("job-1", 1)]


@pytest.mark.anyio
async def test_publish_failure_during_sweep_keeps_job_for_next_round(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1", age_seconds=settings.orphan_requeue_after_seconds + 30)
  enqueuer.fail = True

  result = await run_sweep(repositories.jobs, enqueuer, settings)
  assert result.republished == 0

  enqueuer.fail = False
  retried = await run_sweep(repositories.jobs, enqueuer, settings)
  assert retried.republished == 1
  assert state.jobs["job-1"].status == "queued"


@pytest.mark.anyio
async def test_terminal_jobs_are_never_touched(repositories, enqueuer, settings, make_job, state) -> None:
  old = settings.orphan_requeue_after_seconds + settings.job_lease_ttl_seconds
  for status in ("done", "error", "cancelled"):
    make_job(f"job-{status}", status=status, age_seconds=old)

  result = await run_sweep(repositories.jobs, enqueuer, settings)

  assert result.as_dict() == {"requeued": 0, "failed": 0, "republished": 0}
  assert {job.status for job in state.jobs.values()} == {"done", "error", "cancelled"}
