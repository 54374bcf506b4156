from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from questline.jobs.dedup import retry_dedup_key
from questline.jobs.dispatch import JobHandlerRegistry
from questline.jobs.models import JOB_TYPES
from questline.jobs.worker import JobDispatcher, retry_delay_seconds
from questline.utils.timeutil import utcnow


class ScriptedHandler:
  """Handler double: fails a set number of times, then succeeds."""

  def __init__(self, *, failures: int = 0, delay: float = 0.0) -> None:
    self.failures = failures
    self.delay = delay
    self.calls: list[tuple[object, object]] = []

  async def __call__(self, payload, refs):
    self.calls.append((payload, refs))
    if self.delay:
      await asyncio.sleep(self.delay)
    if len(self.calls) <= self.failures:
      raise RuntimeError(f"boom {len(self.calls)}")
    return {"ok": True, "job_id": refs.job_id}


def _dispatcher(repositories, enqueuer, settings, handler) -> JobDispatcher:
  registry = JobHandlerRegistry({job_type: handler for job_type in JOB_TYPES})
  return JobDispatcher(repositories.jobs, registry, enqueuer, settings)


def test_registry_requires_every_job_type() -> None:
  handler = ScriptedHandler()
  with pytest.raises(ValueError, match="No handler registered"):
    JobHandlerRegistry({"welcome_message": handler})
  with pytest.raises(ValueError, match="unknown job types"):
    JobHandlerRegistry({**{job_type: handler for job_type in JOB_TYPES}, "teleport": handler})


def test_retry_backoff_schedule() -> None:
  assert [retry_delay_seconds(n) for n in range(1, 8)] == [15, 60, 180, 600, 1800, 1800, 1800]
  assert retry_delay_seconds(0) == 15


@pytest.mark.anyio
async def test_successful_run_marks_job_done(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1", payload={"display_name": "Ada"})
  handler = ScriptedHandler()

  outcome = await _dispatcher(repositories, enqueuer, settings, handler).run("job-1")

  assert outcome.status == "done"
  job = state.jobs["job-1"]
  assert job.status == "done"
  assert job.result == {"ok": True, "job_id": "job-1"}
  assert job.attempts == 0
  assert job.locked_by is None and job.locked_at is None
  assert job.started_at is not None and job.finished_at is not None
  payload, refs = handler.calls[0]
  assert payload.display_name == "Ada"
  assert refs.owner_id == "user-1"
  assert enqueuer.calls == []


@pytest.mark.anyio
async def test_failure_requeues_and_republishes_with_backoff(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1")
  before = utcnow()

  outcome = await _dispatcher(repositories, enqueuer, settings, ScriptedHandler(failures=1)).run("job-1")

  assert outcome.status == "requeued"
  assert outcome.republished is True
  job = state.jobs["job-1"]
  assert job.status == "queued"
  assert job.attempts == 1
  assert job.error_message == "RuntimeError: boom 1"
  assert job.locked_by is None
  assert job.retry_at is not None and job.retry_at >= before + timedelta(seconds=15)
  assert [(call.job_id, call.dedup_key, call.delay_seconds) for call in enqueuer.calls] == [("job-1", retry_dedup_key("job-1", 1), 15)]


@pytest.mark.anyio
async def test_republish_failure_still_leaves_job_queued(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1")
  enqueuer.fail = True

  outcome = await _dispatcher(repositories, enqueuer, settings, ScriptedHandler(failures=1)).run("job-1")

  assert outcome.status == "requeued"
  assert outcome.republished is False
  assert state.jobs["job-1"].status == "queued"


@pytest.mark.anyio
async def test_retry_succeeds_after_earlier_failure(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1")
  handler = ScriptedHandler(failures=1)
  dispatcher = _dispatcher(repositories, enqueuer, settings, handler)

  await dispatcher.run("job-1")
  outcome = await dispatcher.run("job-1")

  assert outcome.status == "done"
  assert state.jobs["job-1"].attempts == 1
  assert state.jobs["job-1"].error_message is None
  assert state.jobs["job-1"].retry_at is None


@pytest.mark.anyio
async def test_final_failure_marks_job_errored(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1", attempts=2, max_attempts=3)

  outcome = await _dispatcher(repositories, enqueuer, settings, ScriptedHandler(failures=5)).run("job-1")

  assert outcome.status == "error"
  job = state.jobs["job-1"]
  assert job.status == "error"
  assert job.attempts == 3
  assert job.finished_at is not None
  assert job.retry_at is None
  assert enqueuer.calls == []


@pytest.mark.anyio
@pytest.mark.parametrize("status", ["running", "done", "error", "cancelled"])
async def test_unclaimable_jobs_are_skipped_without_running(repositories, enqueuer, settings, make_job, state, status) -> None:
  make_job("job-1", status=status, locked_by="other" if status == "running" else None)
  snapshot = replace(state.jobs["job-1"])
  handler = ScriptedHandler()

  outcome = await _dispatcher(repositories, enqueuer, settings, handler).run("job-1")

  assert outcome.status == "skipped"
  assert handler.calls == []
  assert state.jobs["job-1"] == snapshot


@pytest.mark.anyio
async def test_unknown_job_reports_not_found(repositories, enqueuer, settings) -> None:
  outcome = await _dispatcher(repositories, enqueuer, settings, ScriptedHandler()).run("missing")
  assert outcome.status == "not_found"


@pytest.mark.anyio
async def test_duplicate_deliveries_execute_once(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1")
  handler = ScriptedHandler(delay=0.01)
  dispatcher = _dispatcher(repositories, enqueuer, settings, handler)

  outcomes = await asyncio.gather(dispatcher.run("job-1"), dispatcher.run("job-1"), dispatcher.run("job-1"))

  assert sorted(outcome.status for outcome in outcomes) == ["done", "skipped", "skipped"]
  assert len(handler.calls) == 1
  assert state.jobs["job-1"].status == "done"


@pytest.mark.anyio
async def test_handler_timeout_counts_as_failure(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1")
  quick = replace(settings, job_timeouts={"welcome_message": 0.05})

  outcome = await _dispatcher(repositories, enqueuer, quick, ScriptedHandler(delay=1.0)).run("job-1")

  assert outcome.status == "requeued"
  assert state.jobs["job-1"].error_message == "timed out after 0.05s"


@pytest.mark.anyio
async def test_invalid_stored_payload_fails_the_attempt(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1", payload={"unexpected": True}, max_attempts=1)
  handler = ScriptedHandler()

  outcome = await _dispatcher(repositories, enqueuer, settings, handler).run("job-1")

  assert outcome.status == "error"
  assert handler.calls == []
  assert state.jobs["job-1"].error_message.startswith("ValidationError")


@pytest.mark.anyio
async def test_result_is_discarded_when_lease_was_lost(repositories, enqueuer, settings, make_job, state) -> None:
  make_job("job-1")

  async def steal_lease(payload, refs):
    await repositories.jobs.expire_leases(locked_before=utcnow() + timedelta(seconds=1), limit=10)
    return {"ok": True}

  outcome = await _dispatcher(repositories, enqueuer, settings, steal_lease).run("job-1")

  assert outcome.status == "skipped"
  job = state.jobs["job-1"]
  assert job.status == "queued"
  assert job.error_message == "lease expired"
  assert job.result is None
