"""Postgres-backed repository for content-generation jobs using SQLAlchemy."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from questline.jobs.models import JobRecord, JobStatus, JobType
from questline.schema.jobs import AiJob
from questline.storage.jobs_repo import JobsRepository
from questline.utils.db_retry import execute_with_retry


class PostgresJobsRepository(JobsRepository):
  """Persist jobs to Postgres; every transition is a single conditional UPDATE ... RETURNING."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, retry_attempts: int = 3) -> None:
    self._session_factory = session_factory
    self._retry_attempts = retry_attempts

  async def create_job(self, record: JobRecord) -> None:
    async def _insert() -> None:
      async with self._session_factory() as session:
        session.add(
          AiJob(
            id=record.id,
            owner_id=record.owner_id,
            job_type=record.job_type,
            payload=record.payload,
            status=record.status,
            priority=record.priority,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            session_id=record.session_id,
            chapter_id=record.chapter_id,
            adventure_id=record.adventure_id,
            chapter_quest_id=record.chapter_quest_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
          )
        )
        await session.commit()

    await execute_with_retry(operation_name="jobs.create", func=_insert, max_attempts=self._retry_attempts)

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(AiJob, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def list_jobs(self, owner_id: str, *, status: JobStatus | None = None, job_type: JobType | None = None, limit: int = 50) -> list[JobRecord]:
    stmt = select(AiJob).where(AiJob.owner_id == owner_id)
    if status is not None:
      stmt = stmt.where(AiJob.status == status)
    if job_type is not None:
      stmt = stmt.where(AiJob.job_type == job_type)
    stmt = stmt.order_by(AiJob.created_at.desc(), AiJob.id.desc()).limit(limit)
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      return [self._model_to_record(row) for row in result.scalars().all()]

  async def claim_job(self, job_id: str, *, worker_id: str) -> JobRecord | None:
    now = func.now()
    stmt = (
      update(AiJob)
      .where(AiJob.id == job_id, AiJob.status == "queued")
      .values(status="running", locked_by=worker_id, locked_at=now, started_at=func.coalesce(AiJob.started_at, now), retry_at=None, updated_at=now)
      .returning(AiJob)
    )
    return await self._update_one(stmt, operation_name="jobs.claim")

  async def complete_job(self, job_id: str, *, worker_id: str, result: dict[str, Any]) -> JobRecord | None:
    now = func.now()
    stmt = (
      update(AiJob)
      .where(AiJob.id == job_id, AiJob.status == "running", AiJob.locked_by == worker_id)
      .values(status="done", result=result, error_message=None, finished_at=now, locked_at=None, locked_by=None, updated_at=now)
      .returning(AiJob)
    )
    return await self._update_one(stmt, operation_name="jobs.complete")

  async def fail_job(self, job_id: str, *, worker_id: str, error_message: str, retry_at: datetime | None) -> JobRecord | None:
    stmt = update(AiJob).where(AiJob.id == job_id, AiJob.status == "running", AiJob.locked_by == worker_id).values(**self._failure_values(error_message, retry_at)).returning(AiJob)
    return await self._update_one(stmt, operation_name="jobs.fail")

  async def cancel_job(self, job_id: str, *, owner_id: str) -> JobRecord | None:
    now = func.now()
    stmt = update(AiJob).where(AiJob.id == job_id, AiJob.owner_id == owner_id, AiJob.status == "queued").values(status="cancelled", finished_at=now, updated_at=now).returning(AiJob)
    return await self._update_one(stmt, operation_name="jobs.cancel")

  async def expire_leases(self, *, locked_before: datetime, limit: int) -> list[JobRecord]:
    # SKIP LOCKED lets concurrent sweeps split the batch instead of blocking on each other.
    expired_ids = select(AiJob.id).where(AiJob.status == "running", AiJob.locked_at < locked_before).order_by(AiJob.locked_at).limit(limit).with_for_update(skip_locked=True).scalar_subquery()
    stmt = update(AiJob).where(AiJob.id.in_(expired_ids), AiJob.status == "running").values(**self._failure_values("lease expired", None)).returning(AiJob)

    async def _expire() -> list[JobRecord]:
      async with self._session_factory() as session:
        result = await session.execute(stmt)
        rows = [self._model_to_record(row) for row in result.scalars().all()]
        await session.commit()
        return rows

    return await execute_with_retry(operation_name="jobs.expire_leases", func=_expire, max_attempts=self._retry_attempts)

  async def find_orphans(self, *, idle_before: datetime, limit: int) -> list[JobRecord]:
    idle_since = func.coalesce(AiJob.retry_at, AiJob.updated_at)
    stmt = select(AiJob).where(AiJob.status == "queued", AiJob.locked_at.is_(None), idle_since < idle_before).order_by(idle_since).limit(limit)
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      return [self._model_to_record(row) for row in result.scalars().all()]

  async def mark_republished(self, job_id: str) -> bool:
    stmt = update(AiJob).where(AiJob.id == job_id, AiJob.status == "queued").values(updated_at=func.now(), retry_at=None).returning(AiJob)
    return await self._update_one(stmt, operation_name="jobs.mark_republished") is not None

  @staticmethod
  def _failure_values(error_message: str, retry_at: datetime | None) -> dict[str, Any]:
    """SET clause for a failed attempt; column references read the pre-update row."""
    now = func.now()
    has_attempts_left = AiJob.attempts + 1 < AiJob.max_attempts
    return {
      "attempts": AiJob.attempts + 1,
      "status": case((has_attempts_left, "queued"), else_="error"),
      "finished_at": case((has_attempts_left, None), else_=now),
      "retry_at": case((has_attempts_left, retry_at), else_=None) if retry_at is not None else None,
      "error_message": error_message,
      "locked_at": None,
      "locked_by": None,
      "updated_at": now,
    }

  async def _update_one(self, stmt: Any, *, operation_name: str) -> JobRecord | None:
    async def _execute() -> JobRecord | None:
      async with self._session_factory() as session:
        result = await session.execute(stmt)
        row = result.scalars().first()
        await session.commit()
        if row is None:
          return None
        return self._model_to_record(row)

    return await execute_with_retry(operation_name=operation_name, func=_execute, max_attempts=self._retry_attempts)

  @staticmethod
  def _model_to_record(row: AiJob) -> JobRecord:
    return JobRecord(
      id=row.id,
      owner_id=row.owner_id,
      job_type=row.job_type,  # type: ignore[arg-type]
      payload=dict(row.payload or {}),
      status=row.status,  # type: ignore[arg-type]
      priority=row.priority,
      attempts=row.attempts,
      max_attempts=row.max_attempts,
      created_at=row.created_at,
      updated_at=row.updated_at,
      session_id=row.session_id,
      chapter_id=row.chapter_id,
      adventure_id=row.adventure_id,
      chapter_quest_id=row.chapter_quest_id,
      locked_at=row.locked_at,
      locked_by=row.locked_by,
      started_at=row.started_at,
      finished_at=row.finished_at,
      result=row.result,
      error_message=row.error_message,
      retry_at=row.retry_at,
    )
