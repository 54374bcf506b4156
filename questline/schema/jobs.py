from __future__ import annotations

import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from questline.core.database import Base


class AiJob(Base):
  __tablename__ = "ai_jobs"
  __table_args__ = (
    CheckConstraint("status IN ('queued', 'running', 'done', 'error', 'cancelled')", name="ck_ai_jobs_status"),
    CheckConstraint("priority BETWEEN 0 AND 100", name="ck_ai_jobs_priority"),
    CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="ck_ai_jobs_attempts"),
    Index("ix_ai_jobs_owner_created", "owner_id", "created_at"),
    Index("ix_ai_jobs_running_locked_at", "locked_at", postgresql_where=text("status = 'running'")),
    Index("ix_ai_jobs_queued_updated_at", "updated_at", postgresql_where=text("status = 'queued'")),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  job_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  payload: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'queued'"))
  priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("50"))
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("3"))
  locked_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
  started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  finished_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  retry_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  session_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  chapter_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  adventure_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  chapter_quest_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
