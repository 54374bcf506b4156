from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictStr

from questline.jobs.models import JobRecord, JobStatus, JobType
from questline.services.renown import LevelEvaluation, LevelSnapshot
from questline.services.side_effects import SideEffectReport
from questline.storage.progression_repo import ChapterPace, ChapterQuestRecord, ChapterQuestStatus, ChapterRecord, ChapterStatus
from questline.storage.rewards_repo import MissionCacheEntry, RenownState


class JobCreateRequest(BaseModel):
  """Request payload for enqueuing a content job."""

  job_type: StrictStr = Field(min_length=1, max_length=64)
  payload: dict[str, Any] = Field(default_factory=dict, description="Job-type specific parameters.")
  session_id: StrictStr | None = None
  chapter_id: StrictStr | None = None
  adventure_id: StrictStr | None = None
  chapter_quest_id: StrictStr | None = None
  priority: int | None = Field(default=None, description="0..100, lower runs first when the broker orders by priority.")
  max_attempts: int | None = Field(default=None, description="1..10 delivery attempts before the job is terminal.")
  model_config = ConfigDict(extra="forbid")


class JobCreateResponse(BaseModel):
  job_id: StrictStr
  status: JobStatus = "queued"


class JobStatusResponse(BaseModel):
  """Status payload for a background job."""

  job_id: StrictStr
  job_type: JobType
  status: JobStatus
  priority: int
  attempts: int
  max_attempts: int
  session_id: str | None = None
  chapter_id: str | None = None
  adventure_id: str | None = None
  chapter_quest_id: str | None = None
  result: dict[str, Any] | None = None
  error_message: str | None = None
  created_at: datetime
  updated_at: datetime
  started_at: datetime | None = None
  finished_at: datetime | None = None

  @classmethod
  def from_record(cls, record: JobRecord) -> JobStatusResponse:
    return cls(
      job_id=record.id,
      job_type=record.job_type,
      status=record.status,
      priority=record.priority,
      attempts=record.attempts,
      max_attempts=record.max_attempts,
      session_id=record.session_id,
      chapter_id=record.chapter_id,
      adventure_id=record.adventure_id,
      chapter_quest_id=record.chapter_quest_id,
      result=record.result,
      error_message=record.error_message,
      created_at=record.created_at,
      updated_at=record.updated_at,
      started_at=record.started_at,
      finished_at=record.finished_at,
    )


class JobListResponse(BaseModel):
  jobs: list[JobStatusResponse]


class RunJobTask(BaseModel):
  """Body every broker delivers to the worker callback."""

  job_id: StrictStr = Field(min_length=1, validation_alias=AliasChoices("jobId", "jobID", "job_id"))
  worker_secret: StrictStr | None = Field(default=None, validation_alias=AliasChoices("workerSecret", "worker_secret"))


class RunJobResponse(BaseModel):
  job_id: StrictStr
  status: Literal["done", "requeued", "error", "skipped", "not_found"]
  attempts: int | None = None
  republished: bool | None = None


class SweepRequest(BaseModel):
  worker_secret: StrictStr | None = Field(default=None, validation_alias=AliasChoices("workerSecret", "worker_secret"))


class SweepResponse(BaseModel):
  requeued: int
  failed: int
  republished: int


class ChapterSpecModel(BaseModel):
  title: StrictStr = Field(min_length=1, max_length=200)
  pace: ChapterPace = "standard"
  context_text: StrictStr | None = Field(default=None, max_length=4000)
  chapter_code: StrictStr | None = Field(default=None, min_length=4, max_length=32)
  model_config = ConfigDict(extra="forbid")


class StartChapterRequest(BaseModel):
  adventure_id: StrictStr = Field(min_length=1)
  session_id: StrictStr | None = None
  chapter: ChapterSpecModel
  adventure_quest_ids: list[StrictStr] = Field(default_factory=list, max_length=200)
  model_config = ConfigDict(extra="forbid")


class TransitionChapterRequest(BaseModel):
  """Close the active chapter and open the next one."""

  prev_chapter_id: StrictStr = Field(min_length=1)
  adventure_id: StrictStr = Field(min_length=1)
  next_chapter: ChapterSpecModel
  backlog_ids: list[StrictStr] = Field(default_factory=list, max_length=200)
  model_config = ConfigDict(extra="forbid")


class AssignQuestsRequest(BaseModel):
  adventure_quest_ids: list[StrictStr] = Field(min_length=1, max_length=200)
  model_config = ConfigDict(extra="forbid")


class UpdateChapterQuestRequest(BaseModel):
  status: ChapterQuestStatus
  model_config = ConfigDict(extra="forbid")


class ChapterResponse(BaseModel):
  id: StrictStr
  adventure_id: StrictStr
  session_id: str | None
  title: StrictStr
  pace: ChapterPace
  status: ChapterStatus
  context_text: str | None
  chapter_code: StrictStr
  created_at: datetime

  @classmethod
  def from_record(cls, record: ChapterRecord) -> ChapterResponse:
    return cls(
      id=record.id,
      adventure_id=record.adventure_id,
      session_id=record.session_id,
      title=record.title,
      pace=record.pace,
      status=record.status,
      context_text=record.context_text,
      chapter_code=record.chapter_code,
      created_at=record.created_at,
    )


class ChapterQuestResponse(BaseModel):
  id: StrictStr
  chapter_id: StrictStr
  adventure_quest_id: StrictStr
  session_id: str | None
  status: ChapterQuestStatus
  created_at: datetime
  updated_at: datetime

  @classmethod
  def from_record(cls, record: ChapterQuestRecord) -> ChapterQuestResponse:
    return cls(
      id=record.id,
      chapter_id=record.chapter_id,
      adventure_quest_id=record.adventure_quest_id,
      session_id=record.session_id,
      status=record.status,
      created_at=record.created_at,
      updated_at=record.updated_at,
    )


class ChapterAssignmentResponse(BaseModel):
  chapter: ChapterResponse
  assigned: list[ChapterQuestResponse]


class TransitionResponse(BaseModel):
  chapter: ChapterResponse
  carried_over: int
  backlog_selected: int
  assigned_total: int


class SideEffectResponse(BaseModel):
  name: str
  ok: bool
  duration_ms: int
  error: str | None = None

  @classmethod
  def from_report(cls, report: SideEffectReport) -> SideEffectResponse:
    return cls(name=report.name, ok=report.ok, duration_ms=report.duration_ms, error=report.error)


class ChapterQuestUpdateResponse(BaseModel):
  chapter_quest: ChapterQuestResponse
  changed: bool
  side_effects: list[SideEffectResponse] = Field(default_factory=list)


class MissionRequest(BaseModel):
  chapter_quest_id: StrictStr = Field(min_length=1)
  force: bool = False
  model_config = ConfigDict(extra="forbid")


class MissionResponse(BaseModel):
  chapter_quest_id: StrictStr
  mission: dict[str, Any]
  markdown: str
  model: str
  updated_at: datetime
  cached: bool

  @classmethod
  def from_entry(cls, entry: MissionCacheEntry, *, cached: bool) -> MissionResponse:
    return cls(chapter_quest_id=entry.chapter_quest_id, mission=entry.mission_json, markdown=entry.mission_md, model=entry.model, updated_at=entry.updated_at, cached=cached)


class RenownSnapshotModel(BaseModel):
  value: int
  level: int

  @classmethod
  def from_snapshot(cls, snapshot: LevelSnapshot | None) -> RenownSnapshotModel | None:
    if snapshot is None:
      return None
    return cls(value=snapshot.value, level=snapshot.level)


class RenownResponse(BaseModel):
  user_id: StrictStr
  value: int = 0
  level: int = 0
  updated_at: datetime | None = None

  @classmethod
  def from_state(cls, user_id: str, state: RenownState | None) -> RenownResponse:
    if state is None:
      return cls(user_id=user_id)
    return cls(user_id=user_id, value=state.value, level=state.level, updated_at=state.updated_at)


class RenownEvaluationResponse(BaseModel):
  updated: bool
  prev: RenownSnapshotModel | None = None
  next: RenownSnapshotModel | None = None

  @classmethod
  def from_evaluation(cls, evaluation: LevelEvaluation) -> RenownEvaluationResponse:
    return cls(updated=evaluation.updated, prev=RenownSnapshotModel.from_snapshot(evaluation.prev), next=RenownSnapshotModel.from_snapshot(evaluation.next))
