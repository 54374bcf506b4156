"""Domain models for asynchronous content-generation jobs."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

JobStatus = Literal["queued", "running", "done", "error", "cancelled"]
JobType = Literal["adventure_briefing", "welcome_message", "chapter_story", "mission_order", "renown_evaluation", "achievements_evaluation"]

JOB_STATUSES: frozenset[str] = frozenset(get_args(JobStatus))
JOB_TYPES: frozenset[str] = frozenset(get_args(JobType))
# Rows in these states are never written again.
IMMUTABLE_STATUSES: frozenset[str] = frozenset({"done", "cancelled"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"done", "error", "cancelled"})
# Reward evaluations move renown, so only server code may schedule them.
INTERNAL_JOB_TYPES: frozenset[str] = frozenset({"renown_evaluation", "achievements_evaluation"})

DEFAULT_PRIORITY = 50
DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class JobCorrelation:
  """Optional foreign references carried by a job for filtering and observability."""

  session_id: str | None = None
  chapter_id: str | None = None
  adventure_id: str | None = None
  chapter_quest_id: str | None = None

  def as_dict(self) -> dict[str, str | None]:
    return asdict(self)


@dataclass
class JobRecord:
  """One unit of work; the single source of truth for job state."""

  id: str
  owner_id: str
  job_type: JobType
  payload: dict[str, Any]
  status: JobStatus
  priority: int
  attempts: int
  max_attempts: int
  created_at: datetime
  updated_at: datetime
  session_id: str | None = None
  chapter_id: str | None = None
  adventure_id: str | None = None
  chapter_quest_id: str | None = None
  locked_at: datetime | None = None
  locked_by: str | None = None
  started_at: datetime | None = None
  finished_at: datetime | None = None
  result: dict[str, Any] | None = None
  error_message: str | None = None
  # Earliest time a requeued job is expected back from the broker.
  retry_at: datetime | None = None

  @property
  def correlation(self) -> JobCorrelation:
    return JobCorrelation(session_id=self.session_id, chapter_id=self.chapter_id, adventure_id=self.adventure_id, chapter_quest_id=self.chapter_quest_id)

  @property
  def attempts_remaining(self) -> int:
    return max(0, self.max_attempts - self.attempts)


class _BasePayload(BaseModel):
  model_config = ConfigDict(extra="forbid")

  # Correlation fields that must be present on the job row for this type.
  required_refs: ClassVar[tuple[str, ...]] = ()


class AdventureBriefingPayload(_BasePayload):
  """Narrated briefing shown when an adventure starts."""

  job_type: Literal["adventure_briefing"] = "adventure_briefing"
  extra_context: str | None = Field(default=None, max_length=2000)
  required_refs: ClassVar[tuple[str, ...]] = ("adventure_id",)


class WelcomeMessagePayload(_BasePayload):
  job_type: Literal["welcome_message"] = "welcome_message"
  display_name: str | None = Field(default=None, max_length=120)


class ChapterStoryPayload(_BasePayload):
  """Journal story summarizing a chapter's finished quests."""

  job_type: Literal["chapter_story"] = "chapter_story"
  required_refs: ClassVar[tuple[str, ...]] = ("chapter_id",)


class MissionOrderPayload(_BasePayload):
  job_type: Literal["mission_order"] = "mission_order"
  force: bool = False
  required_refs: ClassVar[tuple[str, ...]] = ("chapter_quest_id",)


class RenownEvaluationPayload(_BasePayload):
  job_type: Literal["renown_evaluation"] = "renown_evaluation"


class AchievementsEvaluationPayload(_BasePayload):
  job_type: Literal["achievements_evaluation"] = "achievements_evaluation"
  event: str = Field(default="manual_refresh", min_length=1, max_length=64)


JobPayload = Annotated[
  AdventureBriefingPayload | WelcomeMessagePayload | ChapterStoryPayload | MissionOrderPayload | RenownEvaluationPayload | AchievementsEvaluationPayload,
  Field(discriminator="job_type"),
]

_PAYLOAD_ADAPTER: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_job_payload(job_type: str, payload: dict[str, Any] | None) -> JobPayload:
  """Validate a stored or submitted payload against the variant for `job_type`.

  Raises pydantic.ValidationError for unknown types or malformed payloads.
  """
  data = dict(payload or {})
  data["job_type"] = job_type
  return _PAYLOAD_ADAPTER.validate_python(data)


def dump_job_payload(payload: JobPayload) -> dict[str, Any]:
  """Serialize a payload for storage; the type lives in its own column."""
  return payload.model_dump(mode="json", exclude={"job_type"})
