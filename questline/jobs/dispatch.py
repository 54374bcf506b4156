"""Dependency-injected job handler registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from questline.jobs.models import JOB_TYPES, JobCorrelation, JobPayload, JobRecord


@dataclass(frozen=True)
class JobRefs:
  """What a handler may know about the job besides its payload."""

  job_id: str
  owner_id: str
  correlation: JobCorrelation

  @classmethod
  def from_record(cls, record: JobRecord) -> JobRefs:
    return cls(job_id=record.id, owner_id=record.owner_id, correlation=record.correlation)


class JobHandler(Protocol):
  """Handler contract for one job type; the returned dict is stored as the job result."""

  async def __call__(self, payload: JobPayload, refs: JobRefs) -> dict[str, Any]: ...


class JobHandlerRegistry:
  """Registry mapping job types to handlers; must cover every declared job type."""

  def __init__(self, handlers: dict[str, JobHandler]) -> None:
    unknown = set(handlers) - JOB_TYPES
    if unknown:
      raise ValueError(f"Handlers registered for unknown job types: {sorted(unknown)}")
    missing = JOB_TYPES - set(handlers)
    if missing:
      raise ValueError(f"No handler registered for job types: {sorted(missing)}")
    self._handlers = dict(handlers)

  def resolve(self, job_type: str) -> JobHandler:
    """Resolve the handler for a job type."""
    handler = self._handlers.get(job_type)
    if handler is None:
      raise ValueError(f"Unsupported job type: {job_type}")
    return handler
