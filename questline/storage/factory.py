"""Build the configured storage backend."""

from __future__ import annotations

from dataclasses import dataclass

from questline.config import Settings
from questline.core.database import require_session_factory
from questline.storage.jobs_repo import JobsRepository
from questline.storage.memory import InMemoryAchievementsRepository, InMemoryJobsRepository, InMemoryMissionRepository, InMemoryProgressionRepository, InMemoryRenownRepository, InMemoryState
from questline.storage.postgres_jobs_repo import PostgresJobsRepository
from questline.storage.postgres_progression_repo import PostgresProgressionRepository
from questline.storage.postgres_rewards_repo import PostgresAchievementsRepository, PostgresMissionRepository, PostgresRenownRepository
from questline.storage.progression_repo import ProgressionRepository
from questline.storage.rewards_repo import AchievementsRepository, MissionRepository, RenownRepository


@dataclass(frozen=True)
class Repositories:
  jobs: JobsRepository
  progression: ProgressionRepository
  missions: MissionRepository
  renown: RenownRepository
  achievements: AchievementsRepository


def build_memory_repositories(state: InMemoryState | None = None) -> Repositories:
  """Wire every repository to one shared in-process state."""
  state = state or InMemoryState()
  return Repositories(
    jobs=InMemoryJobsRepository(state),
    progression=InMemoryProgressionRepository(state),
    missions=InMemoryMissionRepository(state),
    renown=InMemoryRenownRepository(state),
    achievements=InMemoryAchievementsRepository(state),
  )


def build_repositories(settings: Settings) -> Repositories:
  """Factory for the repositories selected by `QUESTLINE_STORAGE_BACKEND`."""
  if settings.storage_backend == "memory":
    return build_memory_repositories()

  session_factory = require_session_factory()
  return Repositories(
    jobs=PostgresJobsRepository(session_factory, retry_attempts=settings.db_retry_attempts),
    progression=PostgresProgressionRepository(session_factory),
    missions=PostgresMissionRepository(session_factory, retry_attempts=settings.db_retry_attempts),
    renown=PostgresRenownRepository(session_factory),
    achievements=PostgresAchievementsRepository(session_factory),
  )
