"""Process-wide service graph, built once at startup and shared by routes."""

from __future__ import annotations

from dataclasses import dataclass

from questline.ai.generator import ContentGenerator, build_content_generator
from questline.config import Settings
from questline.jobs.handlers import build_handler_registry
from questline.jobs.worker import JobDispatcher
from questline.services.achievements import AchievementEvaluator
from questline.services.missions import MissionService
from questline.services.progression import ProgressionService
from questline.services.renown import RenownEvaluator
from questline.services.tasks.factory import get_task_enqueuer
from questline.services.tasks.interface import TaskEnqueuer
from questline.storage.factory import Repositories, build_repositories


@dataclass(frozen=True)
class Services:
  settings: Settings
  repositories: Repositories
  enqueuer: TaskEnqueuer
  generator: ContentGenerator
  renown: RenownEvaluator
  achievements: AchievementEvaluator
  missions: MissionService
  progression: ProgressionService
  dispatcher: JobDispatcher


def build_services(settings: Settings, *, repositories: Repositories | None = None, enqueuer: TaskEnqueuer | None = None, generator: ContentGenerator | None = None) -> Services:
  """Wire repositories, broker and generator into the services; any collaborator may be injected."""
  repositories = repositories or build_repositories(settings)
  enqueuer = enqueuer or get_task_enqueuer(settings)
  generator = generator or build_content_generator(settings)

  renown = RenownEvaluator(repositories.renown)
  achievements = AchievementEvaluator(repositories.achievements, renown)
  missions = MissionService(repositories.missions, repositories.progression, generator)
  progression = ProgressionService(repositories.progression, achievements=achievements, renown=renown)
  registry = build_handler_registry(generator, repositories.progression, missions, renown, achievements)
  dispatcher = JobDispatcher(repositories.jobs, registry, enqueuer, settings)
  return Services(
    settings=settings,
    repositories=repositories,
    enqueuer=enqueuer,
    generator=generator,
    renown=renown,
    achievements=achievements,
    missions=missions,
    progression=progression,
    dispatcher=dispatcher,
  )
