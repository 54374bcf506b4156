from __future__ import annotations

from questline.config import Settings
from questline.services.tasks.interface import TaskEnqueuer


def get_task_enqueuer(settings: Settings) -> TaskEnqueuer:
  """Factory to get the configured task enqueuer."""
  if settings.task_service_provider == "gcp":
    from questline.services.tasks.gcp import CloudTasksEnqueuer

    return CloudTasksEnqueuer(settings)
  if settings.task_service_provider == "http-push":
    from questline.services.tasks.http_push import HttpPushEnqueuer

    return HttpPushEnqueuer(settings)

  from questline.services.tasks.local import LocalHttpEnqueuer

  return LocalHttpEnqueuer(settings)
