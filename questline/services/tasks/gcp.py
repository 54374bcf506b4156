from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta

from google.api_core import exceptions as google_exceptions
from google.cloud import tasks_v2
from google.protobuf import timestamp_pb2

from questline.config import Settings
from questline.core.exceptions import BrokerPublishError
from questline.services.tasks.interface import TaskEnqueuer
from questline.services.tasks.payload import worker_callback_body
from questline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class CloudTasksEnqueuer(TaskEnqueuer):
  """Enqueues worker callbacks to Google Cloud Tasks.

  The dedup key becomes the task id, so Cloud Tasks itself rejects a second task with the same key.
  """

  def __init__(self, settings: Settings, client: tasks_v2.CloudTasksClient | None = None) -> None:
    if not settings.cloud_tasks_queue_path:
      raise RuntimeError("QUESTLINE_CLOUD_TASKS_QUEUE_PATH must be set for the gcp task provider.")
    self.settings = settings
    self.client = client or tasks_v2.CloudTasksClient()

  def _build_task(self, job_id: str, dedup_key: str, delay_seconds: int) -> dict:
    http_request: dict = {
      "http_method": tasks_v2.HttpMethod.POST,
      "url": self.settings.worker_url,
      "headers": {"Content-Type": "application/json"},
      "body": json.dumps(worker_callback_body(self.settings, job_id)).encode(),
    }
    # Cloud Run rejects unauthenticated calls unless the task carries an OIDC token.
    if self.settings.cloud_run_invoker_service_account:
      http_request["oidc_token"] = {"service_account_email": self.settings.cloud_run_invoker_service_account}

    task: dict = {"name": f"{self.settings.cloud_tasks_queue_path}/tasks/{dedup_key}", "http_request": http_request}
    if delay_seconds > 0:
      schedule_time = timestamp_pb2.Timestamp()
      schedule_time.FromDatetime(utcnow() + timedelta(seconds=delay_seconds))
      task["schedule_time"] = schedule_time
    return task

  async def publish(self, job_id: str, *, dedup_key: str, delay_seconds: int = 0) -> None:
    """Create the Cloud Tasks task for a job."""
    task = self._build_task(job_id, dedup_key, delay_seconds)
    request = {"parent": self.settings.cloud_tasks_queue_path, "task": task}
    timeout = self.settings.broker_timeout_seconds

    try:
      # The client is synchronous; keep it off the event loop.
      response = await asyncio.to_thread(self.client.create_task, request=request, timeout=timeout)
    except google_exceptions.AlreadyExists:
      logger.info("Cloud task already exists for job %s dedup_key=%s; treating as published", job_id, dedup_key)
      return
    except google_exceptions.GoogleAPICallError as exc:
      logger.error("Failed to enqueue cloud task for job %s: %s", job_id, exc)
      raise BrokerPublishError("Cloud Tasks rejected the worker callback.", job_id=job_id, details={"provider": "gcp"}) from exc
    except Exception as exc:
      logger.error("Cloud task publish failed for job %s: %s", job_id, exc, exc_info=True)
      raise BrokerPublishError("Cloud Tasks publish failed.", job_id=job_id, details={"provider": "gcp"}) from exc

    logger.info("Enqueued task %s for job %s delay=%ss", response.name, job_id, delay_seconds)
