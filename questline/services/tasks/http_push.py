from __future__ import annotations

import logging

import httpx

from questline.config import Settings
from questline.core.exceptions import BrokerPublishError
from questline.services.tasks.interface import TaskEnqueuer
from questline.services.tasks.payload import worker_callback_body

logger = logging.getLogger(__name__)


class HttpPushEnqueuer(TaskEnqueuer):
  """Publishes to an HTTP push broker (QStash-style): POST <publish_url>/<destination>.

  Deduplication and delivery delay travel as headers; any non-2xx answer is a publish failure.
  """

  def __init__(self, settings: Settings) -> None:
    if not settings.broker_publish_url:
      raise RuntimeError("QUESTLINE_BROKER_PUBLISH_URL must be set for the http-push task provider.")
    if not settings.broker_token:
      raise RuntimeError("QUESTLINE_BROKER_TOKEN must be set for the http-push task provider.")
    self.settings = settings

  def _publish_url(self) -> str:
    return f"{self.settings.broker_publish_url.rstrip('/')}/{self.settings.worker_url}"

  def _headers(self, dedup_key: str, delay_seconds: int) -> dict[str, str]:
    headers = {
      "authorization": f"Bearer {self.settings.broker_token}",
      "content-type": "application/json",
      self.settings.broker_dedup_header: dedup_key,
    }
    if delay_seconds > 0:
      headers[self.settings.broker_delay_header] = f"{delay_seconds}s"
    return headers

  async def publish(self, job_id: str, *, dedup_key: str, delay_seconds: int = 0) -> None:
    """POST the worker callback to the broker."""
    body = worker_callback_body(self.settings, job_id)
    try:
      async with httpx.AsyncClient(timeout=self.settings.broker_timeout_seconds, trust_env=False) as client:
        response = await client.post(self._publish_url(), json=body, headers=self._headers(dedup_key, delay_seconds))
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      logger.error("Push broker returned %s for job %s", exc.response.status_code, job_id)
      raise BrokerPublishError("Push broker rejected the worker callback.", job_id=job_id, details={"provider": "http-push", "status": exc.response.status_code}) from exc
    except httpx.HTTPError as exc:
      logger.error("Push broker unreachable for job %s: %s", job_id, exc)
      raise BrokerPublishError("Push broker unreachable.", job_id=job_id, details={"provider": "http-push"}) from exc

    logger.info("Published job %s to push broker dedup_key=%s delay=%ss", job_id, dedup_key, delay_seconds)
