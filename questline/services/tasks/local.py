from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlparse

import httpx

from questline.config import Settings
from questline.services.tasks.interface import TaskEnqueuer
from questline.services.tasks.payload import worker_callback_body

logger = logging.getLogger(__name__)


class LocalHttpEnqueuer(TaskEnqueuer):
  """Simulates a push broker for development by calling the worker endpoint in the background.

  Like a real broker, `publish` returns as soon as the message is accepted, honours the delay and
  drops repeats of a dedup key it has already accepted.
  """

  def __init__(self, settings: Settings) -> None:
    if not settings.base_url:
      raise RuntimeError("QUESTLINE_BASE_URL must be set for the local-http task provider.")
    self.settings = settings
    self._seen_keys: set[str] = set()
    self._deliveries: set[asyncio.Task[None]] = set()

  def _should_use_asgi_transport(self, base_url: str) -> bool:
    """Decide if we should route requests in-process via ASGITransport."""
    parsed = urlparse(base_url)
    hostname = (parsed.hostname or "").lower()
    return hostname in {"localhost", "127.0.0.1", "::1", "0.0.0.0"}

  def _build_client(self, base_url: str) -> httpx.AsyncClient:
    """Build an httpx client for local task dispatch."""
    # Never trust environment proxy variables for internal task dispatch.
    if self._should_use_asgi_transport(base_url):
      from questline.main import app

      transport = httpx.ASGITransport(app=app)
      return httpx.AsyncClient(transport=transport, base_url=base_url, trust_env=False)
    return httpx.AsyncClient(trust_env=False)

  async def publish(self, job_id: str, *, dedup_key: str, delay_seconds: int = 0) -> None:
    """Accept the message and deliver it from a background task."""
    body = worker_callback_body(self.settings, job_id)
    if dedup_key in self._seen_keys:
      logger.info("Dropping duplicate local publish for job %s dedup_key=%s", job_id, dedup_key)
      return
    self._seen_keys.add(dedup_key)

    delivery = asyncio.create_task(self._deliver(job_id, body, delay_seconds))
    self._deliveries.add(delivery)
    delivery.add_done_callback(self._deliveries.discard)

  async def _deliver(self, job_id: str, body: dict[str, str], delay_seconds: int) -> None:
    if delay_seconds > 0:
      await asyncio.sleep(delay_seconds)

    url = self.settings.worker_url
    try:
      async with self._build_client(self.settings.base_url or "") as client:
        logger.info("Dispatching task locally to %s for job %s", url, job_id)
        # The worker runs the job inline, so allow a long deadline.
        response = await client.post(url, json=body, timeout=1800.0)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      logger.error("Local task dispatch returned %s for job %s", exc.response.status_code, job_id)
    except httpx.HTTPError as exc:
      logger.error("Failed to dispatch local task for job %s: %s", job_id, exc)

  async def drain(self) -> None:
    """Wait for in-flight deliveries; used on shutdown and in tests."""
    if self._deliveries:
      await asyncio.gather(*list(self._deliveries), return_exceptions=True)
