"""Body of the worker callback every broker delivers."""

from __future__ import annotations

from questline.config import Settings


def worker_callback_body(settings: Settings, job_id: str) -> dict[str, str]:
  if not settings.worker_secret:
    raise RuntimeError("QUESTLINE_WORKER_SECRET must be set to publish worker callbacks.")
  return {"jobId": job_id, "workerSecret": settings.worker_secret}
