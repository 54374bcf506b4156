import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from questline.core.database import dispose_engine
from questline.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and the service graph after uvicorn starts; release them on shutdown."""
  from questline.config import get_settings
  from questline.services.container import build_services

  settings = get_settings()
  logger = logging.getLogger("questline.core.lifespan")
  initialize_logging(settings)
  logger.info(
    "Starting environment=%s storage=%s broker=%s dsn=%s",
    settings.environment,
    settings.storage_backend,
    settings.task_service_provider,
    _redact_dsn(settings.pg_dsn),
  )

  # Tests pre-populate the graph with in-memory collaborators.
  if getattr(app.state, "services", None) is None:
    app.state.services = build_services(settings)
  if not settings.worker_secret:
    logger.warning("QUESTLINE_WORKER_SECRET is not set; broker publishes and worker callbacks will be rejected.")

  yield

  drain = getattr(app.state.services.enqueuer, "drain", None)
  if drain is not None:
    await drain()
  await dispose_engine()
  logger.info("Shutdown complete.")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
