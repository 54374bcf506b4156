"""Shared FastAPI dependencies for identity, worker auth and the service graph."""

from __future__ import annotations

import logging
import secrets

from fastapi import Header, HTTPException, Request, status

from questline.config import Settings, get_settings
from questline.core.exceptions import AuthorizationError
from questline.services.container import Services, build_services

logger = logging.getLogger(__name__)

_MAX_USER_ID_LENGTH = 128


def get_services(request: Request) -> Services:
  """Return the graph built at startup, building it lazily when the lifespan did not run."""
  services = getattr(request.app.state, "services", None)
  if services is None:
    services = build_services(get_settings())
    request.app.state.services = services
  return services


async def get_current_user_id(x_questline_user: str | None = Header(default=None)) -> str:
  """Player id forwarded by the authenticating gateway."""
  user_id = (x_questline_user or "").strip()
  if not user_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing player identity.")
  if len(user_id) > _MAX_USER_ID_LENGTH:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Player identity is too long.")
  return user_id


def verify_worker_secret(provided: str | None, settings: Settings) -> None:
  """Constant-time check of the broker's shared secret."""
  # Secure-by-default: internal endpoints stay closed when no secret is configured.
  if not settings.worker_secret:
    logger.error("Worker callback rejected: QUESTLINE_WORKER_SECRET is not configured")
    raise AuthorizationError("Worker authentication is not configured.")
  if not secrets.compare_digest((provided or "").encode(), settings.worker_secret.encode()):
    logger.warning("Worker callback rejected: invalid secret")
    raise AuthorizationError("Invalid worker secret.")
