"""Domain error taxonomy and the FastAPI handlers that translate it into responses."""

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class QuestlineError(Exception):
  """Base class for errors callers are expected to branch on."""

  status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
  code = "internal_error"

  def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.details = details or {}


class ValidationFailure(QuestlineError):
  """Input rejected before any row is written."""

  status_code = status.HTTP_400_BAD_REQUEST
  code = "validation_error"


class JobValidationError(ValidationFailure):
  """Enqueue request rejected (unknown type, bad payload, missing correlation id)."""

  code = "invalid_job"


class NotFoundError(QuestlineError):
  """Referenced row does not exist or is not visible to the caller."""

  status_code = status.HTTP_404_NOT_FOUND
  code = "not_found"


class ConflictError(QuestlineError):
  """Operation not allowed in the row's current state."""

  status_code = status.HTTP_409_CONFLICT
  code = "conflict"


class JobStateConflictError(ConflictError):
  code = "job_state_conflict"


class AdventureMismatchError(ConflictError):
  code = "adventure_mismatch"


class InvalidTransitionError(ConflictError):
  code = "invalid_transition"


class AuthorizationError(QuestlineError):
  """Caller failed a shared-secret or ownership check."""

  status_code = status.HTTP_403_FORBIDDEN
  code = "forbidden"


class BrokerPublishError(QuestlineError):
  """The push broker rejected or never acknowledged a publish."""

  status_code = status.HTTP_502_BAD_GATEWAY
  code = "broker_publish_failed"

  def __init__(self, message: str, *, job_id: str | None = None, details: dict[str, Any] | None = None) -> None:
    super().__init__(message, details=details)
    self.job_id = job_id


class ContentGenerationError(QuestlineError):
  """The language model returned nothing usable."""

  status_code = status.HTTP_502_BAD_GATEWAY
  code = "content_generation_failed"


def _error_payload(detail: Any, *, code: str | None = None, request_id: str | None = None) -> dict[str, Any]:
  """Build an error payload that never leaks internal diagnostics."""
  payload: dict[str, Any] = {"detail": detail}
  if code:
    payload["code"] = code
  # Support correlates client reports to server logs through the request id.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key not in {"input", "ctx", "url"}}
    sanitized.append({key: (value if isinstance(value, str | int | float | list | tuple) else str(value)) for key, value in scrubbed.items()})
  return sanitized


async def questline_exception_handler(request: Request, exc: QuestlineError) -> JSONResponse:
  """Translate domain errors into their HTTP status."""
  request_id = getattr(request.state, "request_id", None)
  logger = logging.getLogger("questline.core.exceptions")
  if exc.status_code >= 500:
    logger.error("Domain failure request_id=%s path=%s code=%s message=%s", request_id, request.url.path, exc.code, exc.message)
  else:
    logger.info("Domain rejection request_id=%s path=%s code=%s message=%s", request_id, request.url.path, exc.code, exc.message)
  content = _error_payload(exc.message, code=exc.code, request_id=request_id)
  if isinstance(exc, BrokerPublishError) and exc.job_id:
    content["jobId"] = exc.job_id
  return JSONResponse(status_code=exc.status_code, content=content)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Catch anything unhandled and hide it behind a request id."""
  request_id = getattr(request.state, "request_id", None)
  logger = logging.getLogger("uvicorn.error")
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors without leaking payloads."""
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(list(exc.errors()))
  logging.getLogger("uvicorn.error").warning("Request validation failed request_id=%s path=%s errors=%s", request_id, request.url.path, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle HTTPExceptions, masking 5xx details."""
  from questline.config import get_settings

  request_id = getattr(request.state, "request_id", None)
  logger = logging.getLogger("uvicorn.error")
  if exc.status_code >= 500:
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  if get_settings().log_http_4xx:
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id))
