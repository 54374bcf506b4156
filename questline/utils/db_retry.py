"""Bounded retry for transient database failures, classified by Postgres SQLSTATE."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

T = TypeVar("T")
logger = logging.getLogger(__name__)

# SQLSTATE codes that describe a transient condition; the statement can succeed as-is on a second try.
_RETRYABLE_SQLSTATES = {
  "40001": "serialization_conflict",
  "40P01": "deadlock",
  "08000": "connection_exception",
  "08003": "connection_does_not_exist",
  "08006": "connection_failure",
  "57P01": "admin_shutdown",
}

_CONNECTIVITY_HINTS = ("connection", "timeout", "reset", "network", "broken pipe", "closed the connection")


@dataclass(frozen=True)
class DBFailureClassification:
  """Outcome of classifying one database exception."""

  retryable: bool
  category: str
  sqlstate: str | None


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Read the SQLSTATE from the DBAPI error wrapped by SQLAlchemy, if any."""
  if not isinstance(exc, DBAPIError):
    return None
  orig = getattr(exc, "orig", None)
  for attr in ("sqlstate", "pgcode"):
    value = getattr(orig, attr, None)
    if value:
      return str(value)
  return None


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """Decide whether a database failure is worth retrying."""
  sqlstate = _extract_sqlstate(exc)
  if sqlstate in _RETRYABLE_SQLSTATES:
    return DBFailureClassification(retryable=True, category=_RETRYABLE_SQLSTATES[sqlstate], sqlstate=sqlstate)

  # Integrity, schema and permission classes never heal on retry.
  if isinstance(exc, IntegrityError) or (sqlstate and sqlstate[:2] in {"23", "42", "28"}):
    return DBFailureClassification(retryable=False, category="permanent", sqlstate=sqlstate)

  if isinstance(exc, (OperationalError, InterfaceError)):
    message = str(exc).lower()
    if any(hint in message for hint in _CONNECTIVITY_HINTS):
      return DBFailureClassification(retryable=True, category="connectivity", sqlstate=sqlstate)
    return DBFailureClassification(retryable=False, category="operational_unknown", sqlstate=sqlstate)

  if isinstance(exc, (ConnectionError, TimeoutError)):
    return DBFailureClassification(retryable=True, category="connectivity", sqlstate=sqlstate)

  return DBFailureClassification(retryable=False, category=f"unknown:{type(exc).__name__}", sqlstate=sqlstate)


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000, jitter: bool = True) -> T:
  """Run an idempotent database operation, retrying transient failures with exponential backoff.

  Non-retryable failures are re-raised immediately; the last transient failure is re-raised once
  `max_attempts` is exhausted.
  """
  if max_attempts < 1:
    raise ValueError("max_attempts must be at least 1")

  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      logger.warning("DB operation failed: operation=%s attempt=%d/%d category=%s sqlstate=%s retryable=%s", operation_name, attempt, max_attempts, classification.category, classification.sqlstate or "none", classification.retryable)
      if not classification.retryable or attempt >= max_attempts:
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      if jitter:
        spread = backoff_ms * 0.25
        backoff_ms += random.uniform(-spread, spread)
      await asyncio.sleep(backoff_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("DB operation succeeded after retry: operation=%s attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
