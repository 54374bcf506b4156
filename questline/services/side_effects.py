"""Fire-and-observe execution for side effects that must never fail their triggering action."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any

from questline.utils.timeutil import ms_since

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SideEffectReport:
  name: str
  ok: bool
  duration_ms: int
  result: Any = None
  error: str | None = None


async def run_best_effort(name: str, awaitable: Awaitable[Any]) -> SideEffectReport:
  """Await a side effect, logging and reporting any failure instead of raising it."""
  started = time.monotonic()
  try:
    result = await awaitable
  except Exception as exc:
    duration_ms = ms_since(started, time.monotonic())
    logger.error("Side effect failed name=%s after %sms: %s", name, duration_ms, exc, exc_info=True)
    return SideEffectReport(name=name, ok=False, duration_ms=duration_ms, error=f"{type(exc).__name__}: {exc}")

  duration_ms = ms_since(started, time.monotonic())
  logger.debug("Side effect done name=%s in %sms", name, duration_ms)
  return SideEffectReport(name=name, ok=True, duration_ms=duration_ms, result=result)
