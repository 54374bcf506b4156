"""UTC timestamp helpers shared by repositories and services."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
  """Return an aware UTC timestamp."""
  return datetime.now(UTC)


def seconds_ago(seconds: float) -> datetime:
  """Return the UTC timestamp `seconds` in the past."""
  return utcnow() - timedelta(seconds=seconds)


def ms_since(started: float, now: float) -> int:
  """Return elapsed milliseconds between two monotonic readings, never negative."""
  return max(0, int((now - started) * 1000))
