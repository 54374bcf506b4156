"""Broker deduplication keys.

Cloud Tasks task ids and push-broker dedup headers accept a narrow alphabet, so every key
passes through `normalize_dedup_key` before it leaves the process.
"""

from __future__ import annotations

import hashlib
import re

MAX_DEDUP_KEY_LENGTH = 100
_HASH_CHARS = 16
_SEPARATORS = "-_"
_DASH_CHARS = re.compile(r"[:/.\s]")
_DISALLOWED_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_SEPARATOR_RUNS = re.compile(r"[-_]{2,}")


def _digest(raw: str) -> str:
  return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:_HASH_CHARS]


def normalize_dedup_key(raw: str) -> str:
  """Map an arbitrary string onto the broker-safe alphabet `[A-Za-z0-9_-]`.

  The mapping is deterministic and idempotent: an already-normalized key comes back unchanged.
  Keys over 100 characters keep a readable prefix and gain a hash suffix of the original input.
  """
  cleaned = _DASH_CHARS.sub("-", raw)
  cleaned = _DISALLOWED_CHARS.sub("_", cleaned)
  cleaned = _SEPARATOR_RUNS.sub(lambda match: match.group(0)[0], cleaned)
  cleaned = cleaned.strip(_SEPARATORS)

  if not cleaned:
    return f"k-{_digest(raw)}"

  if len(cleaned) <= MAX_DEDUP_KEY_LENGTH:
    return cleaned

  prefix = cleaned[: MAX_DEDUP_KEY_LENGTH - 1 - _HASH_CHARS].rstrip(_SEPARATORS)
  return f"{prefix}-{_digest(raw)}"


def dispatch_dedup_key(job_id: str) -> str:
  """Key for the first publish of a job."""
  return normalize_dedup_key(job_id)


def retry_dedup_key(job_id: str, attempt: int) -> str:
  """Key for a re-publish; distinct per attempt so the broker does not drop it as a duplicate."""
  return normalize_dedup_key(f"{job_id}:retry:{attempt}")
