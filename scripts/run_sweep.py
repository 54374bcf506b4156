"""Run one lease-expiry and orphan re-publish sweep outside the web process."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure repo root is on sys.path so local imports work when invoked directly.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from questline.config import get_settings
from questline.core.database import dispose_engine
from questline.jobs.sweep import run_sweep
from questline.services.tasks.factory import get_task_enqueuer
from questline.storage.factory import build_repositories

logger = logging.getLogger("scripts.run_sweep")


async def _run(rounds: int, interval_seconds: float) -> int:
  settings = get_settings()
  repositories = build_repositories(settings)
  enqueuer = get_task_enqueuer(settings)
  total = {"requeued": 0, "failed": 0, "republished": 0}
  try:
    for round_number in range(1, rounds + 1):
      result = await run_sweep(repositories.jobs, enqueuer, settings)
      logger.info("Sweep round %s/%s: %s", round_number, rounds, result.as_dict())
      for key, value in result.as_dict().items():
        total[key] += value
      if round_number < rounds:
        await asyncio.sleep(interval_seconds)
  finally:
    drain = getattr(enqueuer, "drain", None)
    if drain is not None:
      await drain()
    await dispose_engine()

  print(json.dumps(total))
  return 0


def main() -> None:
  """Sweep expired leases and orphaned queued jobs, then print the totals as JSON."""
  parser = argparse.ArgumentParser(description="Requeue expired job leases and re-publish orphaned queued jobs.")
  parser.add_argument("--rounds", type=int, default=1, help="Number of sweep rounds to run (default: 1).")
  parser.add_argument("--interval", type=float, default=30.0, help="Seconds to wait between rounds (default: 30).")
  parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
  args = parser.parse_args()
  if args.rounds < 1:
    parser.error("--rounds must be at least 1")

  logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
  sys.exit(asyncio.run(_run(args.rounds, args.interval)))


if __name__ == "__main__":
  main()
