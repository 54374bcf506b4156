"""Renown score and the level derived from it."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from questline.core.exceptions import ValidationFailure
from questline.storage.rewards_repo import RenownRepository, RenownState

logger = logging.getLogger(__name__)

RENOWN_PER_LEVEL = 100


def level_for_value(value: int) -> int:
  return max(0, value // RENOWN_PER_LEVEL)


@dataclass(frozen=True)
class LevelSnapshot:
  value: int
  level: int


@dataclass(frozen=True)
class LevelEvaluation:
  updated: bool
  prev: LevelSnapshot | None
  next: LevelSnapshot | None


class RenownEvaluator:
  """Recomputes the stored level from the stored value; writes only when the level changes."""

  def __init__(self, repo: RenownRepository) -> None:
    self._repo = repo

  async def get_state(self, user_id: str) -> RenownState | None:
    return await self._repo.get(user_id)

  async def evaluate_level(self, user_id: str) -> LevelEvaluation:
    state = await self._repo.get(user_id)
    if state is None:
      return LevelEvaluation(updated=False, prev=None, next=None)

    prev = LevelSnapshot(value=state.value, level=state.level)
    next_level = level_for_value(state.value)
    if next_level == state.level:
      return LevelEvaluation(updated=False, prev=prev, next=prev)

    stored = await self._repo.set_level(user_id, next_level)
    if stored is None:
      return LevelEvaluation(updated=False, prev=prev, next=prev)
    logger.info("Renown level changed user=%s %s -> %s (value=%s)", user_id, state.level, next_level, state.value)
    return LevelEvaluation(updated=True, prev=prev, next=LevelSnapshot(value=stored.value, level=stored.level))

  async def add_renown(self, user_id: str, delta: int) -> LevelEvaluation:
    """Add renown then re-derive the level."""
    if delta < 0:
      raise ValidationFailure("Renown delta must not be negative.", details={"delta": delta})
    if delta > 0:
      await self._repo.add_value(user_id, delta)
    return await self.evaluate_level(user_id)
