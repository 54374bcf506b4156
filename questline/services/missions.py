"""Per-assignment mission orders, generated once and cached."""

from __future__ import annotations

import logging
from typing import Any

from questline.ai.generator import ContentGenerator
from questline.core.exceptions import ContentGenerationError, NotFoundError
from questline.storage.progression_repo import ProgressionRepository, QuestContext
from questline.storage.rewards_repo import MissionCacheEntry, MissionRepository
from questline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


def mission_context(context: QuestContext) -> dict[str, Any]:
  quest = context.quest
  chapter = context.chapter
  return {
    "quest": {"title": quest.title, "description": quest.description, "difficulty": quest.difficulty, "estimate_min": quest.estimate_min, "room_code": quest.room_code},
    "chapter": {"title": chapter.title, "pace": chapter.pace, "context": chapter.context_text},
    "status": context.chapter_quest.status,
  }


class MissionService:
  def __init__(self, repo: MissionRepository, progression: ProgressionRepository, generator: ContentGenerator) -> None:
    self._repo = repo
    self._progression = progression
    self._generator = generator

  async def get_cached(self, chapter_quest_id: str) -> MissionCacheEntry | None:
    return await self._repo.get(chapter_quest_id)

  async def get_or_generate(self, chapter_quest_id: str, force: bool = False) -> tuple[MissionCacheEntry, bool]:
    """Return `(entry, cached)`; a cache hit never calls the generator."""
    if not force:
      existing = await self._repo.get(chapter_quest_id)
      if existing is not None:
        return existing, True

    context = await self._progression.get_quest_context(chapter_quest_id)
    if context is None:
      raise NotFoundError("Chapter quest not found.", details={"chapter_quest_id": chapter_quest_id})

    mission = await self._generator.generate_json("mission_order", mission_context(context))
    markdown = mission.get("markdown")
    if not isinstance(markdown, str) or not markdown.strip():
      raise ContentGenerationError("Mission order is missing its markdown body.", details={"chapter_quest_id": chapter_quest_id})

    entry = MissionCacheEntry(chapter_quest_id=chapter_quest_id, mission_json=mission, mission_md=markdown.strip(), model=self._generator.model, updated_at=utcnow())
    stored = await self._repo.upsert(entry)
    logger.info("Mission generated chapter_quest_id=%s model=%s force=%s", chapter_quest_id, stored.model, force)
    return stored, False
