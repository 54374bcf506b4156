"""Handlers for every job type, wired to the services they drive."""

from __future__ import annotations

import logging
from typing import Any

from questline.ai.generator import ContentGenerator, ContentKind
from questline.core.exceptions import AuthorizationError, InvalidTransitionError, NotFoundError, ValidationFailure
from questline.jobs.dispatch import JobHandlerRegistry, JobRefs
from questline.jobs.models import AchievementsEvaluationPayload, AdventureBriefingPayload, ChapterStoryPayload, MissionOrderPayload, RenownEvaluationPayload, WelcomeMessagePayload
from questline.services.achievements import AchievementContext, AchievementEvaluator
from questline.services.missions import MissionService
from questline.services.progression import QUEST_COMPLETED_EVENT, quest_completion_context
from questline.services.renown import LevelSnapshot, RenownEvaluator
from questline.storage.progression_repo import ProgressionRepository

logger = logging.getLogger(__name__)


def _snapshot(snapshot: LevelSnapshot | None) -> dict[str, int] | None:
  if snapshot is None:
    return None
  return {"value": snapshot.value, "level": snapshot.level}


class JobHandlers:
  """Bound handlers; each returns the JSON object stored as the job result."""

  def __init__(self, generator: ContentGenerator, progression: ProgressionRepository, missions: MissionService, renown: RenownEvaluator, achievements: AchievementEvaluator) -> None:
    self._generator = generator
    self._progression = progression
    self._missions = missions
    self._renown = renown
    self._achievements = achievements

  async def adventure_briefing(self, payload: AdventureBriefingPayload, refs: JobRefs) -> dict[str, Any]:
    adventure_id = refs.correlation.adventure_id
    async with self._progression.transaction() as tx:
      active = await tx.get_active_chapter(adventure_id) if adventure_id else None
    context = {"adventure_id": adventure_id, "extra_context": payload.extra_context, "active_chapter": active.title if active else None}
    return await self._generate("adventure_briefing", context)

  async def welcome_message(self, payload: WelcomeMessagePayload, refs: JobRefs) -> dict[str, Any]:
    return await self._generate("welcome_message", {"display_name": payload.display_name or "adventurer"})

  async def chapter_story(self, payload: ChapterStoryPayload, refs: JobRefs) -> dict[str, Any]:
    chapter_id = refs.correlation.chapter_id
    async with self._progression.transaction() as tx:
      chapter = await tx.get_chapter(chapter_id) if chapter_id else None
      if chapter is None:
        raise NotFoundError("Chapter not found.", details={"chapter_id": chapter_id})
      finished = await tx.list_chapter_quests(chapter.id, statuses=("done",))
      quests = await tx.list_adventure_quests(chapter.adventure_id, [row.adventure_quest_id for row in finished])

    context = {
      "chapter": {"title": chapter.title, "pace": chapter.pace, "context": chapter.context_text},
      "completed_quests": [{"title": quest.title, "difficulty": quest.difficulty} for quest in quests],
    }
    return await self._generate("chapter_story", context)

  async def mission_order(self, payload: MissionOrderPayload, refs: JobRefs) -> dict[str, Any]:
    chapter_quest_id = refs.correlation.chapter_quest_id or ""
    entry, cached = await self._missions.get_or_generate(chapter_quest_id, force=payload.force)
    return {"chapter_quest_id": entry.chapter_quest_id, "cached": cached, "model": entry.model, "updated_at": entry.updated_at.isoformat()}

  async def renown_evaluation(self, payload: RenownEvaluationPayload, refs: JobRefs) -> dict[str, Any]:
    evaluation = await self._renown.evaluate_level(refs.owner_id)
    return {"updated": evaluation.updated, "prev": _snapshot(evaluation.prev), "next": _snapshot(evaluation.next)}

  async def achievements_evaluation(self, payload: AchievementsEvaluationPayload, refs: JobRefs) -> dict[str, Any]:
    ctx = await self._achievement_context(payload.event, refs)
    unlocked = await self._achievements.evaluate(payload.event, ctx)
    return {"event": payload.event, "unlocked": [{"achievement_id": unlock.achievement_id, "scope_key": unlock.scope_key, "rewards": unlock.reward_payload} for unlock in unlocked]}

  async def _achievement_context(self, event: str, refs: JobRefs) -> AchievementContext:
    """Build the evaluation context from stored rows owned by the job owner, never from caller input."""
    correlation = refs.correlation
    if correlation.chapter_quest_id:
      async with self._progression.transaction() as tx:
        chapter_quest = await tx.get_chapter_quest(correlation.chapter_quest_id)
        if chapter_quest is None:
          raise NotFoundError("Chapter quest not found.", details={"chapter_quest_id": correlation.chapter_quest_id})
        chapter = await tx.get_chapter(chapter_quest.chapter_id)
        owner = await tx.get_session_owner(chapter_quest.session_id) if chapter_quest.session_id else None
      if owner is not None and owner != refs.owner_id:
        raise AuthorizationError("Chapter quest belongs to another player.", details={"chapter_quest_id": chapter_quest.id})
      if event == QUEST_COMPLETED_EVENT and chapter_quest.status != "done":
        raise InvalidTransitionError("Chapter quest is not done.", details={"chapter_quest_id": chapter_quest.id, "status": chapter_quest.status})
      return await quest_completion_context(self._progression, chapter_quest, chapter, refs.owner_id)

    if event == QUEST_COMPLETED_EVENT:
      raise ValidationFailure("quest_completed evaluations need a chapter quest.")
    if correlation.chapter_id:
      async with self._progression.transaction() as tx:
        chapter = await tx.get_chapter(correlation.chapter_id)
        if chapter is None:
          raise NotFoundError("Chapter not found.", details={"chapter_id": correlation.chapter_id})
        owner = await tx.get_session_owner(chapter.session_id) if chapter.session_id else None
      if owner is not None and owner != refs.owner_id:
        raise AuthorizationError("Chapter belongs to another player.", details={"chapter_id": chapter.id})
      return AchievementContext(user_id=refs.owner_id, session_id=chapter.session_id, adventure_id=chapter.adventure_id, chapter_id=chapter.id)
    return AchievementContext(user_id=refs.owner_id, session_id=correlation.session_id, adventure_id=correlation.adventure_id)

  async def _generate(self, kind: ContentKind, context: dict[str, Any]) -> dict[str, Any]:
    content = await self._generator.generate_json(kind, context)
    logger.debug("Generated %s with model=%s", kind, self._generator.model)
    return {"model": self._generator.model, "content": content}


def build_handler_registry(generator: ContentGenerator, progression: ProgressionRepository, missions: MissionService, renown: RenownEvaluator, achievements: AchievementEvaluator) -> JobHandlerRegistry:
  handlers = JobHandlers(generator, progression, missions, renown, achievements)
  return JobHandlerRegistry(
    {
      "adventure_briefing": handlers.adventure_briefing,
      "welcome_message": handlers.welcome_message,
      "chapter_story": handlers.chapter_story,
      "mission_order": handlers.mission_order,
      "renown_evaluation": handlers.renown_evaluation,
      "achievements_evaluation": handlers.achievements_evaluation,
    }
  )
