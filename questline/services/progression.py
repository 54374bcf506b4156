"""Adventure progression: chapters, quest assignment and the chapter transition."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import get_args

from questline.core.exceptions import AdventureMismatchError, AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError, ValidationFailure
from questline.services.achievements import AchievementContext, AchievementEvaluator
from questline.services.renown import RenownEvaluator
from questline.services.side_effects import SideEffectReport, run_best_effort
from questline.storage.progression_repo import ChapterPace, ChapterQuestRecord, ChapterQuestStatus, ChapterRecord, ProgressionRepository, ProgressionTransaction
from questline.storage.rewards_repo import AchievementUnlockRecord
from questline.utils.ids import generate_chapter_code, generate_id
from questline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

CHAPTER_QUEST_STATUSES: frozenset[str] = frozenset(get_args(ChapterQuestStatus))
CHAPTER_PACES: frozenset[str] = frozenset(get_args(ChapterPace))
CARRY_OVER_STATUSES: tuple[ChapterQuestStatus, ...] = ("todo", "doing")

# Forward moves plus reopening; anything else is a conflict.
_ALLOWED_QUEST_MOVES: frozenset[tuple[str, str]] = frozenset({("todo", "doing"), ("todo", "done"), ("doing", "done"), ("doing", "todo"), ("done", "todo")})

QUEST_COMPLETED_EVENT = "quest_completed"
CHAPTER_COMPLETED_EVENT = "chapter_completed"


@dataclass(frozen=True)
class ChapterSpec:
  title: str
  pace: ChapterPace = "standard"
  context_text: str | None = None
  code: str | None = None


@dataclass(frozen=True)
class TransitionResult:
  chapter: ChapterRecord
  carried_over: int
  backlog_selected: int
  assigned_total: int


@dataclass(frozen=True)
class AssignmentResult:
  chapter: ChapterRecord
  assigned: list[ChapterQuestRecord]


@dataclass(frozen=True)
class QuestStatusChange:
  chapter_quest: ChapterQuestRecord
  changed: bool
  side_effects: list[SideEffectReport] = field(default_factory=list)


def _dedupe(ids: list[str]) -> list[str]:
  """Drop blanks and repeats, keeping first-seen order."""
  return list(dict.fromkeys(item for item in ids if item))


def _validate_spec(spec: ChapterSpec) -> ChapterSpec:
  title = spec.title.strip() if spec.title else ""
  if not title:
    raise ValidationFailure("Chapter title is required.")
  if spec.pace not in CHAPTER_PACES:
    raise ValidationFailure(f"Unknown chapter pace: {spec.pace}", details={"pace": spec.pace})
  context_text = spec.context_text.strip() if spec.context_text else None
  return ChapterSpec(title=title, pace=spec.pace, context_text=context_text or None, code=spec.code)


class ProgressionService:
  def __init__(self, repo: ProgressionRepository, achievements: AchievementEvaluator | None = None, renown: RenownEvaluator | None = None) -> None:
    self._repo = repo
    self._achievements = achievements
    self._renown = renown

  async def start_chapter(self, adventure_id: str, session_id: str | None, spec: ChapterSpec, adventure_quest_ids: list[str], *, user_id: str | None = None) -> AssignmentResult:
    """Create an adventure's first chapter; it turns active once it has quests."""
    spec = _validate_spec(spec)
    quest_ids = _dedupe(adventure_quest_ids)
    async with self._repo.transaction(lock_adventure_id=adventure_id) as tx:
      if user_id is not None:
        await self._require_session_owner(tx, session_id, user_id, details={"session_id": session_id})
      active = await tx.get_active_chapter(adventure_id)
      if active is not None:
        raise ConflictError("Adventure already has an active chapter.", details={"adventure_id": adventure_id, "chapter_id": active.id})
      await self._require_adventure_quests(tx, adventure_id, quest_ids)

      chapter = self._new_chapter(adventure_id, session_id, spec, status="draft")
      await tx.insert_chapter(chapter)
      assigned = await tx.insert_chapter_quests(chapter.id, quest_ids, session_id=session_id)
      if assigned:
        await tx.set_chapter_status(chapter.id, "active")
        chapter = await tx.get_chapter(chapter.id) or chapter

    logger.info("Chapter started chapter_id=%s adventure=%s status=%s quests=%s", chapter.id, adventure_id, chapter.status, len(assigned))
    return AssignmentResult(chapter=chapter, assigned=assigned)

  async def assign_quests(self, chapter_id: str, adventure_quest_ids: list[str], *, user_id: str | None = None) -> AssignmentResult:
    """Add `todo` quests to a chapter, activating it if it was still a draft."""
    quest_ids = _dedupe(adventure_quest_ids)
    chapter = await self._load_chapter(chapter_id)
    async with self._repo.transaction(lock_adventure_id=chapter.adventure_id) as tx:
      chapter = await tx.get_chapter(chapter_id)
      if chapter is None:
        raise NotFoundError("Chapter not found.", details={"chapter_id": chapter_id})
      if user_id is not None:
        await self._require_session_owner(tx, chapter.session_id, user_id, details={"chapter_id": chapter_id})
      if chapter.status == "done":
        raise InvalidTransitionError("Cannot assign quests to a finished chapter.", details={"chapter_id": chapter_id})
      await self._require_adventure_quests(tx, chapter.adventure_id, quest_ids)

      assigned = await tx.insert_chapter_quests(chapter_id, quest_ids, session_id=chapter.session_id)
      if chapter.status == "draft" and await tx.count_chapter_quests(chapter_id) > 0:
        active = await tx.get_active_chapter(chapter.adventure_id)
        if active is not None:
          raise ConflictError("Adventure already has an active chapter.", details={"adventure_id": chapter.adventure_id, "chapter_id": active.id})
        await tx.set_chapter_status(chapter_id, "active")
        chapter = await tx.get_chapter(chapter_id) or chapter

    logger.info("Quests assigned chapter_id=%s inserted=%s", chapter_id, len(assigned))
    return AssignmentResult(chapter=chapter, assigned=assigned)

  async def update_chapter_quest_status(self, chapter_quest_id: str, status: str, *, user_id: str) -> QuestStatusChange:
    """Move a chapter quest; completing it triggers achievements and renown, which never fail the call."""
    if status not in CHAPTER_QUEST_STATUSES:
      raise ValidationFailure(f"Unknown chapter quest status: {status}", details={"status": status})

    adventure_id = await self._adventure_of_chapter_quest(chapter_quest_id)
    async with self._repo.transaction(lock_adventure_id=adventure_id) as tx:
      current = await tx.get_chapter_quest(chapter_quest_id)
      if current is None:
        raise NotFoundError("Chapter quest not found.", details={"chapter_quest_id": chapter_quest_id})
      await self._require_session_owner(tx, current.session_id, user_id, details={"chapter_quest_id": chapter_quest_id})
      if current.status == status:
        return QuestStatusChange(chapter_quest=current, changed=False)
      if (current.status, status) not in _ALLOWED_QUEST_MOVES:
        raise InvalidTransitionError(f"Cannot move a chapter quest from {current.status} to {status}.", details={"from": current.status, "to": status})
      chapter = await tx.get_chapter(current.chapter_id)
      if chapter is not None and chapter.status == "done":
        raise InvalidTransitionError("Quests of a finished chapter are read-only.", details={"chapter_id": current.chapter_id})
      updated = await tx.set_chapter_quest_status(chapter_quest_id, status)  # type: ignore[arg-type]
      if updated is None:
        raise NotFoundError("Chapter quest not found.", details={"chapter_quest_id": chapter_quest_id})

    logger.info("Chapter quest moved chapter_quest_id=%s %s -> %s", chapter_quest_id, current.status, status)
    side_effects: list[SideEffectReport] = []
    if status == "done":
      side_effects = await self._on_quest_completed(updated, chapter, user_id)
    return QuestStatusChange(chapter_quest=updated, changed=True, side_effects=side_effects)

  async def delete_chapter_quest(self, chapter_quest_id: str, *, user_id: str | None = None) -> None:
    """Unassign a quest that has not been started."""
    adventure_id = await self._adventure_of_chapter_quest(chapter_quest_id)
    async with self._repo.transaction(lock_adventure_id=adventure_id) as tx:
      current = await tx.get_chapter_quest(chapter_quest_id)
      if current is None:
        raise NotFoundError("Chapter quest not found.", details={"chapter_quest_id": chapter_quest_id})
      if user_id is not None:
        await self._require_session_owner(tx, current.session_id, user_id, details={"chapter_quest_id": chapter_quest_id})
      if current.status != "todo":
        raise InvalidTransitionError(f"Only todo quests can be removed; this one is {current.status}.", details={"chapter_quest_id": chapter_quest_id, "status": current.status})
      await tx.delete_chapter_quest(chapter_quest_id)
    logger.info("Chapter quest deleted chapter_quest_id=%s", chapter_quest_id)

  async def transition_chapter(self, prev_chapter_id: str, adventure_id: str, next_spec: ChapterSpec, backlog_ids: list[str], *, user_id: str | None = None) -> TransitionResult:
    """Close the active chapter and open the next one.

    Unfinished quests move (not copy) to the new chapter with their status intact. Backlog ids are
    added as `todo` unless already carried over. The whole transition commits or rolls back as one,
    serialized per adventure. With `user_id`, the caller must own the chapter's game session.
    """
    spec = _validate_spec(next_spec)
    backlog = _dedupe(backlog_ids)

    async with self._repo.transaction(lock_adventure_id=adventure_id) as tx:
      prev = await tx.get_chapter(prev_chapter_id)
      if prev is None:
        raise NotFoundError("Previous chapter not found.", details={"chapter_id": prev_chapter_id})
      if user_id is not None:
        await self._require_session_owner(tx, prev.session_id, user_id, details={"chapter_id": prev_chapter_id})
      if prev.adventure_id != adventure_id:
        raise AdventureMismatchError("Chapter belongs to another adventure.", details={"chapter_id": prev_chapter_id, "adventure_id": adventure_id})
      if prev.status != "active":
        raise InvalidTransitionError(f"Only the active chapter can be closed; this one is {prev.status}.", details={"chapter_id": prev_chapter_id, "status": prev.status})

      carry_over = await tx.list_chapter_quests(prev.id, statuses=CARRY_OVER_STATUSES)
      carried_quest_ids = {row.adventure_quest_id for row in carry_over}
      backlog_to_insert = [quest_id for quest_id in backlog if quest_id not in carried_quest_ids]
      await self._require_adventure_quests(tx, adventure_id, backlog_to_insert)

      await tx.set_chapter_status(prev.id, "done")
      next_chapter = self._new_chapter(adventure_id, prev.session_id, spec, status="active")
      await tx.insert_chapter(next_chapter)
      carried_over = await tx.reparent_chapter_quests(prev.id, chapter_id=next_chapter.id, statuses=CARRY_OVER_STATUSES)
      inserted = await tx.insert_chapter_quests(next_chapter.id, backlog_to_insert, session_id=prev.session_id)
      assigned_total = await tx.count_chapter_quests(next_chapter.id)

    result = TransitionResult(chapter=next_chapter, carried_over=carried_over, backlog_selected=len(inserted), assigned_total=assigned_total)
    logger.info("Chapter transition adventure=%s %s -> %s carried_over=%s backlog_selected=%s assigned_total=%s", adventure_id, prev_chapter_id, next_chapter.id, result.carried_over, result.backlog_selected, result.assigned_total)

    if user_id and self._achievements is not None:
      ctx = AchievementContext(user_id=user_id, session_id=prev.session_id, adventure_id=adventure_id, chapter_id=prev.id)
      await run_best_effort("achievements.chapter_completed", self._achievements.evaluate(CHAPTER_COMPLETED_EVENT, ctx))
    return result

  async def authorize_refs(self, user_id: str, *, session_id: str | None = None, adventure_id: str | None = None, chapter_id: str | None = None, chapter_quest_id: str | None = None) -> None:
    """Check that every progression row a request points at exists and belongs to `user_id`."""
    async with self._repo.transaction() as tx:
      if session_id:
        await self._require_session_owner(tx, session_id, user_id, details={"session_id": session_id})
      if adventure_id:
        active = await tx.get_active_chapter(adventure_id)
        if active is not None:
          await self._require_session_owner(tx, active.session_id, user_id, details={"adventure_id": adventure_id})
      if chapter_id:
        chapter = await tx.get_chapter(chapter_id)
        if chapter is None:
          raise NotFoundError("Chapter not found.", details={"chapter_id": chapter_id})
        await self._require_session_owner(tx, chapter.session_id, user_id, details={"chapter_id": chapter_id})
      if chapter_quest_id:
        chapter_quest = await tx.get_chapter_quest(chapter_quest_id)
        if chapter_quest is None:
          raise NotFoundError("Chapter quest not found.", details={"chapter_quest_id": chapter_quest_id})
        await self._require_session_owner(tx, chapter_quest.session_id, user_id, details={"chapter_quest_id": chapter_quest_id})

  async def _load_chapter(self, chapter_id: str) -> ChapterRecord:
    async with self._repo.transaction() as tx:
      chapter = await tx.get_chapter(chapter_id)
    if chapter is None:
      raise NotFoundError("Chapter not found.", details={"chapter_id": chapter_id})
    return chapter

  async def _adventure_of_chapter_quest(self, chapter_quest_id: str) -> str | None:
    # Quests only ever move between chapters of one adventure, so the lock key read here stays valid.
    async with self._repo.transaction() as tx:
      current = await tx.get_chapter_quest(chapter_quest_id)
      chapter = await tx.get_chapter(current.chapter_id) if current is not None else None
    return chapter.adventure_id if chapter is not None else None

  @staticmethod
  async def _require_session_owner(tx: ProgressionTransaction, session_id: str | None, user_id: str, *, details: dict[str, str | None]) -> None:
    # Rows without a session predate ownership tracking and stay writable.
    if session_id is None:
      return
    owner = await tx.get_session_owner(session_id)
    if owner is not None and owner != user_id:
      raise AuthorizationError("This belongs to another player.", details=details)

  async def _require_adventure_quests(self, tx: ProgressionTransaction, adventure_id: str, quest_ids: list[str]) -> None:
    if not quest_ids:
      return
    found = {quest.id for quest in await tx.list_adventure_quests(adventure_id, quest_ids)}
    unknown = [quest_id for quest_id in quest_ids if quest_id not in found]
    if unknown:
      raise ValidationFailure("Unknown adventure quests for this adventure.", details={"adventure_quest_ids": unknown})

  @staticmethod
  def _new_chapter(adventure_id: str, session_id: str | None, spec: ChapterSpec, *, status: str) -> ChapterRecord:
    return ChapterRecord(
      id=generate_id(),
      adventure_id=adventure_id,
      session_id=session_id,
      title=spec.title,
      pace=spec.pace,
      status=status,  # type: ignore[arg-type]
      context_text=spec.context_text,
      chapter_code=spec.code or generate_chapter_code(),
      created_at=utcnow(),
    )

  async def _on_quest_completed(self, chapter_quest: ChapterQuestRecord, chapter: ChapterRecord | None, user_id: str) -> list[SideEffectReport]:
    reports: list[SideEffectReport] = []
    if self._achievements is not None:
      reports.append(await run_best_effort("achievements.quest_completed", self._evaluate_quest_achievements(self._achievements, chapter_quest, chapter, user_id)))
    if self._renown is not None:
      reports.append(await run_best_effort("renown.evaluate_level", self._renown.evaluate_level(user_id)))
    return reports

  async def _evaluate_quest_achievements(self, achievements: AchievementEvaluator, chapter_quest: ChapterQuestRecord, chapter: ChapterRecord | None, user_id: str) -> list[AchievementUnlockRecord]:
    ctx = await quest_completion_context(self._repo, chapter_quest, chapter, user_id)
    return await achievements.evaluate(QUEST_COMPLETED_EVENT, ctx)


async def quest_completion_context(repo: ProgressionRepository, chapter_quest: ChapterQuestRecord, chapter: ChapterRecord | None, user_id: str) -> AchievementContext:
  """Achievement context for a finished quest; difficulty always comes from the quest template."""
  difficulty = None
  if chapter is not None:
    async with repo.transaction() as tx:
      quests = await tx.list_adventure_quests(chapter.adventure_id, [chapter_quest.adventure_quest_id])
    difficulty = quests[0].difficulty if quests else None
  return AchievementContext(
    user_id=user_id,
    session_id=chapter_quest.session_id,
    adventure_id=chapter.adventure_id if chapter is not None else None,
    chapter_id=chapter_quest.chapter_id,
    chapter_quest_id=chapter_quest.id,
    difficulty=difficulty,
  )
