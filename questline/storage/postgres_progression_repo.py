"""Postgres-backed progression storage.

Chapter transitions run inside one transaction that first takes a transaction-scoped advisory
lock keyed by the adventure, so two transitions on the same adventure serialize.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from questline.schema.progression import AdventureQuest, Chapter, ChapterQuest, GameSession
from questline.storage.progression_repo import AdventureQuestRecord, ChapterQuestRecord, ChapterQuestStatus, ChapterRecord, ChapterStatus, ProgressionRepository, ProgressionTransaction, QuestContext
from questline.utils.ids import generate_id


def chapter_to_record(row: Chapter) -> ChapterRecord:
  return ChapterRecord(
    id=row.id,
    adventure_id=row.adventure_id,
    session_id=row.session_id,
    title=row.title,
    pace=row.pace,  # type: ignore[arg-type]
    status=row.status,  # type: ignore[arg-type]
    context_text=row.context_text,
    chapter_code=row.chapter_code,
    created_at=row.created_at,
  )


def chapter_quest_to_record(row: ChapterQuest) -> ChapterQuestRecord:
  return ChapterQuestRecord(
    id=row.id,
    chapter_id=row.chapter_id,
    adventure_quest_id=row.adventure_quest_id,
    session_id=row.session_id,
    status=row.status,  # type: ignore[arg-type]
    created_at=row.created_at,
    updated_at=row.updated_at,
  )


def adventure_quest_to_record(row: AdventureQuest) -> AdventureQuestRecord:
  return AdventureQuestRecord(
    id=row.id,
    adventure_id=row.adventure_id,
    title=row.title,
    description=row.description,
    difficulty=row.difficulty,
    estimate_min=row.estimate_min,
    room_code=row.room_code,
  )


class PostgresProgressionTransaction(ProgressionTransaction):
  def __init__(self, session: AsyncSession) -> None:
    self._session = session

  async def get_chapter(self, chapter_id: str) -> ChapterRecord | None:
    row = await self._session.get(Chapter, chapter_id)
    return chapter_to_record(row) if row is not None else None

  async def get_active_chapter(self, adventure_id: str) -> ChapterRecord | None:
    result = await self._session.execute(select(Chapter).where(Chapter.adventure_id == adventure_id, Chapter.status == "active"))
    row = result.scalars().first()
    return chapter_to_record(row) if row is not None else None

  async def insert_chapter(self, record: ChapterRecord) -> None:
    self._session.add(
      Chapter(
        id=record.id,
        adventure_id=record.adventure_id,
        session_id=record.session_id,
        title=record.title,
        pace=record.pace,
        status=record.status,
        context_text=record.context_text,
        chapter_code=record.chapter_code,
        created_at=record.created_at,
      )
    )
    await self._session.flush()

  async def set_chapter_status(self, chapter_id: str, status: ChapterStatus) -> None:
    await self._session.execute(update(Chapter).where(Chapter.id == chapter_id).values(status=status))

  async def list_adventure_quests(self, adventure_id: str, quest_ids: list[str]) -> list[AdventureQuestRecord]:
    if not quest_ids:
      return []
    result = await self._session.execute(select(AdventureQuest).where(AdventureQuest.adventure_id == adventure_id, AdventureQuest.id.in_(quest_ids)))
    return [adventure_quest_to_record(row) for row in result.scalars().all()]

  async def get_chapter_quest(self, chapter_quest_id: str) -> ChapterQuestRecord | None:
    row = await self._session.get(ChapterQuest, chapter_quest_id)
    return chapter_quest_to_record(row) if row is not None else None

  async def list_chapter_quests(self, chapter_id: str, *, statuses: tuple[ChapterQuestStatus, ...] | None = None) -> list[ChapterQuestRecord]:
    stmt = select(ChapterQuest).where(ChapterQuest.chapter_id == chapter_id)
    if statuses is not None:
      stmt = stmt.where(ChapterQuest.status.in_(statuses))
    result = await self._session.execute(stmt.order_by(ChapterQuest.created_at, ChapterQuest.id))
    return [chapter_quest_to_record(row) for row in result.scalars().all()]

  async def count_chapter_quests(self, chapter_id: str) -> int:
    result = await self._session.execute(select(func.count()).select_from(ChapterQuest).where(ChapterQuest.chapter_id == chapter_id))
    return int(result.scalar_one())

  async def reparent_chapter_quests(self, from_chapter_id: str, *, chapter_id: str, statuses: tuple[ChapterQuestStatus, ...]) -> int:
    if not statuses:
      return 0
    stmt = update(ChapterQuest).where(ChapterQuest.chapter_id == from_chapter_id, ChapterQuest.status.in_(statuses)).values(chapter_id=chapter_id, updated_at=func.now())
    result = await self._session.execute(stmt)
    return int(result.rowcount or 0)

  async def insert_chapter_quests(self, chapter_id: str, adventure_quest_ids: list[str], *, session_id: str | None) -> list[ChapterQuestRecord]:
    if not adventure_quest_ids:
      return []
    rows = [{"id": generate_id(), "chapter_id": chapter_id, "adventure_quest_id": quest_id, "session_id": session_id, "status": "todo"} for quest_id in adventure_quest_ids]
    stmt = pg_insert(ChapterQuest).values(rows).on_conflict_do_nothing(index_elements=["chapter_id", "adventure_quest_id"]).returning(ChapterQuest)
    result = await self._session.execute(stmt)
    return [chapter_quest_to_record(row) for row in result.scalars().all()]

  async def set_chapter_quest_status(self, chapter_quest_id: str, status: ChapterQuestStatus) -> ChapterQuestRecord | None:
    stmt = update(ChapterQuest).where(ChapterQuest.id == chapter_quest_id).values(status=status, updated_at=func.now()).returning(ChapterQuest)
    result = await self._session.execute(stmt)
    row = result.scalars().first()
    return chapter_quest_to_record(row) if row is not None else None

  async def delete_chapter_quest(self, chapter_quest_id: str) -> bool:
    result = await self._session.execute(delete(ChapterQuest).where(ChapterQuest.id == chapter_quest_id))
    return bool(result.rowcount)

  async def get_session_owner(self, session_id: str) -> str | None:
    row = await self._session.get(GameSession, session_id)
    return row.user_id if row is not None else None


class PostgresProgressionRepository(ProgressionRepository):
  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory

  @asynccontextmanager
  async def transaction(self, *, lock_adventure_id: str | None = None) -> AsyncIterator[ProgressionTransaction]:
    async with self._session_factory() as session:
      async with session.begin():
        if lock_adventure_id is not None:
          await session.execute(select(func.pg_advisory_xact_lock(func.hashtext(lock_adventure_id))))
        yield PostgresProgressionTransaction(session)

  async def get_quest_context(self, chapter_quest_id: str) -> QuestContext | None:
    stmt = (
      select(ChapterQuest, AdventureQuest, Chapter)
      .join(AdventureQuest, AdventureQuest.id == ChapterQuest.adventure_quest_id)
      .join(Chapter, Chapter.id == ChapterQuest.chapter_id)
      .where(ChapterQuest.id == chapter_quest_id)
    )
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      row = result.first()
      if row is None:
        return None
      chapter_quest, quest, chapter = row
      return QuestContext(chapter_quest=chapter_quest_to_record(chapter_quest), quest=adventure_quest_to_record(quest), chapter=chapter_to_record(chapter))
