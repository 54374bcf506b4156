"""Postgres-backed storage for the mission cache, renown and achievements."""

from __future__ import annotations

from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from questline.schema.progression import AchievementCatalogEntry, AchievementUnlock, Chapter, ChapterQuest, GameSession, PlayerRenown, QuestMissionOrder
from questline.storage.rewards_repo import AchievementDefinition, AchievementsRepository, AchievementUnlockRecord, MissionCacheEntry, MissionRepository, RenownRepository, RenownState
from questline.utils.db_retry import execute_with_retry


def _mission_to_entry(row: QuestMissionOrder) -> MissionCacheEntry:
  return MissionCacheEntry(chapter_quest_id=row.chapter_quest_id, mission_json=dict(row.mission_json or {}), mission_md=row.mission_md, model=row.model, updated_at=row.updated_at)


def _renown_to_state(row: PlayerRenown) -> RenownState:
  return RenownState(user_id=row.user_id, value=row.value, level=row.level, updated_at=row.updated_at)


def _unlock_to_record(row: AchievementUnlock) -> AchievementUnlockRecord:
  return AchievementUnlockRecord(
    id=row.id,
    achievement_id=row.achievement_id,
    user_id=row.user_id,
    scope_key=row.scope_key,
    unlocked_at=row.unlocked_at,
    session_id=row.session_id,
    adventure_id=row.adventure_id,
    chapter_id=row.chapter_id,
    chapter_quest_id=row.chapter_quest_id,
    reason=row.reason,
    reward_payload=row.reward_payload,
  )


class PostgresMissionRepository(MissionRepository):
  def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, retry_attempts: int = 3) -> None:
    self._session_factory = session_factory
    self._retry_attempts = retry_attempts

  async def get(self, chapter_quest_id: str) -> MissionCacheEntry | None:
    async with self._session_factory() as session:
      row = await session.get(QuestMissionOrder, chapter_quest_id)
      return _mission_to_entry(row) if row is not None else None

  async def upsert(self, entry: MissionCacheEntry) -> MissionCacheEntry:
    values = {"chapter_quest_id": entry.chapter_quest_id, "mission_json": entry.mission_json, "mission_md": entry.mission_md, "model": entry.model, "updated_at": entry.updated_at}
    stmt = pg_insert(QuestMissionOrder).values(**values)
    stmt = stmt.on_conflict_do_update(index_elements=[QuestMissionOrder.chapter_quest_id], set_={key: stmt.excluded[key] for key in values if key != "chapter_quest_id"}).returning(QuestMissionOrder)

    async def _upsert() -> MissionCacheEntry:
      async with self._session_factory() as session:
        result = await session.execute(stmt)
        row = result.scalars().one()
        await session.commit()
        return _mission_to_entry(row)

    return await execute_with_retry(operation_name="missions.upsert", func=_upsert, max_attempts=self._retry_attempts)


class PostgresRenownRepository(RenownRepository):
  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory

  async def get(self, user_id: str) -> RenownState | None:
    async with self._session_factory() as session:
      row = await session.get(PlayerRenown, user_id)
      return _renown_to_state(row) if row is not None else None

  async def add_value(self, user_id: str, delta: int) -> RenownState:
    # Increment in SQL so concurrent awards add up instead of overwriting each other.
    stmt = pg_insert(PlayerRenown).values(user_id=user_id, value=delta, level=0)
    stmt = stmt.on_conflict_do_update(index_elements=[PlayerRenown.user_id], set_={"value": PlayerRenown.value + delta, "updated_at": func.now()}).returning(PlayerRenown)
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      row = result.scalars().one()
      await session.commit()
      return _renown_to_state(row)

  async def set_level(self, user_id: str, level: int) -> RenownState | None:
    stmt = update(PlayerRenown).where(PlayerRenown.user_id == user_id).values(level=level, updated_at=func.now()).returning(PlayerRenown)
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      row = result.scalars().first()
      await session.commit()
      return _renown_to_state(row) if row is not None else None


class PostgresAchievementsRepository(AchievementsRepository):
  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory

  async def list_active(self, *, trigger_event: str | None) -> list[AchievementDefinition]:
    stmt = select(AchievementCatalogEntry).where(AchievementCatalogEntry.is_active.is_(True))
    if trigger_event is not None:
      stmt = stmt.where(AchievementCatalogEntry.trigger_event == trigger_event)
    async with self._session_factory() as session:
      result = await session.execute(stmt.order_by(AchievementCatalogEntry.code))
      return [
        AchievementDefinition(
          id=row.id,
          code=row.code,
          name=row.name,
          scope=row.scope,
          conditions=dict(row.conditions or {}),
          rewards=list(row.rewards or []),
          description=row.description,
          trigger_event=row.trigger_event,
          is_active=row.is_active,
        )
        for row in result.scalars().all()
      ]

  async def insert_unlock(self, record: AchievementUnlockRecord) -> bool:
    stmt = (
      pg_insert(AchievementUnlock)
      .values(
        id=record.id,
        achievement_id=record.achievement_id,
        user_id=record.user_id,
        scope_key=record.scope_key,
        session_id=record.session_id,
        adventure_id=record.adventure_id,
        chapter_id=record.chapter_id,
        chapter_quest_id=record.chapter_quest_id,
        reason=record.reason,
        reward_payload=record.reward_payload,
        unlocked_at=record.unlocked_at,
      )
      .on_conflict_do_nothing(index_elements=["achievement_id", "user_id", "scope_key"])
      .returning(AchievementUnlock.id)
    )
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      inserted = result.scalar_one_or_none()
      await session.commit()
      return inserted is not None

  async def update_unlock_rewards(self, unlock_id: str, *, reward_payload: list[dict[str, Any]], reason: dict[str, Any]) -> None:
    async with self._session_factory() as session:
      await session.execute(update(AchievementUnlock).where(AchievementUnlock.id == unlock_id).values(reward_payload=reward_payload, reason=reason))
      await session.commit()

  async def list_unlocks(self, user_id: str) -> list[AchievementUnlockRecord]:
    async with self._session_factory() as session:
      result = await session.execute(select(AchievementUnlock).where(AchievementUnlock.user_id == user_id).order_by(AchievementUnlock.unlocked_at.desc()))
      return [_unlock_to_record(row) for row in result.scalars().all()]

  async def count_completed_quests(self, user_id: str, *, session_id: str | None = None, adventure_id: str | None = None) -> int:
    stmt = select(func.count(ChapterQuest.id)).join(GameSession, GameSession.id == ChapterQuest.session_id).where(GameSession.user_id == user_id, ChapterQuest.status == "done")
    if session_id is not None:
      stmt = stmt.where(ChapterQuest.session_id == session_id)
    if adventure_id is not None:
      stmt = stmt.join(Chapter, Chapter.id == ChapterQuest.chapter_id).where(Chapter.adventure_id == adventure_id)
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      return int(result.scalar_one())

  async def count_completed_chapters(self, user_id: str, *, session_id: str | None = None, adventure_id: str | None = None) -> int:
    stmt = select(func.count(Chapter.id)).join(GameSession, GameSession.id == Chapter.session_id).where(GameSession.user_id == user_id, Chapter.status == "done")
    if session_id is not None:
      stmt = stmt.where(Chapter.session_id == session_id)
    if adventure_id is not None:
      stmt = stmt.where(Chapter.adventure_id == adventure_id)
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      return int(result.scalar_one())
