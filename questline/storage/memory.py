"""In-process storage backend for local development and tests.

Every repository shares one `InMemoryState`. Mutations happen without awaiting in between, so on a
single event loop each conditional update is atomic just like its SQL counterpart.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from questline.jobs.models import JobRecord, JobStatus, JobType
from questline.storage.jobs_repo import JobsRepository
from questline.storage.progression_repo import AdventureQuestRecord, ChapterQuestRecord, ChapterQuestStatus, ChapterRecord, ChapterStatus, ProgressionRepository, ProgressionTransaction, QuestContext
from questline.storage.rewards_repo import AchievementDefinition, AchievementsRepository, AchievementUnlockRecord, MissionCacheEntry, MissionRepository, RenownRepository, RenownState
from questline.utils.ids import generate_id
from questline.utils.timeutil import utcnow


@dataclass
class InMemoryState:
  jobs: dict[str, JobRecord] = field(default_factory=dict)
  sessions: dict[str, str] = field(default_factory=dict)
  adventure_quests: dict[str, AdventureQuestRecord] = field(default_factory=dict)
  chapters: dict[str, ChapterRecord] = field(default_factory=dict)
  chapter_quests: dict[str, ChapterQuestRecord] = field(default_factory=dict)
  missions: dict[str, MissionCacheEntry] = field(default_factory=dict)
  renown: dict[str, RenownState] = field(default_factory=dict)
  achievements: dict[str, AchievementDefinition] = field(default_factory=dict)
  unlocks: dict[str, AchievementUnlockRecord] = field(default_factory=dict)

  def add_session(self, session_id: str, user_id: str) -> None:
    self.sessions[session_id] = user_id

  def add_adventure_quest(self, record: AdventureQuestRecord) -> None:
    self.adventure_quests[record.id] = record

  def add_achievement(self, definition: AchievementDefinition) -> None:
    self.achievements[definition.id] = definition


class InMemoryJobsRepository(JobsRepository):
  def __init__(self, state: InMemoryState) -> None:
    self._jobs = state.jobs

  async def create_job(self, record: JobRecord) -> None:
    if record.id in self._jobs:
      raise ValueError(f"Job {record.id} already exists")
    self._jobs[record.id] = replace(record)

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    return replace(record) if record is not None else None

  async def list_jobs(self, owner_id: str, *, status: JobStatus | None = None, job_type: JobType | None = None, limit: int = 50) -> list[JobRecord]:
    rows = [job for job in self._jobs.values() if job.owner_id == owner_id and (status is None or job.status == status) and (job_type is None or job.job_type == job_type)]
    rows.sort(key=lambda job: (job.created_at, job.id), reverse=True)
    return [replace(job) for job in rows[:limit]]

  async def claim_job(self, job_id: str, *, worker_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    if record is None or record.status != "queued":
      return None
    now = utcnow()
    record.status = "running"
    record.locked_by = worker_id
    record.locked_at = now
    record.started_at = record.started_at or now
    record.retry_at = None
    record.updated_at = now
    return replace(record)

  async def complete_job(self, job_id: str, *, worker_id: str, result: dict[str, Any]) -> JobRecord | None:
    record = self._jobs.get(job_id)
    if record is None or record.status != "running" or record.locked_by != worker_id:
      return None
    now = utcnow()
    record.status = "done"
    record.result = result
    record.error_message = None
    record.finished_at = now
    record.locked_at = None
    record.locked_by = None
    record.updated_at = now
    return replace(record)

  async def fail_job(self, job_id: str, *, worker_id: str, error_message: str, retry_at: datetime | None) -> JobRecord | None:
    record = self._jobs.get(job_id)
    if record is None or record.status != "running" or record.locked_by != worker_id:
      return None
    self._record_failure(record, error_message, retry_at)
    return replace(record)

  async def cancel_job(self, job_id: str, *, owner_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    if record is None or record.owner_id != owner_id or record.status != "queued":
      return None
    now = utcnow()
    record.status = "cancelled"
    record.finished_at = now
    record.updated_at = now
    return replace(record)

  async def expire_leases(self, *, locked_before: datetime, limit: int) -> list[JobRecord]:
    expired = sorted((job for job in self._jobs.values() if job.status == "running" and job.locked_at is not None and job.locked_at < locked_before), key=lambda job: job.locked_at)
    updated: list[JobRecord] = []
    for record in expired[:limit]:
      self._record_failure(record, "lease expired", None)
      updated.append(replace(record))
    return updated

  async def find_orphans(self, *, idle_before: datetime, limit: int) -> list[JobRecord]:
    def idle_since(job: JobRecord) -> datetime:
      return job.retry_at or job.updated_at

    orphans = sorted((job for job in self._jobs.values() if job.status == "queued" and job.locked_at is None and idle_since(job) < idle_before), key=idle_since)
    return [replace(job) for job in orphans[:limit]]

  async def mark_republished(self, job_id: str) -> bool:
    record = self._jobs.get(job_id)
    if record is None or record.status != "queued":
      return False
    record.updated_at = utcnow()
    record.retry_at = None
    return True

  @staticmethod
  def _record_failure(record: JobRecord, error_message: str, retry_at: datetime | None) -> None:
    now = utcnow()
    record.attempts += 1
    record.error_message = error_message
    record.locked_at = None
    record.locked_by = None
    record.updated_at = now
    if record.attempts < record.max_attempts:
      record.status = "queued"
      record.retry_at = retry_at
      record.finished_at = None
    else:
      record.status = "error"
      record.retry_at = None
      record.finished_at = now


class InMemoryProgressionTransaction(ProgressionTransaction):
  def __init__(self, state: InMemoryState) -> None:
    self._state = state

  async def get_chapter(self, chapter_id: str) -> ChapterRecord | None:
    return self._state.chapters.get(chapter_id)

  async def get_active_chapter(self, adventure_id: str) -> ChapterRecord | None:
    return next((chapter for chapter in self._state.chapters.values() if chapter.adventure_id == adventure_id and chapter.status == "active"), None)

  async def insert_chapter(self, record: ChapterRecord) -> None:
    if record.status == "active" and await self.get_active_chapter(record.adventure_id) is not None:
      raise ValueError(f"Adventure {record.adventure_id} already has an active chapter")
    if any(chapter.chapter_code == record.chapter_code for chapter in self._state.chapters.values()):
      raise ValueError(f"Chapter code {record.chapter_code} already exists")
    self._state.chapters[record.id] = record

  async def set_chapter_status(self, chapter_id: str, status: ChapterStatus) -> None:
    chapter = self._state.chapters[chapter_id]
    if status == "active":
      active = await self.get_active_chapter(chapter.adventure_id)
      if active is not None and active.id != chapter_id:
        raise ValueError(f"Adventure {chapter.adventure_id} already has an active chapter")
    self._state.chapters[chapter_id] = replace(chapter, status=status)

  async def list_adventure_quests(self, adventure_id: str, quest_ids: list[str]) -> list[AdventureQuestRecord]:
    wanted = set(quest_ids)
    return [quest for quest in self._state.adventure_quests.values() if quest.id in wanted and quest.adventure_id == adventure_id]

  async def get_chapter_quest(self, chapter_quest_id: str) -> ChapterQuestRecord | None:
    return self._state.chapter_quests.get(chapter_quest_id)

  async def list_chapter_quests(self, chapter_id: str, *, statuses: tuple[ChapterQuestStatus, ...] | None = None) -> list[ChapterQuestRecord]:
    rows = [row for row in self._state.chapter_quests.values() if row.chapter_id == chapter_id and (statuses is None or row.status in statuses)]
    return sorted(rows, key=lambda row: (row.created_at, row.id))

  async def count_chapter_quests(self, chapter_id: str) -> int:
    return sum(1 for row in self._state.chapter_quests.values() if row.chapter_id == chapter_id)

  async def reparent_chapter_quests(self, from_chapter_id: str, *, chapter_id: str, statuses: tuple[ChapterQuestStatus, ...]) -> int:
    now = utcnow()
    moving = [row for row in self._state.chapter_quests.values() if row.chapter_id == from_chapter_id and row.status in statuses]
    for row in moving:
      self._state.chapter_quests[row.id] = replace(row, chapter_id=chapter_id, updated_at=now)
    return len(moving)

  async def insert_chapter_quests(self, chapter_id: str, adventure_quest_ids: list[str], *, session_id: str | None) -> list[ChapterQuestRecord]:
    existing = {row.adventure_quest_id for row in self._state.chapter_quests.values() if row.chapter_id == chapter_id}
    inserted: list[ChapterQuestRecord] = []
    for quest_id in adventure_quest_ids:
      if quest_id in existing:
        continue
      now = utcnow()
      row = ChapterQuestRecord(id=generate_id(), chapter_id=chapter_id, adventure_quest_id=quest_id, session_id=session_id, status="todo", created_at=now, updated_at=now)
      self._state.chapter_quests[row.id] = row
      existing.add(quest_id)
      inserted.append(row)
    return inserted

  async def set_chapter_quest_status(self, chapter_quest_id: str, status: ChapterQuestStatus) -> ChapterQuestRecord | None:
    row = self._state.chapter_quests.get(chapter_quest_id)
    if row is None:
      return None
    updated = replace(row, status=status, updated_at=utcnow())
    self._state.chapter_quests[chapter_quest_id] = updated
    return updated

  async def delete_chapter_quest(self, chapter_quest_id: str) -> bool:
    return self._state.chapter_quests.pop(chapter_quest_id, None) is not None

  async def get_session_owner(self, session_id: str) -> str | None:
    return self._state.sessions.get(session_id)


class InMemoryProgressionRepository(ProgressionRepository):
  def __init__(self, state: InMemoryState) -> None:
    self._state = state
    self._adventure_locks: dict[str, asyncio.Lock] = {}

  @asynccontextmanager
  async def transaction(self, *, lock_adventure_id: str | None = None) -> AsyncIterator[ProgressionTransaction]:
    if lock_adventure_id is None:
      async with self._atomic() as tx:
        yield tx
      return

    lock = self._adventure_locks.setdefault(lock_adventure_id, asyncio.Lock())
    async with lock:
      async with self._atomic() as tx:
        yield tx

  @asynccontextmanager
  async def _atomic(self) -> AsyncIterator[ProgressionTransaction]:
    chapters = copy.copy(self._state.chapters)
    chapter_quests = copy.copy(self._state.chapter_quests)
    try:
      yield InMemoryProgressionTransaction(self._state)
    except BaseException:
      # Roll back: records are frozen, so restoring the dict snapshots is enough.
      self._state.chapters.clear()
      self._state.chapters.update(chapters)
      self._state.chapter_quests.clear()
      self._state.chapter_quests.update(chapter_quests)
      raise

  async def get_quest_context(self, chapter_quest_id: str) -> QuestContext | None:
    chapter_quest = self._state.chapter_quests.get(chapter_quest_id)
    if chapter_quest is None:
      return None
    quest = self._state.adventure_quests.get(chapter_quest.adventure_quest_id)
    chapter = self._state.chapters.get(chapter_quest.chapter_id)
    if quest is None or chapter is None:
      return None
    return QuestContext(chapter_quest=chapter_quest, quest=quest, chapter=chapter)


class InMemoryMissionRepository(MissionRepository):
  def __init__(self, state: InMemoryState) -> None:
    self._missions = state.missions

  async def get(self, chapter_quest_id: str) -> MissionCacheEntry | None:
    return self._missions.get(chapter_quest_id)

  async def upsert(self, entry: MissionCacheEntry) -> MissionCacheEntry:
    self._missions[entry.chapter_quest_id] = entry
    return entry


class InMemoryRenownRepository(RenownRepository):
  def __init__(self, state: InMemoryState) -> None:
    self._renown = state.renown

  async def get(self, user_id: str) -> RenownState | None:
    return self._renown.get(user_id)

  async def add_value(self, user_id: str, delta: int) -> RenownState:
    now = utcnow()
    current = self._renown.get(user_id)
    if current is None:
      updated = RenownState(user_id=user_id, value=delta, level=0, updated_at=now)
    else:
      updated = replace(current, value=current.value + delta, updated_at=now)
    self._renown[user_id] = updated
    return updated

  async def set_level(self, user_id: str, level: int) -> RenownState | None:
    current = self._renown.get(user_id)
    if current is None:
      return None
    updated = replace(current, level=level, updated_at=utcnow())
    self._renown[user_id] = updated
    return updated


class InMemoryAchievementsRepository(AchievementsRepository):
  def __init__(self, state: InMemoryState) -> None:
    self._state = state

  async def list_active(self, *, trigger_event: str | None) -> list[AchievementDefinition]:
    rows = [row for row in self._state.achievements.values() if row.is_active and (trigger_event is None or row.trigger_event == trigger_event)]
    return sorted(rows, key=lambda row: row.code)

  async def insert_unlock(self, record: AchievementUnlockRecord) -> bool:
    key = (record.achievement_id, record.user_id, record.scope_key)
    if any((row.achievement_id, row.user_id, row.scope_key) == key for row in self._state.unlocks.values()):
      return False
    self._state.unlocks[record.id] = record
    return True

  async def update_unlock_rewards(self, unlock_id: str, *, reward_payload: list[dict[str, Any]], reason: dict[str, Any]) -> None:
    current = self._state.unlocks.get(unlock_id)
    if current is not None:
      self._state.unlocks[unlock_id] = replace(current, reward_payload=reward_payload, reason=reason)

  async def list_unlocks(self, user_id: str) -> list[AchievementUnlockRecord]:
    rows = [row for row in self._state.unlocks.values() if row.user_id == user_id]
    return sorted(rows, key=lambda row: row.unlocked_at, reverse=True)

  async def count_completed_quests(self, user_id: str, *, session_id: str | None = None, adventure_id: str | None = None) -> int:
    count = 0
    for row in self._state.chapter_quests.values():
      if row.status != "done" or row.session_id is None or self._state.sessions.get(row.session_id) != user_id:
        continue
      if session_id is not None and row.session_id != session_id:
        continue
      if adventure_id is not None:
        chapter = self._state.chapters.get(row.chapter_id)
        if chapter is None or chapter.adventure_id != adventure_id:
          continue
      count += 1
    return count

  async def count_completed_chapters(self, user_id: str, *, session_id: str | None = None, adventure_id: str | None = None) -> int:
    return sum(
      1
      for chapter in self._state.chapters.values()
      if chapter.status == "done"
      and chapter.session_id is not None
      and self._state.sessions.get(chapter.session_id) == user_id
      and (session_id is None or chapter.session_id == session_id)
      and (adventure_id is None or chapter.adventure_id == adventure_id)
    )
