"""Storage interfaces for adventures, chapters and chapter quests."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol

ChapterStatus = Literal["draft", "active", "done"]
ChapterPace = Literal["calme", "standard", "intense"]
ChapterQuestStatus = Literal["todo", "doing", "done"]


@dataclass(frozen=True)
class AdventureQuestRecord:
  """Reusable quest template; read-only for the progression engine."""

  id: str
  adventure_id: str
  title: str
  description: str | None = None
  difficulty: int = 1
  estimate_min: int | None = None
  room_code: str | None = None


@dataclass(frozen=True)
class ChapterRecord:
  id: str
  adventure_id: str
  session_id: str | None
  title: str
  pace: ChapterPace
  status: ChapterStatus
  context_text: str | None
  chapter_code: str
  created_at: datetime


@dataclass(frozen=True)
class ChapterQuestRecord:
  id: str
  chapter_id: str
  adventure_quest_id: str
  session_id: str | None
  status: ChapterQuestStatus
  created_at: datetime
  updated_at: datetime


@dataclass(frozen=True)
class QuestContext:
  """Everything content generation needs to know about one assigned quest."""

  chapter_quest: ChapterQuestRecord
  quest: AdventureQuestRecord
  chapter: ChapterRecord


class ProgressionTransaction(Protocol):
  """Operations available inside one progression transaction."""

  async def get_chapter(self, chapter_id: str) -> ChapterRecord | None: ...

  async def get_active_chapter(self, adventure_id: str) -> ChapterRecord | None: ...

  async def insert_chapter(self, record: ChapterRecord) -> None: ...

  async def set_chapter_status(self, chapter_id: str, status: ChapterStatus) -> None: ...

  async def list_adventure_quests(self, adventure_id: str, quest_ids: list[str]) -> list[AdventureQuestRecord]:
    """Return the templates among `quest_ids` that belong to `adventure_id`."""

  async def get_chapter_quest(self, chapter_quest_id: str) -> ChapterQuestRecord | None: ...

  async def list_chapter_quests(self, chapter_id: str, *, statuses: tuple[ChapterQuestStatus, ...] | None = None) -> list[ChapterQuestRecord]: ...

  async def count_chapter_quests(self, chapter_id: str) -> int: ...

  async def reparent_chapter_quests(self, from_chapter_id: str, *, chapter_id: str, statuses: tuple[ChapterQuestStatus, ...]) -> int:
    """Move the rows of `from_chapter_id` in `statuses` to another chapter, keeping their status and history.

    Returns the number of rows actually moved.
    """

  async def insert_chapter_quests(self, chapter_id: str, adventure_quest_ids: list[str], *, session_id: str | None) -> list[ChapterQuestRecord]:
    """Insert `todo` rows, skipping pairs that already exist; returns only the inserted rows."""

  async def set_chapter_quest_status(self, chapter_quest_id: str, status: ChapterQuestStatus) -> ChapterQuestRecord | None: ...

  async def delete_chapter_quest(self, chapter_quest_id: str) -> bool: ...

  async def get_session_owner(self, session_id: str) -> str | None:
    """Return the user owning a game session."""


class ProgressionRepository(Protocol):
  """Unit-of-work factory for progression writes."""

  def transaction(self, *, lock_adventure_id: str | None = None) -> AbstractAsyncContextManager[ProgressionTransaction]:
    """Open an atomic unit of work.

    With `lock_adventure_id`, the transaction also serializes against every other transaction
    locking the same adventure until it commits or rolls back.
    """

  async def get_quest_context(self, chapter_quest_id: str) -> QuestContext | None:
    """Load a chapter quest with its template and chapter, outside any transaction."""
