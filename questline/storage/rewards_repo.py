"""Storage interfaces for missions, renown and achievements."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass(frozen=True)
class MissionCacheEntry:
  chapter_quest_id: str
  mission_json: dict[str, Any]
  mission_md: str
  model: str
  updated_at: datetime


@dataclass(frozen=True)
class RenownState:
  user_id: str
  value: int
  level: int
  updated_at: datetime


@dataclass(frozen=True)
class AchievementDefinition:
  """One catalog row: a condition tree plus the rewards granted on unlock."""

  id: str
  code: str
  name: str
  scope: str
  conditions: dict[str, Any]
  rewards: list[dict[str, Any]] = field(default_factory=list)
  description: str = ""
  trigger_event: str | None = None
  is_active: bool = True


@dataclass(frozen=True)
class AchievementUnlockRecord:
  id: str
  achievement_id: str
  user_id: str
  scope_key: str
  unlocked_at: datetime
  session_id: str | None = None
  adventure_id: str | None = None
  chapter_id: str | None = None
  chapter_quest_id: str | None = None
  reason: dict[str, Any] | None = None
  reward_payload: list[dict[str, Any]] | None = None


class MissionRepository(Protocol):
  async def get(self, chapter_quest_id: str) -> MissionCacheEntry | None: ...

  async def upsert(self, entry: MissionCacheEntry) -> MissionCacheEntry:
    """Insert or overwrite the whole row keyed by `chapter_quest_id`; last writer wins."""


class RenownRepository(Protocol):
  async def get(self, user_id: str) -> RenownState | None: ...

  async def add_value(self, user_id: str, delta: int) -> RenownState:
    """Atomically add `delta` to the stored value, creating the row at zero when absent."""

  async def set_level(self, user_id: str, level: int) -> RenownState | None: ...


class AchievementsRepository(Protocol):
  async def list_active(self, *, trigger_event: str | None) -> list[AchievementDefinition]:
    """Active catalog rows for an event; every active row when `trigger_event` is None."""

  async def insert_unlock(self, record: AchievementUnlockRecord) -> bool:
    """Insert an unlock; `False` when the `(achievement, user, scope_key)` triple already exists."""

  async def update_unlock_rewards(self, unlock_id: str, *, reward_payload: list[dict[str, Any]], reason: dict[str, Any]) -> None: ...

  async def list_unlocks(self, user_id: str) -> list[AchievementUnlockRecord]: ...

  async def count_completed_quests(self, user_id: str, *, session_id: str | None = None, adventure_id: str | None = None) -> int:
    """Count `done` chapter quests in the player's sessions, optionally narrowed."""

  async def count_completed_chapters(self, user_id: str, *, session_id: str | None = None, adventure_id: str | None = None) -> int: ...
