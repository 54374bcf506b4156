from __future__ import annotations

import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from questline.core.database import Base


class GameSession(Base):
  """A player's run through one adventure; links progression rows back to a user."""

  __tablename__ = "game_sessions"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  adventure_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AdventureQuest(Base):
  __tablename__ = "adventure_quests"
  __table_args__ = (CheckConstraint("difficulty BETWEEN 1 AND 3", name="ck_adventure_quests_difficulty"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  adventure_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  difficulty: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
  estimate_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
  room_code: Mapped[str | None] = mapped_column(String, nullable=True)


class Chapter(Base):
  __tablename__ = "chapters"
  __table_args__ = (
    CheckConstraint("status IN ('draft', 'active', 'done')", name="ck_chapters_status"),
    CheckConstraint("pace IN ('calme', 'standard', 'intense')", name="ck_chapters_pace"),
    # At most one active chapter per adventure.
    Index("ux_chapters_active_per_adventure", "adventure_id", unique=True, postgresql_where=text("status = 'active'")),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  adventure_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  session_id: Mapped[str | None] = mapped_column(ForeignKey("game_sessions.id", ondelete="SET NULL"), nullable=True, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  pace: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'standard'"))
  status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'draft'"))
  context_text: Mapped[str | None] = mapped_column(Text, nullable=True)
  chapter_code: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ChapterQuest(Base):
  __tablename__ = "chapter_quests"
  __table_args__ = (
    UniqueConstraint("chapter_id", "adventure_quest_id", name="ux_chapter_quests_chapter_quest"),
    CheckConstraint("status IN ('todo', 'doing', 'done')", name="ck_chapter_quests_status"),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  chapter_id: Mapped[str] = mapped_column(ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)
  adventure_quest_id: Mapped[str] = mapped_column(ForeignKey("adventure_quests.id", ondelete="CASCADE"), nullable=False, index=True)
  session_id: Mapped[str | None] = mapped_column(ForeignKey("game_sessions.id", ondelete="SET NULL"), nullable=True, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'todo'"))
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class QuestMissionOrder(Base):
  __tablename__ = "quest_mission_orders"

  chapter_quest_id: Mapped[str] = mapped_column(ForeignKey("chapter_quests.id", ondelete="CASCADE"), primary_key=True)
  mission_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  mission_md: Mapped[str] = mapped_column(Text, nullable=False)
  model: Mapped[str] = mapped_column(String, nullable=False)
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PlayerRenown(Base):
  __tablename__ = "player_renown"
  __table_args__ = (CheckConstraint("value >= 0", name="ck_player_renown_value"),)

  user_id: Mapped[str] = mapped_column(String, primary_key=True)
  value: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  level: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AchievementCatalogEntry(Base):
  __tablename__ = "achievement_catalog"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  code: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
  scope: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'user'"))
  trigger_event: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  conditions: Mapped[dict] = mapped_column(JSONB, nullable=False)
  rewards: Mapped[list] = mapped_column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
  is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))


class AchievementUnlock(Base):
  __tablename__ = "achievement_unlocks"
  __table_args__ = (UniqueConstraint("achievement_id", "user_id", "scope_key", name="ux_achievement_unlocks_scope"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  achievement_id: Mapped[str] = mapped_column(ForeignKey("achievement_catalog.id", ondelete="CASCADE"), nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  scope_key: Mapped[str] = mapped_column(String, nullable=False)
  session_id: Mapped[str | None] = mapped_column(String, nullable=True)
  adventure_id: Mapped[str | None] = mapped_column(String, nullable=True)
  chapter_id: Mapped[str | None] = mapped_column(String, nullable=True)
  chapter_quest_id: Mapped[str | None] = mapped_column(String, nullable=True)
  reason: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  reward_payload: Mapped[list | None] = mapped_column(JSONB, nullable=True)
  unlocked_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
