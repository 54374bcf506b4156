"""initial questline schema: jobs, progression, missions, renown, achievements

Revision ID: 4f1c2a9e7b30
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "4f1c2a9e7b30"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
  """Create every table the engine owns."""
  op.create_table(
    "ai_jobs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("owner_id", sa.String(), nullable=False),
    sa.Column("job_type", sa.String(), nullable=False),
    sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'queued'")),
    sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("50")),
    sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
    sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("locked_by", sa.String(), nullable=True),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("retry_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("session_id", sa.String(), nullable=True),
    sa.Column("chapter_id", sa.String(), nullable=True),
    sa.Column("adventure_id", sa.String(), nullable=True),
    sa.Column("chapter_quest_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.CheckConstraint("status IN ('queued', 'running', 'done', 'error', 'cancelled')", name="ck_ai_jobs_status"),
    sa.CheckConstraint("priority BETWEEN 0 AND 100", name="ck_ai_jobs_priority"),
    sa.CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="ck_ai_jobs_attempts"),
    sa.PrimaryKeyConstraint("id"),
  )
  for column in ("owner_id", "job_type", "session_id", "chapter_id", "adventure_id", "chapter_quest_id"):
    op.create_index(f"ix_ai_jobs_{column}", "ai_jobs", [column], unique=False)
  op.create_index("ix_ai_jobs_owner_created", "ai_jobs", ["owner_id", "created_at"], unique=False)
  op.create_index("ix_ai_jobs_running_locked_at", "ai_jobs", ["locked_at"], unique=False, postgresql_where=sa.text("status = 'running'"))
  op.create_index("ix_ai_jobs_queued_updated_at", "ai_jobs", ["updated_at"], unique=False, postgresql_where=sa.text("status = 'queued'"))

  op.create_table(
    "game_sessions",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("adventure_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_game_sessions_user_id", "game_sessions", ["user_id"], unique=False)
  op.create_index("ix_game_sessions_adventure_id", "game_sessions", ["adventure_id"], unique=False)

  op.create_table(
    "adventure_quests",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("adventure_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("difficulty", sa.Integer(), nullable=False, server_default=sa.text("1")),
    sa.Column("estimate_min", sa.Integer(), nullable=True),
    sa.Column("room_code", sa.String(), nullable=True),
    sa.CheckConstraint("difficulty BETWEEN 1 AND 3", name="ck_adventure_quests_difficulty"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_adventure_quests_adventure_id", "adventure_quests", ["adventure_id"], unique=False)

  op.create_table(
    "chapters",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("adventure_id", sa.String(), nullable=False),
    sa.Column("session_id", sa.String(), nullable=True),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("pace", sa.String(), nullable=False, server_default=sa.text("'standard'")),
    sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'draft'")),
    sa.Column("context_text", sa.Text(), nullable=True),
    sa.Column("chapter_code", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.CheckConstraint("status IN ('draft', 'active', 'done')", name="ck_chapters_status"),
    sa.CheckConstraint("pace IN ('calme', 'standard', 'intense')", name="ck_chapters_pace"),
    sa.ForeignKeyConstraint(["session_id"], ["game_sessions.id"], ondelete="SET NULL"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("chapter_code"),
  )
  op.create_index("ix_chapters_adventure_id", "chapters", ["adventure_id"], unique=False)
  op.create_index("ix_chapters_session_id", "chapters", ["session_id"], unique=False)
  op.create_index("ux_chapters_active_per_adventure", "chapters", ["adventure_id"], unique=True, postgresql_where=sa.text("status = 'active'"))

  op.create_table(
    "chapter_quests",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("chapter_id", sa.String(), nullable=False),
    sa.Column("adventure_quest_id", sa.String(), nullable=False),
    sa.Column("session_id", sa.String(), nullable=True),
    sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'todo'")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.CheckConstraint("status IN ('todo', 'doing', 'done')", name="ck_chapter_quests_status"),
    sa.ForeignKeyConstraint(["chapter_id"], ["chapters.id"], ondelete="CASCADE"),
    sa.ForeignKeyConstraint(["adventure_quest_id"], ["adventure_quests.id"], ondelete="CASCADE"),
    sa.ForeignKeyConstraint(["session_id"], ["game_sessions.id"], ondelete="SET NULL"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("chapter_id", "adventure_quest_id", name="ux_chapter_quests_chapter_quest"),
  )
  op.create_index("ix_chapter_quests_chapter_id", "chapter_quests", ["chapter_id"], unique=False)
  op.create_index("ix_chapter_quests_adventure_quest_id", "chapter_quests", ["adventure_quest_id"], unique=False)
  op.create_index("ix_chapter_quests_session_id", "chapter_quests", ["session_id"], unique=False)

  op.create_table(
    "quest_mission_orders",
    sa.Column("chapter_quest_id", sa.String(), nullable=False),
    sa.Column("mission_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("mission_md", sa.Text(), nullable=False),
    sa.Column("model", sa.String(), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.ForeignKeyConstraint(["chapter_quest_id"], ["chapter_quests.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("chapter_quest_id"),
  )

  op.create_table(
    "player_renown",
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("value", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("level", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.CheckConstraint("value >= 0", name="ck_player_renown_value"),
    sa.PrimaryKeyConstraint("user_id"),
  )

  op.create_table(
    "achievement_catalog",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("code", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
    sa.Column("scope", sa.String(), nullable=False, server_default=sa.text("'user'")),
    sa.Column("trigger_event", sa.String(), nullable=True),
    sa.Column("conditions", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("rewards", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("code"),
  )
  op.create_index("ix_achievement_catalog_trigger_event", "achievement_catalog", ["trigger_event"], unique=False)

  op.create_table(
    "achievement_unlocks",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("achievement_id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("scope_key", sa.String(), nullable=False),
    sa.Column("session_id", sa.String(), nullable=True),
    sa.Column("adventure_id", sa.String(), nullable=True),
    sa.Column("chapter_id", sa.String(), nullable=True),
    sa.Column("chapter_quest_id", sa.String(), nullable=True),
    sa.Column("reason", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("reward_payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.ForeignKeyConstraint(["achievement_id"], ["achievement_catalog.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("achievement_id", "user_id", "scope_key", name="ux_achievement_unlocks_scope"),
  )
  op.create_index("ix_achievement_unlocks_achievement_id", "achievement_unlocks", ["achievement_id"], unique=False)
  op.create_index("ix_achievement_unlocks_user_id", "achievement_unlocks", ["user_id"], unique=False)


def downgrade() -> None:
  """Drop the engine's tables in dependency order."""
  for table in ("achievement_unlocks", "achievement_catalog", "player_renown", "quest_mission_orders", "chapter_quests", "chapters", "adventure_quests", "game_sessions", "ai_jobs"):
    op.drop_table(table)
