from __future__ import annotations

from dataclasses import replace

import pytest

from questline.services.achievements import AchievementContext, compute_scope_key, renown_for_difficulty
from questline.services.progression import ChapterSpec
from questline.storage.progression_repo import ChapterQuestRecord
from questline.storage.rewards_repo import AchievementDefinition, RenownState
from questline.utils.timeutil import utcnow

FIRST_QUEST = AchievementDefinition(
  id="ach-first",
  code="first_quest",
  name="First steps",
  scope="chapter_quest",
  trigger_event="quest_completed",
  conditions={"operator": "AND", "rules": [{"type": "quest_completed_count", "scope": "global", "value": 1}]},
  rewards=[{"type": "renown_by_difficulty", "map": {"1": 5, "2": 10, "3": 20}}, {"type": "badge", "code": "broom"}],
)


def _complete_quests(state, count: int, *, session_id: str = "sess-1") -> None:
  now = utcnow()
  for index in range(count):
    row_id = f"done-{session_id}-{index}"
    state.chapter_quests[row_id] = ChapterQuestRecord(id=row_id, chapter_id="ch-x", adventure_quest_id=f"aq-{index}", session_id=session_id, status="done", created_at=now, updated_at=now)


def test_scope_key_prefers_scoped_id_and_falls_back_to_user() -> None:
  ctx = AchievementContext(user_id="user-1", session_id="sess-1", chapter_quest_id="cq-1")
  assert compute_scope_key("session", ctx) == "session:sess-1"
  assert compute_scope_key("chapter_quest", ctx) == "chapter_quest:cq-1"
  assert compute_scope_key("adventure", ctx) == "user:user-1"
  assert compute_scope_key("global", ctx) == "user:user-1"


def test_renown_by_difficulty_map() -> None:
  reward_map = {"1": 5, "2": 10, "3": 20}
  assert renown_for_difficulty(reward_map, None) == 5
  assert renown_for_difficulty(reward_map, 2) == 10
  assert renown_for_difficulty(reward_map, 5) == 20
  assert renown_for_difficulty({"default": 7}, 3) == 7


@pytest.mark.anyio
async def test_unlock_applies_rewards_once(services, state, seed_adventure) -> None:
  state.add_achievement(FIRST_QUEST)
  _complete_quests(state, 1)
  ctx = AchievementContext(user_id="user-1", session_id="sess-1", chapter_quest_id="cq-1", difficulty=2)

  unlocked = await services.achievements.evaluate("quest_completed", ctx)
  again = await services.achievements.evaluate("quest_completed", ctx)

  assert [unlock.scope_key for unlock in unlocked] == ["chapter_quest:cq-1"]
  assert unlocked[0].reward_payload == [{"type": "renown", "value": 10}, {"type": "badge", "code": "broom"}]
  assert again == []
  assert state.renown["user-1"].value == 10
  assert len(state.unlocks) == 1


@pytest.mark.anyio
async def test_unmet_conditions_do_not_unlock(services, state, seed_adventure) -> None:
  state.add_achievement(FIRST_QUEST)

  unlocked = await services.achievements.evaluate("quest_completed", AchievementContext(user_id="user-1", chapter_quest_id="cq-1"))

  assert unlocked == []
  assert state.unlocks == {}


@pytest.mark.anyio
async def test_other_events_and_inactive_rows_are_ignored(services, state, seed_adventure) -> None:
  state.add_achievement(replace(FIRST_QUEST, id="ach-chapter", code="chapter", trigger_event="chapter_completed"))
  state.add_achievement(replace(FIRST_QUEST, id="ach-off", code="off", is_active=False))
  _complete_quests(state, 1)

  assert await services.achievements.evaluate("quest_completed", AchievementContext(user_id="user-1", chapter_quest_id="cq-1")) == []

  refreshed = await services.achievements.evaluate("manual_refresh", AchievementContext(user_id="user-1", chapter_quest_id="cq-1"))
  assert [unlock.achievement_id for unlock in refreshed] == ["ach-chapter"]


@pytest.mark.anyio
async def test_nested_groups_and_session_scope(services, state, seed_adventure) -> None:
  definition = AchievementDefinition(
    id="ach-tidy",
    code="tidy_session",
    name="Tidy session",
    scope="session",
    trigger_event="quest_completed",
    conditions={
      "operator": "AND",
      "rules": [
        {"type": "quest_completed_count", "scope": "session", "value": 3},
        {"operator": "OR", "rules": [{"type": "renown_level_reached", "value": 5}, {"type": "chapter_completed_count", "value": 0}]},
      ],
    },
    rewards=[{"type": "renown", "value": 25}],
  )
  state.add_achievement(definition)
  _complete_quests(state, 2)
  ctx = AchievementContext(user_id="user-1", session_id="sess-1")

  assert await services.achievements.evaluate("quest_completed", ctx) == []

  _complete_quests(state, 3)
  unlocked = await services.achievements.evaluate("quest_completed", ctx)

  assert [unlock.scope_key for unlock in unlocked] == ["session:sess-1"]
  assert unlocked[0].reason["operator"] == "AND"
  assert state.renown["user-1"].value == 25


@pytest.mark.anyio
async def test_broken_rule_does_not_stop_the_catalog(services, state, seed_adventure) -> None:
  broken = AchievementDefinition(id="ach-broken", code="a_broken", name="Broken", scope="global", trigger_event="quest_completed", conditions={"operator": "AND", "rules": [{"type": "quest_completed_count", "value": "many"}]})
  state.add_achievement(broken)
  state.add_achievement(FIRST_QUEST)
  _complete_quests(state, 1)

  unlocked = await services.achievements.evaluate("quest_completed", AchievementContext(user_id="user-1", chapter_quest_id="cq-1"))

  assert [unlock.achievement_id for unlock in unlocked] == ["ach-first"]


@pytest.mark.anyio
async def test_invalid_condition_shapes_never_unlock(services, state, seed_adventure) -> None:
  state.add_achievement(AchievementDefinition(id="ach-empty", code="empty", name="Empty", scope="global", trigger_event="quest_completed", conditions={"operator": "AND", "rules": []}))
  state.add_achievement(AchievementDefinition(id="ach-flat", code="flat", name="Flat", scope="global", trigger_event="quest_completed", conditions={"type": "quest_completed_count", "value": 0}))
  state.add_achievement(AchievementDefinition(id="ach-odd", code="odd", name="Odd", scope="global", trigger_event="quest_completed", conditions={"operator": "AND", "rules": [{"type": "moon_phase"}]}))

  assert await services.achievements.evaluate("quest_completed", AchievementContext(user_id="user-1")) == []


@pytest.mark.anyio
async def test_reward_crossing_a_level_updates_it(services, state, seed_adventure) -> None:
  state.add_achievement(FIRST_QUEST)
  state.renown["user-1"] = RenownState(user_id="user-1", value=95, level=0, updated_at=utcnow())
  chapter = (await services.progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-2"])).chapter
  row = next(row for row in state.chapter_quests.values() if row.chapter_id == chapter.id)

  change = await services.progression.update_chapter_quest_status(row.id, "done", user_id="user-1")

  assert all(report.ok for report in change.side_effects)
  assert state.renown["user-1"].value == 105
  assert state.renown["user-1"].level == 1
  unlock = next(iter(state.unlocks.values()))
  assert unlock.scope_key == f"chapter_quest:{row.id}"
  assert unlock.reward_payload[0] == {"type": "renown", "value": 10}
