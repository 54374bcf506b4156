from __future__ import annotations

import asyncio

import pytest

from questline.core.exceptions import AdventureMismatchError, AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError, ValidationFailure
from questline.services.progression import ChapterSpec, ProgressionService


def _status_by_template(state, chapter_id: str) -> dict[str, str]:
  return {row.adventure_quest_id: row.status for row in state.chapter_quests.values() if row.chapter_id == chapter_id}


def _row_for(state, chapter_id: str, adventure_quest_id: str):
  return next(row for row in state.chapter_quests.values() if row.chapter_id == chapter_id and row.adventure_quest_id == adventure_quest_id)


@pytest.fixture
def progression(services, seed_adventure):
  return services.progression


@pytest.mark.anyio
async def test_start_chapter_with_quests_is_active(progression, state) -> None:
  result = await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="  Spring cleaning  "), ["aq-1", "aq-2", "aq-1", ""])

  chapter = result.chapter
  assert chapter.status == "active"
  assert chapter.title == "Spring cleaning"
  assert chapter.pace == "standard"
  assert chapter.chapter_code.startswith("ch-")
  assert [row.adventure_quest_id for row in result.assigned] == ["aq-1", "aq-2"]
  assert all(row.status == "todo" and row.session_id == "sess-1" for row in result.assigned)
  assert state.chapters[chapter.id].status == "active"


@pytest.mark.anyio
async def test_start_chapter_without_quests_stays_draft(progression) -> None:
  result = await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="Prologue", pace="calme", code="ch-prologue"), [])

  assert result.chapter.status == "draft"
  assert result.chapter.chapter_code == "ch-prologue"
  assert result.assigned == []


@pytest.mark.anyio
async def test_start_chapter_rejects_second_active_chapter(progression) -> None:
  await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])

  with pytest.raises(ConflictError):
    await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="Two"), ["aq-2"])


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("spec", "quest_ids"),
  [
    (ChapterSpec(title="   "), ["aq-1"]),
    (ChapterSpec(title="Fast", pace="frantic"), ["aq-1"]),  # type: ignore[arg-type]
    (ChapterSpec(title="Wrong adventure"), ["aq-other"]),
    (ChapterSpec(title="Unknown"), ["aq-404"]),
  ],
)
async def test_start_chapter_validation_writes_nothing(progression, state, spec, quest_ids) -> None:
  with pytest.raises(ValidationFailure):
    await progression.start_chapter("adv-1", "sess-1", spec, quest_ids)

  assert state.chapters == {}
  assert state.chapter_quests == {}


@pytest.mark.anyio
async def test_assign_quests_activates_draft_and_skips_duplicates(progression, state) -> None:
  draft = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="Prologue"), [])).chapter

  first = await progression.assign_quests(draft.id, ["aq-1", "aq-2"])
  second = await progression.assign_quests(draft.id, ["aq-2", "aq-3"])

  assert first.chapter.status == "active"
  assert [row.adventure_quest_id for row in first.assigned] == ["aq-1", "aq-2"]
  assert [row.adventure_quest_id for row in second.assigned] == ["aq-3"]
  assert sorted(_status_by_template(state, draft.id)) == ["aq-1", "aq-2", "aq-3"]


@pytest.mark.anyio
async def test_assign_quests_to_missing_or_finished_chapter(progression) -> None:
  with pytest.raises(NotFoundError):
    await progression.assign_quests("nope", ["aq-1"])

  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter
  await progression.transition_chapter(chapter.id, "adv-1", ChapterSpec(title="Two"), [])

  with pytest.raises(InvalidTransitionError):
    await progression.assign_quests(chapter.id, ["aq-2"])


@pytest.mark.anyio
async def test_transition_moves_unfinished_quests_and_adds_backlog(progression, state) -> None:
  start = await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1", "aq-2"])
  prev = start.chapter
  doing = _row_for(state, prev.id, "aq-2")
  await progression.update_chapter_quest_status(doing.id, "doing", user_id="user-1")
  done = _row_for(state, prev.id, "aq-1")
  await progression.update_chapter_quest_status(done.id, "done", user_id="user-1")
  await progression.assign_quests(prev.id, ["aq-3"])

  result = await progression.transition_chapter(prev.id, "adv-1", ChapterSpec(title="Two", pace="intense"), ["aq-3", "aq-1"], user_id="user-1")

  nxt = result.chapter
  assert state.chapters[prev.id].status == "done"
  assert nxt.status == "active"
  assert nxt.session_id == "sess-1"
  # Unfinished rows moved with their status; the finished row stays behind.
  assert _status_by_template(state, prev.id) == {"aq-1": "done"}
  assert state.chapter_quests[doing.id].chapter_id == nxt.id
  # aq-3 was carried over, so only aq-1 is new backlog.
  assert _status_by_template(state, nxt.id) == {"aq-2": "doing", "aq-3": "todo", "aq-1": "todo"}
  assert (result.carried_over, result.backlog_selected, result.assigned_total) == (2, 1, 3)


@pytest.mark.anyio
async def test_transition_preconditions(progression, state) -> None:
  prev = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter

  with pytest.raises(NotFoundError):
    await progression.transition_chapter("missing", "adv-1", ChapterSpec(title="Two"), [])
  with pytest.raises(AdventureMismatchError):
    await progression.transition_chapter(prev.id, "adv-2", ChapterSpec(title="Two"), [])
  with pytest.raises(ValidationFailure):
    await progression.transition_chapter(prev.id, "adv-1", ChapterSpec(title="Two"), ["aq-other"])

  assert state.chapters[prev.id].status == "active"
  assert len(state.chapters) == 1

  await progression.transition_chapter(prev.id, "adv-1", ChapterSpec(title="Two"), [])
  with pytest.raises(InvalidTransitionError):
    await progression.transition_chapter(prev.id, "adv-1", ChapterSpec(title="Three"), [])


@pytest.mark.anyio
async def test_transition_rolls_back_when_a_write_fails(progression, state) -> None:
  prev = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One", code="ch-taken"), ["aq-1"])).chapter
  row = _row_for(state, prev.id, "aq-1")

  with pytest.raises(ValueError):
    await progression.transition_chapter(prev.id, "adv-1", ChapterSpec(title="Two", code="ch-taken"), ["aq-2"])

  assert state.chapters[prev.id].status == "active"
  assert list(state.chapters) == [prev.id]
  assert state.chapter_quests[row.id].chapter_id == prev.id
  assert len(state.chapter_quests) == 1


@pytest.mark.anyio
async def test_concurrent_transitions_close_the_chapter_once(progression, state) -> None:
  prev = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter

  results = await asyncio.gather(
    progression.transition_chapter(prev.id, "adv-1", ChapterSpec(title="Two A"), []),
    progression.transition_chapter(prev.id, "adv-1", ChapterSpec(title="Two B"), []),
    return_exceptions=True,
  )

  errors = [result for result in results if isinstance(result, Exception)]
  assert len(errors) == 1
  assert isinstance(errors[0], InvalidTransitionError)
  assert [chapter.status for chapter in state.chapters.values()].count("active") == 1


@pytest.mark.anyio
async def test_quest_status_moves(progression, state) -> None:
  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter
  row = _row_for(state, chapter.id, "aq-1")

  moved = await progression.update_chapter_quest_status(row.id, "doing", user_id="user-1")
  assert moved.changed is True
  assert moved.chapter_quest.status == "doing"
  assert moved.side_effects == []

  same = await progression.update_chapter_quest_status(row.id, "doing", user_id="user-1")
  assert same.changed is False

  reopened = await progression.update_chapter_quest_status(row.id, "todo", user_id="user-1")
  assert reopened.chapter_quest.status == "todo"

  with pytest.raises(ValidationFailure):
    await progression.update_chapter_quest_status(row.id, "archived", user_id="user-1")
  with pytest.raises(NotFoundError):
    await progression.update_chapter_quest_status("missing", "done", user_id="user-1")


@pytest.mark.anyio
async def test_completing_a_quest_reports_side_effects(progression, state) -> None:
  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter
  row = _row_for(state, chapter.id, "aq-1")

  change = await progression.update_chapter_quest_status(row.id, "done", user_id="user-1")

  assert change.chapter_quest.status == "done"
  assert [report.name for report in change.side_effects] == ["achievements.quest_completed", "renown.evaluate_level"]
  assert all(report.ok for report in change.side_effects)


@pytest.mark.anyio
async def test_failing_side_effect_does_not_fail_completion(progression, services, state, monkeypatch) -> None:
  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter
  row = _row_for(state, chapter.id, "aq-1")

  async def broken(user_id: str):
    raise RuntimeError("renown store offline")

  monkeypatch.setattr(services.renown, "evaluate_level", broken)

  change = await progression.update_chapter_quest_status(row.id, "done", user_id="user-1")

  assert state.chapter_quests[row.id].status == "done"
  failed = [report for report in change.side_effects if not report.ok]
  assert [report.name for report in failed] == ["renown.evaluate_level"]
  assert "renown store offline" in failed[0].error


@pytest.mark.anyio
async def test_other_players_cannot_touch_quests(progression, state) -> None:
  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter
  row = _row_for(state, chapter.id, "aq-1")

  with pytest.raises(AuthorizationError):
    await progression.update_chapter_quest_status(row.id, "done", user_id="intruder")
  with pytest.raises(AuthorizationError):
    await progression.delete_chapter_quest(row.id, user_id="intruder")

  assert state.chapter_quests[row.id].status == "todo"


@pytest.mark.anyio
async def test_quests_of_finished_chapter_are_read_only(progression, state) -> None:
  prev = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter
  row = _row_for(state, prev.id, "aq-1")
  await progression.update_chapter_quest_status(row.id, "done", user_id="user-1")
  await progression.transition_chapter(prev.id, "adv-1", ChapterSpec(title="Two"), [])

  with pytest.raises(InvalidTransitionError):
    await progression.update_chapter_quest_status(row.id, "todo", user_id="user-1")


@pytest.mark.anyio
async def test_only_todo_quests_can_be_deleted(progression, state) -> None:
  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1", "aq-2"])).chapter
  todo = _row_for(state, chapter.id, "aq-1")
  doing = _row_for(state, chapter.id, "aq-2")
  await progression.update_chapter_quest_status(doing.id, "doing", user_id="user-1")

  await progression.delete_chapter_quest(todo.id, user_id="user-1")
  assert todo.id not in state.chapter_quests

  with pytest.raises(InvalidTransitionError):
    await progression.delete_chapter_quest(doing.id, user_id="user-1")
  with pytest.raises(NotFoundError):
    await progression.delete_chapter_quest(todo.id)


@pytest.mark.anyio
async def test_transition_from_a_clean_chapter_opens_an_empty_active_one(progression, state) -> None:
  prev = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter
  await progression.update_chapter_quest_status(_row_for(state, prev.id, "aq-1").id, "done", user_id="user-1")

  result = await progression.transition_chapter(prev.id, "adv-1", ChapterSpec(title="Two"), [])

  assert result.chapter.status == "active"
  assert (result.carried_over, result.backlog_selected, result.assigned_total) == (0, 0, 0)
  assert _status_by_template(state, result.chapter.id) == {}
  assert state.chapters[prev.id].status == "done"


@pytest.mark.anyio
async def test_other_players_cannot_start_fill_or_close_chapters(progression, state) -> None:
  with pytest.raises(AuthorizationError):
    await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="Hijack"), ["aq-1"], user_id="mallory")
  assert state.chapters == {}

  draft = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="Prologue"), [], user_id="user-1")).chapter
  with pytest.raises(AuthorizationError):
    await progression.assign_quests(draft.id, ["aq-1"], user_id="mallory")
  assert _status_by_template(state, draft.id) == {}

  active = (await progression.assign_quests(draft.id, ["aq-1"], user_id="user-1")).chapter
  with pytest.raises(AuthorizationError):
    await progression.transition_chapter(active.id, "adv-1", ChapterSpec(title="Hijack"), [], user_id="mallory")

  assert state.chapters[active.id].status == "active"
  assert len(state.chapters) == 1


@pytest.mark.anyio
async def test_authorize_refs_checks_every_row(progression, state) -> None:
  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter
  row = _row_for(state, chapter.id, "aq-1")

  await progression.authorize_refs("user-1", session_id="sess-1", adventure_id="adv-1", chapter_id=chapter.id, chapter_quest_id=row.id)
  for refs in ({"session_id": "sess-1"}, {"adventure_id": "adv-1"}, {"chapter_id": chapter.id}, {"chapter_quest_id": row.id}):
    with pytest.raises(AuthorizationError):
      await progression.authorize_refs("mallory", **refs)
  with pytest.raises(NotFoundError):
    await progression.authorize_refs("user-1", chapter_quest_id="fake-1")
  with pytest.raises(NotFoundError):
    await progression.authorize_refs("user-1", chapter_id="fake-1")


@pytest.mark.anyio
async def test_quest_writes_wait_for_the_adventure_lock(progression, services, state) -> None:
  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter
  row = _row_for(state, chapter.id, "aq-1")
  release = asyncio.Event()

  async def hold_adventure_lock() -> None:
    async with services.repositories.progression.transaction(lock_adventure_id="adv-1"):
      await release.wait()

  holder = asyncio.create_task(hold_adventure_lock())
  await asyncio.sleep(0)
  update = asyncio.create_task(progression.update_chapter_quest_status(row.id, "doing", user_id="user-1"))
  delete = asyncio.create_task(progression.delete_chapter_quest(row.id, user_id="user-1"))
  for _ in range(5):
    await asyncio.sleep(0)

  assert not update.done()
  assert not delete.done()
  assert state.chapter_quests[row.id].status == "todo"

  release.set()
  await holder
  change = await update
  assert change.chapter_quest.status == "doing"
  with pytest.raises(InvalidTransitionError):
    await delete


@pytest.mark.anyio
async def test_reparent_moves_only_unfinished_rows(progression, services, state) -> None:
  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1", "aq-2", "aq-3"])).chapter
  await progression.update_chapter_quest_status(_row_for(state, chapter.id, "aq-2").id, "doing", user_id="user-1")
  await progression.update_chapter_quest_status(_row_for(state, chapter.id, "aq-3").id, "done", user_id="user-1")

  async with services.repositories.progression.transaction(lock_adventure_id="adv-1") as tx:
    moved = await tx.reparent_chapter_quests(chapter.id, chapter_id="ch-next", statuses=("todo", "doing"))

  assert moved == 2
  assert _status_by_template(state, chapter.id) == {"aq-3": "done"}
  assert _status_by_template(state, "ch-next") == {"aq-1": "todo", "aq-2": "doing"}


@pytest.mark.anyio
async def test_completion_without_evaluators_has_no_side_effects(repositories, seed_adventure, state) -> None:
  progression = ProgressionService(repositories.progression)
  chapter = (await progression.start_chapter("adv-1", "sess-1", ChapterSpec(title="One"), ["aq-1"])).chapter

  change = await progression.update_chapter_quest_status(_row_for(state, chapter.id, "aq-1").id, "done", user_id="user-1")

  assert change.changed is True
  assert change.side_effects == []
