from __future__ import annotations

import pytest

from questline.storage.rewards_repo import RenownState
from questline.utils.timeutil import utcnow

USER = {"X-Questline-User": "user-1"}
INTRUDER = {"X-Questline-User": "intruder"}


async def _start(client, quest_ids: list[str], **chapter) -> dict:
  body = {"adventure_id": "adv-1", "session_id": "sess-1", "chapter": {"title": "Spring cleaning", **chapter}, "adventure_quest_ids": quest_ids}
  response = await client.post("/v1/chapters", json=body, headers=USER)
  assert response.status_code == 201, response.text
  return response.json()


@pytest.mark.anyio
async def test_start_and_assign_chapter(async_client, seed_adventure) -> None:
  started = await _start(async_client, [], pace="calme")
  assert started["chapter"]["status"] == "draft"
  assert started["assigned"] == []

  chapter_id = started["chapter"]["id"]
  assigned = await async_client.post(f"/v1/chapters/{chapter_id}/quests", json={"adventure_quest_ids": ["aq-1", "aq-2"]}, headers=USER)

  assert assigned.status_code == 200
  body = assigned.json()
  assert body["chapter"]["status"] == "active"
  assert [row["adventure_quest_id"] for row in body["assigned"]] == ["aq-1", "aq-2"]


@pytest.mark.anyio
async def test_second_active_chapter_conflicts(async_client, seed_adventure) -> None:
  await _start(async_client, ["aq-1"])

  response = await async_client.post("/v1/chapters", json={"adventure_id": "adv-1", "chapter": {"title": "Again"}, "adventure_quest_ids": ["aq-2"]}, headers=USER)

  assert response.status_code == 409
  assert response.json()["code"] == "conflict"


@pytest.mark.anyio
async def test_unknown_quest_templates_are_rejected(async_client, seed_adventure) -> None:
  response = await async_client.post("/v1/chapters", json={"adventure_id": "adv-1", "chapter": {"title": "One"}, "adventure_quest_ids": ["aq-other"]}, headers=USER)

  assert response.status_code == 400
  assert response.json()["code"] == "validation_error"


@pytest.mark.anyio
async def test_quest_lifecycle_and_transition(async_client, seed_adventure, state) -> None:
  started = await _start(async_client, ["aq-1", "aq-2"])
  prev_id = started["chapter"]["id"]
  first, second = (row["id"] for row in started["assigned"])

  done = await async_client.patch(f"/v1/chapter-quests/{first}", json={"status": "done"}, headers=USER)
  assert done.status_code == 200
  assert done.json()["changed"] is True
  assert [effect["name"] for effect in done.json()["side_effects"]] == ["achievements.quest_completed", "renown.evaluate_level"]

  doing = await async_client.patch(f"/v1/chapter-quests/{second}", json={"status": "doing"}, headers=USER)
  assert doing.json()["side_effects"] == []

  transition = await async_client.post(
    "/v1/chapters/transition",
    json={"prev_chapter_id": prev_id, "adventure_id": "adv-1", "next_chapter": {"title": "Summer", "pace": "intense"}, "backlog_ids": ["aq-3"]},
    headers=USER,
  )

  assert transition.status_code == 200
  body = transition.json()
  assert body["chapter"]["status"] == "active"
  assert body["chapter"]["pace"] == "intense"
  assert (body["carried_over"], body["backlog_selected"], body["assigned_total"]) == (1, 1, 2)
  assert state.chapters[prev_id].status == "done"
  assert state.chapter_quests[second].chapter_id == body["chapter"]["id"]
  assert state.chapter_quests[second].status == "doing"

  closed = await async_client.post(
    "/v1/chapters/transition",
    json={"prev_chapter_id": prev_id, "adventure_id": "adv-1", "next_chapter": {"title": "Autumn"}},
    headers=USER,
  )
  assert closed.status_code == 409
  assert closed.json()["code"] == "invalid_transition"


@pytest.mark.anyio
async def test_transition_to_wrong_adventure(async_client, seed_adventure) -> None:
  prev_id = (await _start(async_client, ["aq-1"]))["chapter"]["id"]

  response = await async_client.post("/v1/chapters/transition", json={"prev_chapter_id": prev_id, "adventure_id": "adv-2", "next_chapter": {"title": "Two"}}, headers=USER)

  assert response.status_code == 409
  assert response.json()["code"] == "adventure_mismatch"


@pytest.mark.anyio
async def test_quest_updates_enforce_ownership_and_status(async_client, seed_adventure, state) -> None:
  quest_id = (await _start(async_client, ["aq-1"]))["assigned"][0]["id"]

  assert (await async_client.patch(f"/v1/chapter-quests/{quest_id}", json={"status": "done"}, headers=INTRUDER)).status_code == 403
  assert (await async_client.patch(f"/v1/chapter-quests/{quest_id}", json={"status": "archived"}, headers=USER)).status_code == 422
  assert (await async_client.patch("/v1/chapter-quests/missing", json={"status": "done"}, headers=USER)).status_code == 404
  assert state.chapter_quests[quest_id].status == "todo"


@pytest.mark.anyio
async def test_delete_only_todo_quests(async_client, seed_adventure, state) -> None:
  started = await _start(async_client, ["aq-1", "aq-2"])
  todo, doing = (row["id"] for row in started["assigned"])
  await async_client.patch(f"/v1/chapter-quests/{doing}", json={"status": "doing"}, headers=USER)

  assert (await async_client.delete(f"/v1/chapter-quests/{doing}", headers=USER)).status_code == 409
  assert (await async_client.delete(f"/v1/chapter-quests/{todo}", headers=INTRUDER)).status_code == 403

  deleted = await async_client.delete(f"/v1/chapter-quests/{todo}", headers=USER)
  assert deleted.status_code == 204
  assert todo not in state.chapter_quests


@pytest.mark.anyio
async def test_mission_endpoints(async_client, seed_adventure, generator) -> None:
  quest_id = (await _start(async_client, ["aq-1"]))["assigned"][0]["id"]

  assert (await async_client.get(f"/v1/missions/{quest_id}", headers=USER)).status_code == 404

  generated = await async_client.post("/v1/missions", json={"chapter_quest_id": quest_id}, headers=USER)
  assert generated.status_code == 200
  assert generated.json()["cached"] is False
  assert generated.json()["markdown"].startswith("# mission_order")

  cached = await async_client.get(f"/v1/missions/{quest_id}", headers=USER)
  assert cached.json()["cached"] is True

  forced = await async_client.post("/v1/missions", json={"chapter_quest_id": quest_id, "force": True}, headers=USER)
  assert forced.json()["cached"] is False
  assert len(generator.calls) == 2

  assert (await async_client.post("/v1/missions", json={"chapter_quest_id": "missing"}, headers=USER)).status_code == 404


@pytest.mark.anyio
async def test_generation_failure_is_bad_gateway(async_client, seed_adventure, generator) -> None:
  quest_id = (await _start(async_client, ["aq-1"]))["assigned"][0]["id"]
  generator.fail = True

  response = await async_client.post("/v1/missions", json={"chapter_quest_id": quest_id}, headers=USER)

  assert response.status_code == 502
  assert response.json()["code"] == "content_generation_failed"


@pytest.mark.anyio
async def test_renown_endpoints(async_client, state) -> None:
  empty = await async_client.get("/v1/renown", headers=USER)
  assert empty.json() == {"user_id": "user-1", "value": 0, "level": 0, "updated_at": None}

  state.renown["user-1"] = RenownState(user_id="user-1", value=320, level=1, updated_at=utcnow())

  evaluated = await async_client.post("/v1/renown/evaluate", headers=USER)
  assert evaluated.json() == {"updated": True, "prev": {"value": 320, "level": 1}, "next": {"value": 320, "level": 3}}

  current = await async_client.get("/v1/renown", headers=USER)
  assert current.json()["level"] == 3


@pytest.mark.anyio
async def test_other_players_cannot_drive_a_chapter(async_client, seed_adventure, state) -> None:
  started = await _start(async_client, ["aq-1"])
  chapter_id = started["chapter"]["id"]
  quest_id = started["assigned"][0]["id"]

  hijack = await async_client.post("/v1/chapters/transition", json={"prev_chapter_id": chapter_id, "adventure_id": "adv-1", "next_chapter": {"title": "Hijack"}}, headers=INTRUDER)
  assign = await async_client.post(f"/v1/chapters/{chapter_id}/quests", json={"adventure_quest_ids": ["aq-2"]}, headers=INTRUDER)
  start = await async_client.post("/v1/chapters", json={"adventure_id": "adv-9", "session_id": "sess-1", "chapter": {"title": "Mine now"}}, headers=INTRUDER)
  mission = await async_client.post("/v1/missions", json={"chapter_quest_id": quest_id}, headers=INTRUDER)
  cached = await async_client.get(f"/v1/missions/{quest_id}", headers=INTRUDER)

  assert [response.status_code for response in (hijack, assign, start, mission, cached)] == [403, 403, 403, 403, 403]
  assert state.chapters[chapter_id].status == "active"
  assert len(state.chapters) == 1
  assert len(state.chapter_quests) == 1
