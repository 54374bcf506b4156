from __future__ import annotations

import pytest

from questline.core.exceptions import ValidationFailure
from questline.services.renown import LevelSnapshot, RenownEvaluator, level_for_value
from questline.storage.rewards_repo import RenownState
from questline.utils.timeutil import utcnow


@pytest.fixture
def renown(repositories) -> RenownEvaluator:
  return RenownEvaluator(repositories.renown)


def _seed(state, user_id: str, value: int, level: int) -> None:
  state.renown[user_id] = RenownState(user_id=user_id, value=value, level=level, updated_at=utcnow())


def test_level_is_value_per_hundred() -> None:
  assert [level_for_value(value) for value in (0, 99, 100, 105, 250, -5)] == [0, 0, 1, 1, 2, 0]


@pytest.mark.anyio
async def test_missing_state_is_not_an_error(renown, state) -> None:
  evaluation = await renown.evaluate_level("nobody")

  assert evaluation.updated is False
  assert evaluation.prev is None and evaluation.next is None
  assert state.renown == {}


@pytest.mark.anyio
async def test_level_unchanged_writes_nothing(renown, state) -> None:
  _seed(state, "user-1", 150, 1)
  before = state.renown["user-1"]

  evaluation = await renown.evaluate_level("user-1")

  assert evaluation.updated is False
  assert evaluation.prev == evaluation.next == LevelSnapshot(value=150, level=1)
  assert state.renown["user-1"] is before


@pytest.mark.anyio
async def test_stale_level_is_corrected(renown, state) -> None:
  _seed(state, "user-1", 240, 0)

  evaluation = await renown.evaluate_level("user-1")

  assert evaluation.updated is True
  assert evaluation.prev == LevelSnapshot(value=240, level=0)
  assert evaluation.next == LevelSnapshot(value=240, level=2)
  assert state.renown["user-1"].level == 2


@pytest.mark.anyio
async def test_adding_renown_crosses_a_level(renown, state) -> None:
  _seed(state, "user-1", 95, 0)

  evaluation = await renown.add_renown("user-1", 10)

  assert evaluation.updated is True
  assert evaluation.next == LevelSnapshot(value=105, level=1)


@pytest.mark.anyio
async def test_adding_renown_creates_state(renown, state) -> None:
  evaluation = await renown.add_renown("user-2", 30)

  assert evaluation.updated is False
  assert evaluation.next == LevelSnapshot(value=30, level=0)
  assert state.renown["user-2"].value == 30


@pytest.mark.anyio
async def test_negative_delta_is_rejected(renown, state) -> None:
  with pytest.raises(ValidationFailure):
    await renown.add_renown("user-1", -1)
  assert state.renown == {}
