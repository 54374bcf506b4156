"""Achievement evaluation: catalog condition trees checked against accumulated progress.

Catalog `conditions` are a tree of groups and rules:

  {"operator": "AND", "rules": [
    {"type": "quest_completed_count", "scope": "session", "value": 10},
    {"operator": "OR", "rules": [{"type": "renown_level_reached", "value": 2}, ...]}
  ]}

An unlock is keyed by `(achievement, user, scope_key)`, so re-evaluating never unlocks twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from questline.services.renown import RenownEvaluator
from questline.storage.rewards_repo import AchievementDefinition, AchievementsRepository, AchievementUnlockRecord
from questline.utils.ids import generate_id
from questline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

MANUAL_REFRESH_EVENT = "manual_refresh"


@dataclass(frozen=True)
class AchievementContext:
  user_id: str
  session_id: str | None = None
  adventure_id: str | None = None
  chapter_id: str | None = None
  chapter_quest_id: str | None = None
  difficulty: int | None = None


@dataclass(frozen=True)
class Verdict:
  ok: bool
  reason: dict[str, Any]


def compute_scope_key(scope: str, ctx: AchievementContext) -> str:
  """Idempotence key for one unlock; falls back to the user when the scoped id is absent."""
  scoped = {"session": ctx.session_id, "adventure": ctx.adventure_id, "chapter": ctx.chapter_id, "chapter_quest": ctx.chapter_quest_id}
  scoped_id = scoped.get(scope)
  if scoped_id:
    return f"{scope}:{scoped_id}"
  return f"user:{ctx.user_id}"


def _is_group(node: Any) -> bool:
  return isinstance(node, dict) and isinstance(node.get("operator"), str) and isinstance(node.get("rules"), list)


def renown_for_difficulty(reward_map: dict[str, Any], difficulty: int | None) -> int:
  default = int(reward_map.get("default", 0))
  if difficulty is not None and difficulty >= 3:
    return int(reward_map.get("3", default))
  if difficulty == 2:
    return int(reward_map.get("2", default))
  return int(reward_map.get("1", default))


class AchievementEvaluator:
  def __init__(self, repo: AchievementsRepository, renown: RenownEvaluator) -> None:
    self._repo = repo
    self._renown = renown

  async def evaluate(self, event: str, ctx: AchievementContext) -> list[AchievementUnlockRecord]:
    """Unlock every newly satisfied achievement for `event` and apply its rewards."""
    if not ctx.user_id:
      raise ValueError("AchievementContext.user_id is required")

    trigger_event = None if event == MANUAL_REFRESH_EVENT else event
    catalog = await self._repo.list_active(trigger_event=trigger_event)
    logger.debug("Evaluating %s achievements event=%s user=%s", len(catalog), event, ctx.user_id)

    unlocked: list[AchievementUnlockRecord] = []
    for achievement in catalog:
      try:
        verdict = await self._evaluate_conditions(achievement.conditions, ctx)
      except Exception:
        # One broken rule must not stop the rest of the catalog.
        logger.exception("Achievement rule crashed code=%s user=%s", achievement.code, ctx.user_id)
        continue
      if not verdict.ok:
        continue

      record = AchievementUnlockRecord(
        id=generate_id(),
        achievement_id=achievement.id,
        user_id=ctx.user_id,
        scope_key=compute_scope_key(achievement.scope, ctx),
        unlocked_at=utcnow(),
        session_id=ctx.session_id,
        adventure_id=ctx.adventure_id,
        chapter_id=ctx.chapter_id,
        chapter_quest_id=ctx.chapter_quest_id,
        reason=verdict.reason,
        reward_payload=list(achievement.rewards),
      )
      if not await self._repo.insert_unlock(record):
        logger.debug("Achievement already unlocked code=%s scope_key=%s", achievement.code, record.scope_key)
        continue

      applied, notes = await self._apply_rewards(achievement, ctx)
      reason = {**verdict.reason, "rewards_notes": notes}
      await self._repo.update_unlock_rewards(record.id, reward_payload=applied, reason=reason)
      logger.info("Achievement unlocked code=%s user=%s scope_key=%s", achievement.code, ctx.user_id, record.scope_key)
      unlocked.append(replace(record, reward_payload=applied, reason=reason))

    return unlocked

  async def _evaluate_conditions(self, conditions: dict[str, Any], ctx: AchievementContext) -> Verdict:
    if not _is_group(conditions):
      return Verdict(ok=False, reason={"error": "invalid conditions shape"})
    if not conditions["rules"]:
      return Verdict(ok=False, reason={"error": "no rules"})
    return await self._evaluate_node(conditions, ctx)

  async def _evaluate_node(self, node: dict[str, Any], ctx: AchievementContext) -> Verdict:
    if not _is_group(node):
      return await self._evaluate_rule(node, ctx)

    operator = str(node["operator"]).upper()
    results = [await self._evaluate_node(child, ctx) for child in node["rules"]]
    ok = any(result.ok for result in results) if operator == "OR" else all(result.ok for result in results)
    return Verdict(ok=ok, reason={"operator": operator, "results": [{"ok": result.ok, **result.reason} for result in results]})

  async def _evaluate_rule(self, rule: dict[str, Any], ctx: AchievementContext) -> Verdict:
    rule_type = rule.get("type")
    needed = int(rule.get("value", 1))

    if rule_type in {"quest_completed_count", "chapter_completed_count"}:
      scope = rule.get("scope", "global")
      filters: dict[str, str | None] = {}
      if scope == "session":
        if not ctx.session_id:
          return Verdict(ok=False, reason={"rule": rule_type, "missing": "session_id"})
        filters["session_id"] = ctx.session_id
      elif scope == "adventure":
        if not ctx.adventure_id:
          return Verdict(ok=False, reason={"rule": rule_type, "missing": "adventure_id"})
        filters["adventure_id"] = ctx.adventure_id

      if rule_type == "quest_completed_count":
        count = await self._repo.count_completed_quests(ctx.user_id, **filters)
      else:
        count = await self._repo.count_completed_chapters(ctx.user_id, **filters)
      return Verdict(ok=count >= needed, reason={"rule": rule_type, "scope": scope, "count": count, "needed": needed})

    if rule_type == "renown_level_reached":
      state = await self._renown.get_state(ctx.user_id)
      level = state.level if state is not None else 0
      return Verdict(ok=level >= needed, reason={"rule": rule_type, "level": level, "needed": needed})

    return Verdict(ok=False, reason={"rule": rule_type, "error": "unknown rule type"})

  async def _apply_rewards(self, achievement: AchievementDefinition, ctx: AchievementContext) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Grant rewards; a failing reward is noted and the remaining ones still apply."""
    applied: list[dict[str, Any]] = []
    notes: list[dict[str, Any]] = []
    for reward in achievement.rewards:
      reward_type = reward.get("type")
      try:
        if reward_type == "renown":
          delta = int(reward.get("value", 0))
        elif reward_type == "renown_by_difficulty":
          delta = renown_for_difficulty(dict(reward.get("map") or {}), ctx.difficulty)
        else:
          # Badges and titles are carried on the unlock row itself.
          applied.append(reward)
          notes.append({"type": reward_type, "stored": "unlock.reward_payload"})
          continue

        evaluation = await self._renown.add_renown(ctx.user_id, delta)
      except Exception as exc:
        logger.warning("Reward failed code=%s type=%s user=%s: %s", achievement.code, reward_type, ctx.user_id, exc)
        notes.append({"type": reward_type, "error": str(exc)})
        continue

      applied.append({"type": "renown", "value": delta})
      notes.append({"type": reward_type, "delta": delta, "level_updated": evaluation.updated, "level": evaluation.next.level if evaluation.next else None})
    return applied, notes
