from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response, status

from questline.api.deps import get_current_user_id, get_services
from questline.api.models import (
  AssignQuestsRequest,
  ChapterAssignmentResponse,
  ChapterQuestResponse,
  ChapterQuestUpdateResponse,
  ChapterResponse,
  ChapterSpecModel,
  SideEffectResponse,
  StartChapterRequest,
  TransitionChapterRequest,
  TransitionResponse,
  UpdateChapterQuestRequest,
)
from questline.services.container import Services
from questline.services.progression import AssignmentResult, ChapterSpec

router = APIRouter()
logger = logging.getLogger(__name__)


def _to_spec(model: ChapterSpecModel) -> ChapterSpec:
  return ChapterSpec(title=model.title, pace=model.pace, context_text=model.context_text, code=model.chapter_code)


def _assignment_response(result: AssignmentResult) -> ChapterAssignmentResponse:
  return ChapterAssignmentResponse(chapter=ChapterResponse.from_record(result.chapter), assigned=[ChapterQuestResponse.from_record(row) for row in result.assigned])


@router.post("/chapters", response_model=ChapterAssignmentResponse, status_code=status.HTTP_201_CREATED)
async def start_chapter(request: StartChapterRequest, user_id: str = Depends(get_current_user_id), services: Services = Depends(get_services)) -> ChapterAssignmentResponse:  # noqa: B008
  """Open the first chapter of an adventure."""
  result = await services.progression.start_chapter(request.adventure_id, request.session_id, _to_spec(request.chapter), request.adventure_quest_ids, user_id=user_id)
  return _assignment_response(result)


@router.post("/chapters/transition", response_model=TransitionResponse)
async def transition_chapter(request: TransitionChapterRequest, user_id: str = Depends(get_current_user_id), services: Services = Depends(get_services)) -> TransitionResponse:  # noqa: B008
  """Close the active chapter, carry unfinished quests over and add the selected backlog."""
  result = await services.progression.transition_chapter(request.prev_chapter_id, request.adventure_id, _to_spec(request.next_chapter), request.backlog_ids, user_id=user_id)
  return TransitionResponse(chapter=ChapterResponse.from_record(result.chapter), carried_over=result.carried_over, backlog_selected=result.backlog_selected, assigned_total=result.assigned_total)


@router.post("/chapters/{chapter_id}/quests", response_model=ChapterAssignmentResponse)
async def assign_quests(chapter_id: str, request: AssignQuestsRequest, user_id: str = Depends(get_current_user_id), services: Services = Depends(get_services)) -> ChapterAssignmentResponse:  # noqa: B008
  result = await services.progression.assign_quests(chapter_id, request.adventure_quest_ids, user_id=user_id)
  return _assignment_response(result)


@router.patch("/chapter-quests/{chapter_quest_id}", response_model=ChapterQuestUpdateResponse)
async def update_chapter_quest(chapter_quest_id: str, request: UpdateChapterQuestRequest, user_id: str = Depends(get_current_user_id), services: Services = Depends(get_services)) -> ChapterQuestUpdateResponse:  # noqa: B008
  """Move a chapter quest between todo, doing and done."""
  change = await services.progression.update_chapter_quest_status(chapter_quest_id, request.status, user_id=user_id)
  failed = [report.name for report in change.side_effects if not report.ok]
  if failed:
    logger.warning("Quest completion side effects failed chapter_quest_id=%s failed=%s", chapter_quest_id, failed)
  return ChapterQuestUpdateResponse(
    chapter_quest=ChapterQuestResponse.from_record(change.chapter_quest),
    changed=change.changed,
    side_effects=[SideEffectResponse.from_report(report) for report in change.side_effects],
  )


@router.delete("/chapter-quests/{chapter_quest_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chapter_quest(chapter_quest_id: str, user_id: str = Depends(get_current_user_id), services: Services = Depends(get_services)) -> Response:  # noqa: B008
  await services.progression.delete_chapter_quest(chapter_quest_id, user_id=user_id)
  return Response(status_code=status.HTTP_204_NO_CONTENT)
