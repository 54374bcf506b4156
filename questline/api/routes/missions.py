from __future__ import annotations

from fastapi import APIRouter, Depends

from questline.api.deps import get_current_user_id, get_services
from questline.api.models import MissionRequest, MissionResponse
from questline.core.exceptions import NotFoundError
from questline.services.container import Services

router = APIRouter()


@router.get("/{chapter_quest_id}", response_model=MissionResponse)
async def get_mission(chapter_quest_id: str, user_id: str = Depends(get_current_user_id), services: Services = Depends(get_services)) -> MissionResponse:  # noqa: B008
  """Return the cached mission order; never calls the model."""
  await services.progression.authorize_refs(user_id, chapter_quest_id=chapter_quest_id)
  entry = await services.missions.get_cached(chapter_quest_id)
  if entry is None:
    raise NotFoundError("Mission order not generated yet.", details={"chapter_quest_id": chapter_quest_id})
  return MissionResponse.from_entry(entry, cached=True)


@router.post("", response_model=MissionResponse)
async def get_or_generate_mission(request: MissionRequest, user_id: str = Depends(get_current_user_id), services: Services = Depends(get_services)) -> MissionResponse:  # noqa: B008
  """Return the cached mission order, generating it first on a miss or when `force` is set."""
  await services.progression.authorize_refs(user_id, chapter_quest_id=request.chapter_quest_id)
  entry, cached = await services.missions.get_or_generate(request.chapter_quest_id, force=request.force)
  return MissionResponse.from_entry(entry, cached=cached)
