from __future__ import annotations

from fastapi import APIRouter, Depends

from questline.api.deps import get_current_user_id, get_services
from questline.api.models import RenownEvaluationResponse, RenownResponse
from questline.services.container import Services

router = APIRouter()


@router.get("", response_model=RenownResponse)
async def get_renown(user_id: str = Depends(get_current_user_id), services: Services = Depends(get_services)) -> RenownResponse:  # noqa: B008
  state = await services.renown.get_state(user_id)
  return RenownResponse.from_state(user_id, state)


@router.post("/evaluate", response_model=RenownEvaluationResponse)
async def evaluate_renown(user_id: str = Depends(get_current_user_id), services: Services = Depends(get_services)) -> RenownEvaluationResponse:  # noqa: B008
  """Re-derive the caller's level from their renown value."""
  evaluation = await services.renown.evaluate_level(user_id)
  return RenownEvaluationResponse.from_evaluation(evaluation)
