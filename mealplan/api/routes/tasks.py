from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status

from mealplan.api.deps import get_plan_service
from mealplan.api.models import RecipeCallbackPayload, RecipeCallbackResponse, TaskPayload
from mealplan.config import Settings, get_settings
from mealplan.jobs.worker import process_job_sync
from mealplan.services.plans import MealPlanService

router = APIRouter(prefix="/tasks", tags=["tasks"])
logger = logging.getLogger(__name__)


def require_task_secret(
  settings: Annotated[Settings, Depends(get_settings)], authorization: str | None = Header(default=None), x_mealplan_task_secret: str | None = Header(default=None)
) -> None:
  """Reject internal task calls that do not carry the shared secret."""
  # Internal task endpoints stay closed until a secret is configured.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  expected_auth = f"Bearer {settings.task_secret}"
  # Cloud Tasks OIDC owns Authorization, so the dedicated header is checked as well.
  shared_secret_valid = secrets.compare_digest((x_mealplan_task_secret or ""), settings.task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), expected_auth)
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to internal task endpoint")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")


@router.post("/process-job", status_code=status.HTTP_202_ACCEPTED, dependencies=[Depends(require_task_secret)])
async def process_job_task(payload: TaskPayload, background_tasks: BackgroundTasks, settings: Annotated[Settings, Depends(get_settings)]) -> dict[str, str]:
  """
  Handler for Cloud Tasks (and local simulation).
  Accepts the task quickly and runs the job in the background.
  """
  logger.info("Received task for job %s resume=%s", payload.job_id, payload.resume)
  background_tasks.add_task(process_job_sync, payload.job_id, settings, resume=payload.resume)
  return {"status": "accepted"}


@router.post("/recipe-callback", response_model=RecipeCallbackResponse, dependencies=[Depends(require_task_secret)])
async def recipe_callback(payload: RecipeCallbackPayload, service: Annotated[MealPlanService, Depends(get_plan_service)]) -> RecipeCallbackResponse:
  """Apply an asynchronously generated recipe to its draft item."""
  result = await service.apply_recipe_callback(payload.draft_id, payload.callback_recipe_id, item_index=payload.item_index)
  return RecipeCallbackResponse(draft_id=result.draft_id, item_index=result.item_index, applied=result.applied, resumed=result.resumed)
