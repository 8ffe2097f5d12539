import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Response, status

from mealplan.api.deps import get_plan_service
from mealplan.api.models import JobStatusResponse, PlanJobResponse
from mealplan.core.security import get_current_user_id
from mealplan.services.plans import MealPlanService

router = APIRouter()
logger = logging.getLogger("mealplan.api.routes.plans")


@router.post("/meal-plans", response_model=PlanJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_meal_plan(  # noqa: B008
  response: Response,
  background_tasks: BackgroundTasks,
  payload: dict[str, Any] = Body(...),  # noqa: B008
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: MealPlanService = Depends(get_plan_service),  # noqa: B008
) -> PlanJobResponse:
  """Start a meal plan generation job, or return the identical job already running."""
  admission = await service.submit(payload, user_id=user_id)
  if admission.created:
    # Dispatch after the response so the caller is not held by the queue round trip.
    background_tasks.add_task(service.dispatch, admission.job.job_id)
  else:
    response.status_code = status.HTTP_200_OK
  job = admission.job
  return PlanJobResponse(job_id=job.job_id, status=job.status, progress=job.progress, message=admission.message)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(  # noqa: B008
  job_id: str,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  service: MealPlanService = Depends(get_plan_service),  # noqa: B008
) -> JobStatusResponse:
  """Fetch the status and result of one of the caller's jobs."""
  job = await service.get_status(job_id, user_id=user_id)
  return JobStatusResponse.from_record(job)
