"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Depends

from mealplan.config import Settings, get_settings
from mealplan.jobs.manager import JobManager
from mealplan.services.plans import MealPlanService
from mealplan.services.tasks.factory import get_task_enqueuer
from mealplan.storage.factory import _get_drafts_repo, _get_household_directory, _get_jobs_repo


def get_plan_service(settings: Settings = Depends(get_settings)) -> MealPlanService:  # noqa: B008
  """Build the plan service for the configured backends."""
  manager = JobManager(_get_jobs_repo(settings), history_limit=settings.planner.history_limit)
  return MealPlanService(manager=manager, households=_get_household_directory(settings), drafts=_get_drafts_repo(settings), enqueuer=get_task_enqueuer(settings), settings=settings)
