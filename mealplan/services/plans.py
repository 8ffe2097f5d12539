"""Meal plan admission, job status and asynchronous recipe completions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from mealplan.config import Settings
from mealplan.core.errors import AuthorizationFailure, RequestValidationFailure, ResourceNotFound
from mealplan.jobs.manager import JobManager
from mealplan.jobs.metadata import decode_metadata
from mealplan.jobs.models import JobRecord
from mealplan.planning.generation import mark_resolved
from mealplan.planning.requests import normalize_plan_request
from mealplan.services.tasks.interface import TaskEnqueuer
from mealplan.storage.drafts_repo import DraftsRepository
from mealplan.storage.households_repo import HouseholdDirectory
from mealplan.utils.timeutils import now_iso

logger = logging.getLogger(__name__)

MSG_STARTED = "Meal plan generation started"
MSG_IN_PROGRESS = "Meal plan generation already in progress"
MSG_ENQUEUE_FAILED = "Failed to enqueue job processing"


@dataclass(frozen=True)
class PlanAdmission:
  job: JobRecord
  created: bool
  message: str


@dataclass(frozen=True)
class CallbackResult:
  draft_id: str
  item_index: int
  applied: bool
  resumed: bool


def _requested_household(raw: Any) -> str | None:
  if not isinstance(raw, dict):
    return None
  for key in ("household_id", "householdId"):
    value = raw.get(key)
    if isinstance(value, str) and value.strip():
      return value.strip()
  return None


class MealPlanService:
  """Entry points used by the HTTP routes."""

  def __init__(
    self,
    *,
    manager: JobManager,
    households: HouseholdDirectory,
    drafts: DraftsRepository,
    enqueuer: TaskEnqueuer,
    settings: Settings,
    clock: Callable[[], datetime] = lambda: datetime.now(UTC),
  ) -> None:
    self._manager = manager
    self._households = households
    self._drafts = drafts
    self._enqueuer = enqueuer
    self._settings = settings
    self._clock = clock

  async def _fallback_household(self, user_id: str) -> str | None:
    """Use the caller's only active household when the request names none."""
    households = await self._households.list_active_households(user_id, limit=2)
    if len(households) > 1:
      raise RequestValidationFailure("Multiple households found; household_id is required")
    return households[0] if households else None

  async def submit(self, raw: Any, *, user_id: str) -> PlanAdmission:
    """Admit a plan request, returning the existing job for an identical active request."""
    explicit_household = _requested_household(raw)
    fallback = None if explicit_household else await self._fallback_household(user_id)
    request, signature = normalize_plan_request(raw, user_id=user_id, fallback_household_id=fallback)

    if explicit_household and not await self._households.has_active_membership(user_id, request.household_id):
      raise AuthorizationFailure("You are not an active member of this household")

    existing = await self._manager.find_active_job_by_signature(user_id, signature)
    if existing is not None:
      superseded = await self._manager.fail_if_stale(existing, threshold_seconds=self._settings.planner.stale_job_seconds, now=self._clock())
      if superseded is None:
        logger.info("Deduplicated plan request user_id=%s job_id=%s", user_id, existing.job_id)
        return PlanAdmission(job=existing, created=False, message=MSG_IN_PROGRESS)

    job = await self._manager.create_job(user_id, "meal_plan_generation", request.to_payload(), {"retry_count": 0, "payload_signature": signature})
    return PlanAdmission(job=job, created=True, message=MSG_STARTED)

  async def dispatch(self, job_id: str) -> bool:
    """Hand a new job to the task queue, failing it when the queue is unreachable."""
    try:
      await self._enqueuer.enqueue(job_id, {"resume": False})
      return True
    except Exception as exc:  # noqa: BLE001
      logger.error("Failed to enqueue job %s: %s", job_id, exc, exc_info=True)
      job = await self._manager.get_job(job_id)
      # Jobs a worker already picked up are left alone.
      if job is not None and job.status == "pending":
        await self._manager.mark_failed(job, MSG_ENQUEUE_FAILED, {"last_error": f"{MSG_ENQUEUE_FAILED}: {exc}"})
      return False

  async def get_status(self, job_id: str, *, user_id: str) -> JobRecord:
    job = await self._manager.get_job(job_id)
    if job is None or job.user_id != user_id:
      raise ResourceNotFound("Job not found")
    return job

  async def apply_recipe_callback(self, draft_id: str, recipe_id: str, *, item_index: int | None = None) -> CallbackResult:
    """Attach an asynchronously generated recipe to its pending draft item."""
    draft = await self._drafts.get_draft(draft_id)
    if draft is None:
      raise ResourceNotFound("Draft not found")

    if item_index is None:
      owner = next((index for index, item in enumerate(draft.items) if item.recipe_id == recipe_id), None)
      pending = draft.pending_indexes()
      if owner is not None:
        item_index = owner
      elif pending:
        item_index = pending[0]
      else:
        raise RequestValidationFailure("No pending item to apply the recipe to")
    if item_index < 0 or item_index >= len(draft.items):
      raise RequestValidationFailure(f"item_index {item_index} is out of range")

    item = draft.items[item_index]
    applied = False
    if item.is_assigned:
      logger.info("Recipe callback ignored draft_id=%s index=%d existing_recipe=%s", draft_id, item_index, item.recipe_id)
    else:
      items = list(draft.items)
      items[item_index] = mark_resolved(item, item_index, recipe_id, resolved_at=now_iso())
      await self._drafts.save_items(draft_id, items)
      draft = replace(draft, items=items)
      applied = True
      logger.info("Recipe callback applied draft_id=%s index=%d recipe_id=%s", draft_id, item_index, recipe_id)

    resumed = False
    if applied and not draft.pending_indexes() and draft.job_id:
      resumed = await self._resume_waiting_job(draft.job_id)
    return CallbackResult(draft_id=draft_id, item_index=item_index, applied=applied, resumed=resumed)

  async def _resume_waiting_job(self, job_id: str) -> bool:
    job = await self._manager.get_job(job_id)
    if job is None or job.status != "processing":
      return False
    checkpoint = decode_metadata(job.meta).checkpoint
    if checkpoint is None or checkpoint.reason != "awaiting-callbacks":
      return False
    await self._enqueuer.enqueue(job_id, {"resume": True})
    logger.info("Resumed job after recipe callbacks job_id=%s", job_id)
    return True
