"""Job progress tracking for a single planner run."""

from __future__ import annotations

from typing import Any

from mealplan.jobs.manager import JobManager
from mealplan.jobs.metadata import merge_metadata
from mealplan.jobs.models import JobRecord

# Milestones reported while a meal plan job runs.
PROGRESS_STARTED = 15
PROGRESS_DRAFT_BASE = 30
PROGRESS_DRAFT_STEP = 10
PROGRESS_DRAFT_READY = 60
PROGRESS_PRE_VALIDATED = 70
PROGRESS_WORK_START = 80
PROGRESS_WORK_END = 98


def draft_attempt_progress(attempt: int) -> int:
  return min(PROGRESS_DRAFT_READY - 1, PROGRESS_DRAFT_BASE + PROGRESS_DRAFT_STEP * attempt)


def work_progress(done: int, total: int) -> int:
  """Map completed assignment/generation work onto the 80..98 band."""
  if total <= 0:
    return PROGRESS_WORK_START
  fraction = min(1.0, max(0.0, done / total))
  return PROGRESS_WORK_START + round((PROGRESS_WORK_END - PROGRESS_WORK_START) * fraction)


class JobProgressTracker:
  """Track the latest job record while a run moves it forward."""

  def __init__(self, *, manager: JobManager, job: JobRecord) -> None:
    self._manager = manager
    self._job = job

  @property
  def job(self) -> JobRecord:
    return self._job

  @property
  def manager(self) -> JobManager:
    return self._manager

  async def advance(self, value: float, *, meta_patch: dict[str, Any] | None = None) -> JobRecord:
    extra = {"meta": merge_metadata(self._job.meta, meta_patch)} if meta_patch else None
    self._job = await self._manager.update_progress(self._job, value, extra)
    return self._job

  async def append_meta(self, patch: dict[str, Any]) -> JobRecord:
    self._job = await self._manager.append_meta(self._job, patch)
    return self._job

  async def event(self, kind: str, message: str, data: dict[str, Any] | None = None) -> JobRecord:
    self._job = await self._manager.record_event(self._job, kind, message, data)
    return self._job

  async def fault(self, source: str, message: str, *, attempt: int | None = None, details: dict[str, Any] | None = None) -> JobRecord:
    self._job = await self._manager.record_fault(self._job, source, message, attempt=attempt, details=details)
    return self._job
