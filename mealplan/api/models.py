"""Request and response models for the HTTP surface."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from mealplan.jobs.metadata import decode_metadata
from mealplan.jobs.models import JobRecord, JobStatus


class PlanJobResponse(BaseModel):
  """Response payload for plan submission."""

  job_id: StrictStr
  status: JobStatus
  progress: int = Field(ge=0, le=100)
  message: StrictStr


class JobEventView(BaseModel):
  at: StrictStr
  kind: StrictStr
  message: StrictStr
  data: dict[str, Any] | None = None


class JobStatusResponse(BaseModel):
  """Status payload for a meal plan job."""

  job_id: StrictStr
  status: JobStatus
  progress: int = Field(ge=0, le=100)
  result: dict[str, Any] | None = None
  error: StrictStr | None = None
  last_event: JobEventView | None = None
  updated_at: StrictStr | None = None
  model_config = ConfigDict(populate_by_name=True)

  @classmethod
  def from_record(cls, job: JobRecord) -> JobStatusResponse:
    events = decode_metadata(job.meta).events
    last = events[-1] if events else None
    last_event = JobEventView(at=last.at, kind=last.kind, message=last.message, data=last.data) if last is not None else None
    return cls(job_id=job.job_id, status=job.status, progress=job.progress, result=job.result, error=job.error, last_event=last_event, updated_at=job.updated_at)


class TaskPayload(BaseModel):
  job_id: StrictStr
  resume: bool = False


class RecipeCallbackPayload(BaseModel):
  """Completion notice for a recipe that was accepted for asynchronous generation."""

  draft_id: StrictStr
  item_index: int | None = Field(default=None, ge=0)
  callback_recipe_id: StrictStr = Field(min_length=1)


class RecipeCallbackResponse(BaseModel):
  draft_id: StrictStr
  item_index: int
  applied: bool
  resumed: bool
