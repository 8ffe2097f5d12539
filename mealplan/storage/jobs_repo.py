"""Storage interfaces for async plan jobs."""

from __future__ import annotations

from typing import Any, Protocol

from mealplan.jobs.models import JobRecord, JobStatus


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def update_job(
    self,
    job_id: str,
    *,
    status: JobStatus | None = None,
    progress: int | None = None,
    result: dict[str, Any] | None = None,
    error: str | None = None,
    meta: dict[str, Any] | None = None,
    completed_at: str | None = None,
    clear_error: bool = False,
  ) -> JobRecord | None:
    """Apply a partial update (last write wins) and return the stored record."""

  async def find_active_by_signature(self, user_id: str, signature: str) -> JobRecord | None:
    """Return the newest pending/processing job for a user with a matching payload signature."""
