"""Lifecycle operations over async plan jobs.

Every operation is a single read-modify-write against the jobs repository.
There is no locking: concurrent writers resolve by last write wins. Storage
errors propagate to the caller unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from mealplan.core.errors import JobStateError, StorageError
from mealplan.jobs.metadata import JobEvent, JobFault, decode_metadata, encode_metadata, merge_metadata, with_event, with_fault
from mealplan.jobs.models import JOB_TRANSITIONS, JobRecord, JobStatus, JobType
from mealplan.storage.jobs_repo import JobsRepository
from mealplan.utils.ids import generate_job_id
from mealplan.utils.timeutils import now_iso, parse_iso

logger = logging.getLogger(__name__)

PROCESSING_MIN_PROGRESS = 10


def clamp_progress(value: float) -> int:
  """Round and clamp a progress value into [0, 100]."""
  return max(0, min(100, round(value)))


class JobManager:
  """Create and transition async jobs."""

  def __init__(self, repo: JobsRepository, *, history_limit: int = 25) -> None:
    self._repo = repo
    self._history_limit = history_limit

  async def get_job(self, job_id: str) -> JobRecord | None:
    return await self._repo.get_job(job_id)

  async def create_job(self, owner_id: str, job_type: JobType, payload: dict[str, Any], meta: dict[str, Any] | None = None) -> JobRecord:
    """Persist a new pending job with validated metadata."""
    timestamp = now_iso()
    metadata = decode_metadata(meta)
    metadata = with_event(metadata, JobEvent(at=timestamp, kind="created", message="Job accepted"), limit=self._history_limit)
    record = JobRecord(
      job_id=generate_job_id(),
      user_id=owner_id,
      job_type=job_type,
      status="pending",
      progress=0,
      payload=payload,
      meta=encode_metadata(metadata),
      created_at=timestamp,
      updated_at=timestamp,
    )
    await self._repo.create_job(record)
    logger.info("Created job job_id=%s user_id=%s type=%s", record.job_id, owner_id, job_type)
    return record

  async def update_job(self, job: JobRecord, **patch: Any) -> JobRecord:
    """Apply a partial patch and return the stored record."""
    updated = await self._repo.update_job(job.job_id, **patch)
    if updated is None:
      raise StorageError(f"Job {job.job_id} disappeared during update")
    return updated

  async def append_meta(self, job: JobRecord, patch: dict[str, Any]) -> JobRecord:
    """Shallow-merge a patch into the job metadata."""
    return await self.update_job(job, meta=merge_metadata(job.meta, patch))

  async def record_event(self, job: JobRecord, kind: str, message: str, data: dict[str, Any] | None = None) -> JobRecord:
    metadata = with_event(decode_metadata(job.meta), JobEvent(at=now_iso(), kind=kind, message=message, data=data), limit=self._history_limit)
    return await self.update_job(job, meta=encode_metadata(metadata))

  async def record_fault(self, job: JobRecord, source: str, message: str, *, attempt: int | None = None, details: dict[str, Any] | None = None) -> JobRecord:
    fault = JobFault(at=now_iso(), source=source, message=message, attempt=attempt, details=details)
    metadata = with_fault(decode_metadata(job.meta), fault, limit=self._history_limit)
    return await self.update_job(job, meta=encode_metadata(metadata))

  async def update_progress(self, job: JobRecord, value: float, extra_patch: dict[str, Any] | None = None) -> JobRecord:
    """Move progress forward; values below the current progress are ignored."""
    progress = clamp_progress(value)
    if job.status != "failed":
      progress = max(progress, job.progress)
    return await self.update_job(job, progress=progress, **(extra_patch or {}))

  async def mark_processing(self, job: JobRecord) -> JobRecord:
    self._ensure_transition(job, "processing")
    return await self.update_job(job, status="processing", progress=max(job.progress, PROCESSING_MIN_PROGRESS))

  async def mark_completed(self, job: JobRecord, result: dict[str, Any]) -> JobRecord:
    self._ensure_transition(job, "completed")
    updated = await self.update_job(job, status="completed", progress=100, result=result, clear_error=True, completed_at=now_iso())
    logger.info("Job completed job_id=%s", job.job_id)
    return updated

  async def mark_failed(self, job: JobRecord, message: str, meta_patch: dict[str, Any] | None = None) -> JobRecord:
    self._ensure_transition(job, "failed")
    meta = merge_metadata(job.meta, {"last_error": message, **(meta_patch or {})})
    updated = await self.update_job(job, status="failed", progress=100, error=message, meta=meta, completed_at=now_iso())
    logger.warning("Job failed job_id=%s error=%s", job.job_id, message)
    return updated

  async def find_active_job_by_signature(self, user_id: str, signature: str) -> JobRecord | None:
    return await self._repo.find_active_by_signature(user_id, signature)

  async def fail_if_stale(self, job: JobRecord, *, threshold_seconds: int, now: datetime) -> JobRecord | None:
    """Fail a job stuck in processing longer than the threshold; return it when failed."""
    if job.status != "processing":
      return None
    last_touched = parse_iso(job.updated_at) or parse_iso(job.created_at)
    if last_touched is None:
      return None
    age_seconds = (now - last_touched).total_seconds()
    if age_seconds <= threshold_seconds:
      return None
    logger.warning("Marking stale job as failed job_id=%s age_seconds=%.0f", job.job_id, age_seconds)
    return await self.mark_failed(job, "Job timed out; superseded by a new request", {"last_error": f"stale after {int(age_seconds)}s"})

  @staticmethod
  def _ensure_transition(job: JobRecord, target: JobStatus) -> None:
    allowed = JOB_TRANSITIONS.get(job.status, frozenset())
    if target not in allowed:
      raise JobStateError(f"Job {job.job_id} cannot move from {job.status} to {target}")
