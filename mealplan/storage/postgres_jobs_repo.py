"""Postgres-backed repository for async plan jobs using SQLAlchemy."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from mealplan.core.database import require_session_factory
from mealplan.core.errors import StorageError
from mealplan.jobs.models import ACTIVE_JOB_STATUSES, JobRecord, JobStatus
from mealplan.schema.jobs import AsyncJob
from mealplan.storage.jobs_repo import JobsRepository
from mealplan.utils.timeutils import now_iso


class PostgresJobsRepository(JobsRepository):
  """Persist async jobs to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    self._session_factory = require_session_factory()

  async def create_job(self, record: JobRecord) -> None:
    try:
      async with self._session_factory() as session:
        row = AsyncJob(
          id=record.job_id,
          user_id=record.user_id,
          job_type=record.job_type,
          status=record.status,
          progress=record.progress,
          payload=record.payload,
          result=record.result,
          error=record.error,
          meta=record.meta,
          created_at=record.created_at or now_iso(),
          updated_at=record.updated_at or now_iso(),
          completed_at=record.completed_at,
        )
        session.add(row)
        await session.commit()
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to create job {record.job_id}", details={"error": str(exc)}) from exc

  async def get_job(self, job_id: str) -> JobRecord | None:
    try:
      async with self._session_factory() as session:
        row = await session.get(AsyncJob, job_id)
        if row is None:
          return None
        return self._model_to_record(row)
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to load job {job_id}", details={"error": str(exc)}) from exc

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
    try:
      async with self._session_factory() as session:
        row = await session.get(AsyncJob, job_id)
        if row is None:
          return None
        if status is not None:
          row.status = status
        if progress is not None:
          row.progress = progress
        if result is not None:
          row.result = result
        if error is not None:
          row.error = error
        elif clear_error:
          row.error = None
        if meta is not None:
          row.meta = meta
        if completed_at is not None:
          row.completed_at = completed_at
        row.updated_at = now_iso()
        session.add(row)
        await session.commit()
        await session.refresh(row)
        return self._model_to_record(row)
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to update job {job_id}", details={"error": str(exc)}) from exc

  async def find_active_by_signature(self, user_id: str, signature: str) -> JobRecord | None:
    try:
      async with self._session_factory() as session:
        stmt = (
          select(AsyncJob)
          .where(AsyncJob.user_id == user_id, AsyncJob.status.in_(ACTIVE_JOB_STATUSES), AsyncJob.meta["payload_signature"].astext == signature)
          .order_by(AsyncJob.created_at.desc())
          .limit(1)
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
          return None
        return self._model_to_record(row)
    except SQLAlchemyError as exc:
      raise StorageError("Failed to look up active job by signature", details={"error": str(exc)}) from exc

  @staticmethod
  def _model_to_record(row: AsyncJob) -> JobRecord:
    return JobRecord(
      job_id=row.id,
      user_id=row.user_id,
      job_type=row.job_type,  # type: ignore[arg-type]
      status=row.status,  # type: ignore[arg-type]
      progress=int(row.progress or 0),
      payload=dict(row.payload or {}),
      meta=dict(row.meta or {}),
      result=row.result,
      error=row.error,
      created_at=row.created_at,
      updated_at=row.updated_at,
      completed_at=row.completed_at,
    )
