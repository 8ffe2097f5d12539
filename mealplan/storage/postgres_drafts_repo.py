"""Postgres-backed repository for meal plan drafts."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from mealplan.core.database import require_session_factory
from mealplan.core.errors import StorageError
from mealplan.jobs.models import DraftItem, DraftRecord, DraftStatus
from mealplan.schema.drafts import MealPlanDraft
from mealplan.storage.drafts_repo import DraftsRepository
from mealplan.utils.timeutils import now_iso


class PostgresDraftsRepository(DraftsRepository):
  """Persist drafts to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    self._session_factory = require_session_factory()

  async def get_draft(self, draft_id: str) -> DraftRecord | None:
    try:
      async with self._session_factory() as session:
        row = await session.get(MealPlanDraft, draft_id)
        if row is None:
          return None
        return self._model_to_record(row)
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to load draft {draft_id}", details={"error": str(exc)}) from exc

  async def save_items(self, draft_id: str, items: Sequence[DraftItem]) -> None:
    try:
      async with self._session_factory() as session:
        row = await session.get(MealPlanDraft, draft_id)
        if row is None:
          raise StorageError(f"Draft {draft_id} not found")
        row.items = [item.to_dict() for item in items]
        row.updated_at = now_iso()
        await session.commit()
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to persist items for draft {draft_id}", details={"error": str(exc)}) from exc

  async def update_status(self, draft_id: str, status: DraftStatus, *, error_message: str | None = None, meal_plan_id: str | None = None) -> None:
    try:
      async with self._session_factory() as session:
        row = await session.get(MealPlanDraft, draft_id)
        if row is None:
          raise StorageError(f"Draft {draft_id} not found")
        row.status = status
        if error_message is not None:
          row.error_message = error_message
        if meal_plan_id is not None:
          row.meal_plan_id = meal_plan_id
        row.updated_at = now_iso()
        await session.commit()
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to update draft {draft_id}", details={"error": str(exc)}) from exc

  async def list_failed_drafts(self, job_id: str) -> list[DraftRecord]:
    try:
      async with self._session_factory() as session:
        stmt = select(MealPlanDraft).where(MealPlanDraft.job_id == job_id, MealPlanDraft.status == "failed").order_by(MealPlanDraft.created_at.asc())
        rows = (await session.execute(stmt)).scalars().all()
        return [self._model_to_record(row) for row in rows]
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to list failed drafts for job {job_id}", details={"error": str(exc)}) from exc

  async def delete_drafts(self, draft_ids: Sequence[str]) -> int:
    if not draft_ids:
      return 0
    try:
      async with self._session_factory() as session:
        result = await session.execute(delete(MealPlanDraft).where(MealPlanDraft.id.in_(list(draft_ids))))
        await session.commit()
        return int(result.rowcount or 0)
    except SQLAlchemyError as exc:
      raise StorageError("Failed to delete drafts", details={"error": str(exc)}) from exc

  @staticmethod
  def _model_to_record(row: MealPlanDraft) -> DraftRecord:
    raw_items = row.items if isinstance(row.items, list) else []
    return DraftRecord(
      draft_id=row.id,
      user_id=row.user_id,
      household_id=row.household_id,
      status=row.status,  # type: ignore[arg-type]
      start_date=row.start_date,
      end_date=row.end_date,
      meals_per_day=row.meals_per_day,
      items=[DraftItem.from_dict(raw, index=index) for index, raw in enumerate(raw_items) if isinstance(raw, dict)],
      job_id=row.job_id,
      plan_title=row.plan_title,
      error_message=row.error_message,
      meal_plan_id=row.meal_plan_id,
      created_at=row.created_at,
      updated_at=row.updated_at,
    )
