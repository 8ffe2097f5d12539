"""Storage interfaces for meal plan drafts."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from mealplan.jobs.models import DraftItem, DraftRecord, DraftStatus


class DraftsRepository(Protocol):
  """Repository contract for draft persistence."""

  async def get_draft(self, draft_id: str) -> DraftRecord | None:
    """Fetch a draft and its items."""

  async def save_items(self, draft_id: str, items: Sequence[DraftItem]) -> None:
    """Replace the stored item list (last write wins)."""

  async def update_status(self, draft_id: str, status: DraftStatus, *, error_message: str | None = None, meal_plan_id: str | None = None) -> None:
    """Transition a draft to a new status."""

  async def list_failed_drafts(self, job_id: str) -> list[DraftRecord]:
    """Return failed drafts created for a job, oldest first."""

  async def delete_drafts(self, draft_ids: Sequence[str]) -> int:
    """Delete drafts by id and return how many rows were removed."""
