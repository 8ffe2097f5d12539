"""Read-only household membership and preference lookups."""

from __future__ import annotations

from typing import Protocol

from mealplan.planning.preferences import HouseholdPreferences


class HouseholdDirectory(Protocol):
  """Repository contract for household scope resolution."""

  async def list_active_households(self, user_id: str, *, limit: int = 2) -> list[str]:
    """Return household ids where the user is an active member."""

  async def has_active_membership(self, user_id: str, household_id: str) -> bool:
    """Report whether the user is an active member of the household."""

  async def load_preferences(self, household_id: str) -> HouseholdPreferences:
    """Aggregate preferences across the household's active members."""
