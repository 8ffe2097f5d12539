"""Postgres household directory backed by membership, profile and settings tables."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from mealplan.core.database import require_session_factory
from mealplan.core.errors import StorageError
from mealplan.planning.preferences import HouseholdPreferences, aggregate_preferences
from mealplan.schema.households import HouseholdMember, Profile, UserSettings
from mealplan.storage.households_repo import HouseholdDirectory


class PostgresHouseholdDirectory(HouseholdDirectory):
  def __init__(self) -> None:
    self._session_factory = require_session_factory()

  async def list_active_households(self, user_id: str, *, limit: int = 2) -> list[str]:
    try:
      async with self._session_factory() as session:
        stmt = select(HouseholdMember.household_id).where(HouseholdMember.user_id == user_id, HouseholdMember.status == "active").limit(limit)
        return [str(value) for value in (await session.execute(stmt)).scalars().all()]
    except SQLAlchemyError as exc:
      raise StorageError("Unable to resolve household membership", details={"error": str(exc)}) from exc

  async def has_active_membership(self, user_id: str, household_id: str) -> bool:
    try:
      async with self._session_factory() as session:
        stmt = select(HouseholdMember.status).where(HouseholdMember.user_id == user_id, HouseholdMember.household_id == household_id)
        status = (await session.execute(stmt)).scalar_one_or_none()
    except SQLAlchemyError as exc:
      raise StorageError("Failed to verify household membership", details={"error": str(exc)}) from exc
    return status == "active"

  async def load_preferences(self, household_id: str) -> HouseholdPreferences:
    try:
      async with self._session_factory() as session:
        member_stmt = select(HouseholdMember.user_id).where(HouseholdMember.household_id == household_id, HouseholdMember.status == "active")
        member_ids = [str(value) for value in (await session.execute(member_stmt)).scalars().all()]
        if not member_ids:
          return HouseholdPreferences()

        profiles = (await session.execute(select(Profile).where(Profile.id.in_(member_ids)))).scalars().all()
        settings_rows = (await session.execute(select(UserSettings).where(UserSettings.user_id.in_(member_ids)))).scalars().all()
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to load preferences for household {household_id}", details={"error": str(exc)}) from exc

    sources: dict[str, list[dict[str, Any]]] = {member_id: [] for member_id in member_ids}
    for profile in profiles:
      if isinstance(profile.preferences, dict):
        sources[profile.id].append(profile.preferences)
    for row in settings_rows:
      for document in (row.dietary_preferences, row.cooking_preferences):
        if isinstance(document, dict):
          sources[row.user_id].append(document)
    return aggregate_preferences(sources)
