"""Factories for the storage backends used by services and the worker."""

from __future__ import annotations

from mealplan.config import Settings
from mealplan.storage.drafts_repo import DraftsRepository
from mealplan.storage.households_repo import HouseholdDirectory
from mealplan.storage.jobs_repo import JobsRepository
from mealplan.storage.recipes_repo import RecipeCatalog


def _get_jobs_repo(settings: Settings) -> JobsRepository:
  """Return the jobs repository for the configured backend."""
  from mealplan.storage.postgres_jobs_repo import PostgresJobsRepository

  _ = settings
  return PostgresJobsRepository()


def _get_drafts_repo(settings: Settings) -> DraftsRepository:
  from mealplan.storage.postgres_drafts_repo import PostgresDraftsRepository

  _ = settings
  return PostgresDraftsRepository()


def _get_recipe_catalog(settings: Settings) -> RecipeCatalog:
  from mealplan.storage.postgres_recipes_repo import PostgresRecipeCatalog

  return PostgresRecipeCatalog(settings.matcher)


def _get_household_directory(settings: Settings) -> HouseholdDirectory:
  from mealplan.storage.postgres_households_repo import PostgresHouseholdDirectory

  _ = settings
  return PostgresHouseholdDirectory()
