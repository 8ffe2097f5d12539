"""Shared fixtures: environment defaults plus in-memory collaborators."""

from __future__ import annotations

import os

os.environ.setdefault("MEALPLAN_ALLOWED_ORIGINS", "http://localhost:3000")
os.environ.setdefault("MEALPLAN_SYSTEM_USER_ID", "system-user")
os.environ.setdefault("MEALPLAN_TASK_SECRET", "test-task-secret")
os.environ.setdefault("MEALPLAN_BASE_URL", "http://localhost:8000")

from collections.abc import Sequence  # noqa: E402
from dataclasses import replace  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402

from mealplan.clients.draft_generator import DraftReceipt  # noqa: E402
from mealplan.clients.recipe_generator import GeneratedRecipe, RecipeSpec  # noqa: E402
from mealplan.config import get_settings  # noqa: E402
from mealplan.core.errors import RecipeGenerationError  # noqa: E402
from mealplan.jobs.manager import JobManager  # noqa: E402
from mealplan.jobs.models import DraftItem, DraftRecord, DraftStatus, JobRecord  # noqa: E402
from mealplan.planning.preferences import HouseholdPreferences  # noqa: E402
from mealplan.planning.requests import NormalizedPlanRequest, derive_slots, expected_dates  # noqa: E402
from mealplan.planning.similarity import trigram_similarity  # noqa: E402
from mealplan.storage.recipes_repo import CandidateQuery, RecipeCandidate  # noqa: E402
from mealplan.utils.timeutils import now_iso  # noqa: E402


class InMemoryJobsRepo:
  """Minimal in-memory jobs repo mirroring the Postgres update semantics."""

  def __init__(self) -> None:
    self.records: dict[str, JobRecord] = {}

  async def create_job(self, record: JobRecord) -> None:
    self.records[record.job_id] = record

  async def get_job(self, job_id: str) -> JobRecord | None:
    return self.records.get(job_id)

  async def update_job(self, job_id: str, *, clear_error: bool = False, **kwargs: Any) -> JobRecord | None:
    record = self.records.get(job_id)
    if record is None:
      return None
    patch = {key: value for key, value in kwargs.items() if value is not None}
    if clear_error and "error" not in patch:
      patch["error"] = None
    # Merge updates onto the latest record to mimic persistence behavior.
    record = replace(record, **patch, updated_at=now_iso())
    self.records[job_id] = record
    return record

  async def find_active_by_signature(self, user_id: str, signature: str) -> JobRecord | None:
    matches = [record for record in self.records.values() if record.user_id == user_id and record.status in ("pending", "processing") and record.meta.get("payload_signature") == signature]
    return matches[-1] if matches else None


class InMemoryDraftsRepo:
  def __init__(self) -> None:
    self.drafts: dict[str, DraftRecord] = {}
    self.saves = 0

  def add(self, draft: DraftRecord) -> DraftRecord:
    self.drafts[draft.draft_id] = draft
    return draft

  async def get_draft(self, draft_id: str) -> DraftRecord | None:
    draft = self.drafts.get(draft_id)
    if draft is None:
      return None
    return replace(draft, items=[replace(item, tags=list(item.tags), extra=dict(item.extra)) for item in draft.items])

  async def save_items(self, draft_id: str, items: Sequence[DraftItem]) -> None:
    self.saves += 1
    self.drafts[draft_id] = replace(self.drafts[draft_id], items=[replace(item) for item in items])

  async def update_status(self, draft_id: str, status: DraftStatus, *, error_message: str | None = None, meal_plan_id: str | None = None) -> None:
    draft = self.drafts[draft_id]
    self.drafts[draft_id] = replace(draft, status=status, error_message=error_message or draft.error_message, meal_plan_id=meal_plan_id or draft.meal_plan_id)

  async def list_failed_drafts(self, job_id: str) -> list[DraftRecord]:
    failed = [draft for draft in self.drafts.values() if draft.job_id == job_id and draft.status == "failed"]
    return sorted(failed, key=lambda draft: draft.created_at or "")

  async def delete_drafts(self, draft_ids: Sequence[str]) -> int:
    removed = 0
    for draft_id in draft_ids:
      if self.drafts.pop(draft_id, None) is not None:
        removed += 1
    return removed


class InMemoryHouseholds:
  def __init__(self, memberships: dict[str, list[str]] | None = None, preferences: dict[str, HouseholdPreferences] | None = None) -> None:
    self.memberships = memberships or {}
    self.preferences = preferences or {}

  async def list_active_households(self, user_id: str, *, limit: int = 2) -> list[str]:
    return self.memberships.get(user_id, [])[:limit]

  async def has_active_membership(self, user_id: str, household_id: str) -> bool:
    return household_id in self.memberships.get(user_id, [])

  async def load_preferences(self, household_id: str) -> HouseholdPreferences:
    return self.preferences.get(household_id, HouseholdPreferences())


class InMemoryCatalog:
  """Ranks stored recipes by trigram title similarity like the SQL catalog."""

  def __init__(self, recipes: list[dict[str, Any]] | None = None) -> None:
    self.recipes = recipes or []
    self.queries: list[CandidateQuery] = []

  async def find_candidates(self, query: CandidateQuery) -> list[RecipeCandidate]:
    self.queries.append(query)
    candidates = []
    for recipe in self.recipes:
      similarity = trigram_similarity(query.title, recipe["title"])
      cuisine = recipe.get("cuisine")
      candidates.append(
        RecipeCandidate(
          recipe_id=recipe["recipe_id"],
          title=recipe["title"],
          similarity=similarity,
          cuisine=cuisine,
          dietary_tags=tuple(recipe.get("dietary_tags", ())),
          ingredient_names=tuple(recipe.get("ingredients", ())),
          meal_type_match=recipe.get("meal_type") == query.meal_type,
          cuisine_match=bool(cuisine and query.cuisine and cuisine.lower() == query.cuisine),
        )
      )
    return sorted(candidates, key=lambda candidate: -candidate.similarity)


class FakeRecipeSource:
  """Scripted recipe generator keyed by item index."""

  def __init__(self, script: dict[int, list[Any]] | None = None, *, accept_async: bool = False) -> None:
    self.script = script or {}
    self.accept_async = accept_async
    self.calls: list[RecipeSpec] = []

  async def generate(self, spec: RecipeSpec) -> GeneratedRecipe | None:
    self.calls.append(spec)
    queue = self.script.get(spec.item_index or 0)
    if queue:
      outcome = queue.pop(0)
      if isinstance(outcome, RecipeGenerationError):
        raise outcome
      return outcome
    if self.accept_async:
      return None
    return GeneratedRecipe(recipe_id=f"gen-{spec.item_index}", slug=None, title=spec.title)


class FakeDraftSource:
  """Creates a draft in the in-memory repo, or replays scripted failures first."""

  def __init__(self, drafts: InMemoryDraftsRepo, *, failures: list[Exception] | None = None, skip_slots: set[tuple[str, str]] | None = None) -> None:
    self.drafts = drafts
    self.failures = list(failures or [])
    self.skip_slots = skip_slots or set()
    self.calls = 0

  async def generate(self, request: NormalizedPlanRequest, job_id: str, attempt: int) -> DraftReceipt:
    self.calls += 1
    if self.failures:
      raise self.failures.pop(0)
    draft = build_draft(request, draft_id=f"draft-{self.calls}", job_id=job_id, skip_slots=self.skip_slots)
    self.drafts.add(draft)
    return DraftReceipt(draft_id=draft.draft_id, status=draft.status)


class RecordingEnqueuer:
  def __init__(self, *, error: Exception | None = None) -> None:
    self.calls: list[tuple[str, dict[str, Any]]] = []
    self.error = error

  async def enqueue(self, job_id: str, payload: dict[str, Any]) -> None:
    self.calls.append((job_id, payload))
    if self.error is not None:
      raise self.error


DISHES = (
  "Shakshuka",
  "Miso ramen",
  "Lentil curry",
  "Caesar salad",
  "Pad thai",
  "Beef tacos",
  "Mushroom risotto",
  "Greek yogurt parfait",
  "Falafel wrap",
  "Tomato soup",
  "Paella",
  "Banana pancakes",
  "Chili con carne",
  "Poke bowl",
  "Gnocchi pesto",
  "Bibimbap",
  "Quiche lorraine",
  "Pho",
  "Ratatouille",
  "Burrito bowl",
  "Tofu stir fry",
  "Clam chowder",
  "Moussaka",
  "Okonomiyaki",
  "Jollof rice",
  "Borscht",
  "Pierogi",
  "Tagine",
  "Laksa",
  "Goulash",
)


def build_request(**overrides: Any) -> NormalizedPlanRequest:
  values: dict[str, Any] = {
    "user_id": "user-1",
    "household_id": "house-1",
    "plan_title": "Week",
    "start_date": "2024-01-01",
    "end_date": "2024-01-03",
    "scope": "weekly",
    "timezone": "UTC",
    "meals_per_day": 2,
  }
  values.update(overrides)
  return NormalizedPlanRequest(**values)


def build_draft(request: NormalizedPlanRequest, *, draft_id: str = "draft-1", job_id: str | None = "job-1", skip_slots: set[tuple[str, str]] | None = None) -> DraftRecord:
  slots = [(day, slot) for day in expected_dates(request.start_date, request.end_date) for slot in derive_slots(request.meals_per_day) if (day, slot) not in (skip_slots or set())]
  items = [DraftItem(date=day, meal_type=slot, title=DISHES[index % len(DISHES)], description="Simple and quick", servings=2) for index, (day, slot) in enumerate(slots)]
  return DraftRecord(
    draft_id=draft_id,
    user_id=request.user_id,
    household_id=request.household_id,
    status="completed",
    start_date=request.start_date,
    end_date=request.end_date,
    meals_per_day=request.meals_per_day,
    items=items,
    job_id=job_id,
    plan_title=request.plan_title,
    created_at=now_iso(),
  )


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def settings():
  get_settings.cache_clear()
  yield get_settings()
  get_settings.cache_clear()


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()


@pytest.fixture
def manager(jobs_repo: InMemoryJobsRepo) -> JobManager:
  return JobManager(jobs_repo, history_limit=25)


@pytest.fixture
def drafts_repo() -> InMemoryDraftsRepo:
  return InMemoryDraftsRepo()


@pytest.fixture
def households() -> InMemoryHouseholds:
  return InMemoryHouseholds({"user-1": ["house-1"]})


@pytest.fixture
def catalog() -> InMemoryCatalog:
  return InMemoryCatalog()


@pytest.fixture
def enqueuer() -> RecordingEnqueuer:
  return RecordingEnqueuer()
