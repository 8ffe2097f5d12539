"""Chunked, parallel generation of new recipes for unmatched draft items.

One call processes at most one chunk. Within the chunk, items are generated in
parallel batches of a fixed size and every batch is joined before the next one
starts. A shared wall-clock budget bounds the whole chunk: batches that do not
fit are left for the next invocation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from mealplan.clients.recipe_generator import GeneratedRecipe, RecipeConstraints, RecipeSpec
from mealplan.config import PlannerSettings
from mealplan.core.errors import RecipeGenerationError
from mealplan.jobs.metadata import JobFault
from mealplan.jobs.models import DraftItem, DraftRecord, GenerationStatus
from mealplan.planning.preferences import HouseholdPreferences, build_constraints
from mealplan.planning.state import Assignment
from mealplan.storage.drafts_repo import DraftsRepository
from mealplan.utils.timeutils import monotonic_ms, now_iso

logger = logging.getLogger(__name__)

DEFAULT_SERVINGS = 4


class RecipeSource(Protocol):
  async def generate(self, spec: RecipeSpec) -> GeneratedRecipe | None: ...


@dataclass
class GenerationRunResult:
  generated: list[Assignment] = field(default_factory=list)
  failed_indexes: list[int] = field(default_factory=list)
  awaiting_indexes: list[int] = field(default_factory=list)
  remaining_indexes: list[int] = field(default_factory=list)
  faults: list[JobFault] = field(default_factory=list)
  items: list[DraftItem] = field(default_factory=list)

  @property
  def has_more(self) -> bool:
    return bool(self.remaining_indexes)


@dataclass(frozen=True)
class _ItemOutcome:
  index: int
  recipe: GeneratedRecipe | None
  error: RecipeGenerationError | None
  attempts: int


def mark_pending(item: DraftItem, index: int, *, requested_at: str) -> DraftItem:
  return replace(item, generation_status=GenerationStatus(state="pending", item_index=index, requested_at=requested_at))


def mark_resolved(item: DraftItem, index: int, recipe_id: str, *, resolved_at: str) -> DraftItem:
  requested_at = item.generation_status.requested_at if item.generation_status is not None else None
  status = GenerationStatus(state="resolved", item_index=index, requested_at=requested_at, resolved_at=resolved_at, recipe_id=recipe_id)
  return replace(item, recipe_id=recipe_id, generation_status=status)


def _session_limit(session_preferences: dict[str, Any], key: str) -> int | None:
  value = session_preferences.get(key)
  return value if isinstance(value, int) and value > 0 else None


class RecipeBatchGenerator:
  """Generates recipes for one chunk of unmatched items."""

  def __init__(self, source: RecipeSource, drafts: DraftsRepository, settings: PlannerSettings, *, clock: Callable[[], float] = monotonic_ms) -> None:
    self._source = source
    self._drafts = drafts
    self._settings = settings
    self._clock = clock

  def build_spec(self, draft: DraftRecord, index: int, preferences: HouseholdPreferences, session_preferences: dict[str, Any]) -> RecipeSpec:
    item = draft.items[index]
    constraints = build_constraints(preferences, item.tags)
    return RecipeSpec(
      title=item.title,
      meal_type=item.meal_type,
      servings=item.servings if item.servings and item.servings > 0 else DEFAULT_SERVINGS,
      constraints=RecipeConstraints(
        required_dietary=constraints.required_dietary,
        blocked_ingredients=constraints.blocked_ingredients,
        blocked_tags=constraints.blocked_tags,
        max_prep_min=_session_limit(session_preferences, "max_prep_min"),
        max_cook_min=_session_limit(session_preferences, "max_cook_min"),
      ),
      # Stable per item so a retried or resumed chunk never creates a second recipe.
      idempotency_key=f"{draft.draft_id}:{index}",
      household_context={**preferences.to_dict(), "cuisine": constraints.cuisine, "session_preferences": session_preferences},
      description=item.description,
      draft_id=draft.draft_id,
      item_index=index,
    )

  async def _generate_one(self, spec: RecipeSpec, index: int, *, started: float) -> _ItemOutcome:
    max_attempts = 1 + self._settings.recipe_retry_attempts
    attempt = 0
    while True:
      attempt += 1
      try:
        recipe = await self._source.generate(spec)
        return _ItemOutcome(index=index, recipe=recipe, error=None, attempts=attempt)
      except RecipeGenerationError as exc:
        within_budget = self._clock() - started < self._settings.recipe_time_budget_ms
        if not exc.is_timeout or attempt >= max_attempts or not within_budget:
          return _ItemOutcome(index=index, recipe=None, error=exc, attempts=attempt)
        logger.warning("Recipe generation timed out index=%d attempt=%d/%d retrying", index, attempt, max_attempts)
      except Exception as exc:  # noqa: BLE001
        # One item failing never aborts the batch.
        return _ItemOutcome(index=index, recipe=None, error=RecipeGenerationError("provider-error", str(exc) or type(exc).__name__), attempts=attempt)

  async def run_chunk(self, draft: DraftRecord, indexes: Sequence[int], preferences: HouseholdPreferences, *, session_preferences: dict[str, Any] | None = None) -> GenerationRunResult:
    """Generate recipes for the first chunk of ``indexes`` and persist the outcome."""
    started = self._clock()
    items = [replace(item, tags=list(item.tags), extra=dict(item.extra)) for item in draft.items]
    candidates = [index for index in dict.fromkeys(indexes) if 0 <= index < len(items) and not items[index].is_assigned]
    chunk = candidates[: self._settings.chunk_size]
    result = GenerationRunResult(remaining_indexes=candidates[self._settings.chunk_size :])
    if not chunk:
      result.items = items
      return result

    requested_at = now_iso()
    for index in chunk:
      items[index] = mark_pending(items[index], index, requested_at=requested_at)
    await self._drafts.save_items(draft.draft_id, items)
    logger.info("Generating recipes draft_id=%s chunk=%s remaining_after_chunk=%d", draft.draft_id, chunk, len(result.remaining_indexes))

    batch_size = self._settings.max_parallel_generations
    specs = {index: self.build_spec(draft, index, preferences, session_preferences or {}) for index in chunk}
    for offset in range(0, len(chunk), batch_size):
      batch = chunk[offset : offset + batch_size]
      if self._clock() - started >= self._settings.recipe_time_budget_ms:
        # Out of budget: release the markers so the next invocation picks these up.
        unprocessed = chunk[offset:]
        for index in unprocessed:
          items[index] = replace(items[index], generation_status=None)
        result.remaining_indexes = [*unprocessed, *result.remaining_indexes]
        logger.info("Recipe generation budget exhausted draft_id=%s deferred=%d", draft.draft_id, len(unprocessed))
        break

      outcomes = await asyncio.gather(*(self._generate_one(specs[index], index, started=started) for index in batch))
      resolved_at = now_iso()
      for outcome in outcomes:
        self._apply(outcome, items, result, resolved_at=resolved_at)
      await self._drafts.save_items(draft.draft_id, items)

    if result.remaining_indexes:
      await self._drafts.save_items(draft.draft_id, items)
    result.items = items
    logger.info(
      "Recipe generation chunk complete draft_id=%s generated=%d failed=%d awaiting=%d remaining=%d",
      draft.draft_id,
      len(result.generated),
      len(result.failed_indexes),
      len(result.awaiting_indexes),
      len(result.remaining_indexes),
    )
    return result

  @staticmethod
  def _apply(outcome: _ItemOutcome, items: list[DraftItem], result: GenerationRunResult, *, resolved_at: str) -> None:
    index = outcome.index
    if outcome.error is not None:
      # The item returns to the unmatched pool.
      items[index] = replace(items[index], generation_status=None)
      result.failed_indexes.append(index)
      details: dict[str, Any] = {"index": index, "code": outcome.error.code, "attempts": outcome.attempts}
      if outcome.error.violations:
        details["violations"] = list(outcome.error.violations)
      result.faults.append(JobFault(at=resolved_at, source="generate_missing_recipes", message=outcome.error.message, attempt=outcome.attempts, details=details))
      logger.warning("Recipe generation failed index=%d code=%s error=%s", index, outcome.error.code, outcome.error.message)
      return
    if outcome.recipe is None:
      result.awaiting_indexes.append(index)
      return
    items[index] = mark_resolved(items[index], index, outcome.recipe.recipe_id, resolved_at=resolved_at)
    result.generated.append(Assignment(item_index=index, recipe_id=outcome.recipe.recipe_id, confidence=1.0, source="newly-generated"))
