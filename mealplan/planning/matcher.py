"""Deterministic assignment of catalog recipes to draft items.

Items are visited in ascending index order. Already-assigned items and items
awaiting a new-recipe generation are never touched, so re-running the matcher
is idempotent. Each run is bounded by a wall-clock budget; when the remaining
budget drops to the safety buffer the run stops and reports where to resume.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from mealplan.config import MatcherSettings
from mealplan.jobs.models import DraftItem, DraftRecord
from mealplan.planning.preferences import HouseholdPreferences, MatchConstraints, build_constraints, normalize_lowercase
from mealplan.planning.state import Assignment
from mealplan.storage.drafts_repo import DraftsRepository
from mealplan.storage.recipes_repo import CandidateQuery, RecipeCandidate, RecipeCatalog
from mealplan.utils.timeutils import monotonic_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchOptions:
  """Per-run window and thresholds."""

  start_index: int = 0
  max_items: int | None = None
  time_budget_ms: int = 50000
  safety_buffer_ms: int = 5000
  min_confidence: float = 0.8

  @classmethod
  def from_settings(cls, settings: MatcherSettings, **overrides: Any) -> MatchOptions:
    values: dict[str, Any] = {"time_budget_ms": settings.max_execution_ms, "safety_buffer_ms": settings.safety_buffer_ms, "min_confidence": settings.min_confidence}
    values.update({key: value for key, value in overrides.items() if value is not None})
    return cls(**values)


@dataclass
class MatchStats:
  total_items: int
  assigned_before_run: int
  assigned_this_run: int
  total_assigned: int
  remaining: int
  elapsed_ms: int
  next_item_index: int | None
  pending_assignments: int

  def to_dict(self) -> dict[str, Any]:
    return {
      "totalItems": self.total_items,
      "assignedBeforeRun": self.assigned_before_run,
      "assignedThisRun": self.assigned_this_run,
      "totalAssigned": self.total_assigned,
      "remaining": self.remaining,
      "elapsedMs": self.elapsed_ms,
      "nextItemIndex": self.next_item_index,
      "pendingAssignments": self.pending_assignments,
    }


@dataclass
class MatchRunResult:
  assignments: list[Assignment]
  unmatched_indexes: list[int]
  stats: MatchStats
  has_more: bool
  items: list[DraftItem] = field(default_factory=list)


def score_candidate(candidate: RecipeCandidate, *, meal_type_bonus: float, cuisine_bonus: float) -> float:
  """Similarity plus categorical bonuses, clamped to 1 and rounded to 3 places."""
  confidence = candidate.similarity + (meal_type_bonus if candidate.meal_type_match else 0.0) + (cuisine_bonus if candidate.cuisine_match else 0.0)
  return round(min(1.0, confidence), 3)


def is_compatible(candidate: RecipeCandidate, constraints: MatchConstraints) -> bool:
  """Apply the hard dietary and allergen filters to one candidate."""
  dietary_tags = set(normalize_lowercase(candidate.dietary_tags))
  if constraints.required_dietary and not set(constraints.required_dietary).issubset(dietary_tags):
    return False
  if any(tag in dietary_tags for tag in constraints.blocked_tags):
    return False
  ingredients = normalize_lowercase(candidate.ingredient_names)
  return not any(token in ingredient for token in constraints.blocked_ingredients for ingredient in ingredients)


def pick_best_candidate(candidates: Sequence[RecipeCandidate], constraints: MatchConstraints, *, min_confidence: float, meal_type_bonus: float = 0.08, cuisine_bonus: float = 0.04) -> tuple[RecipeCandidate, float] | None:
  """Return the highest-confidence compatible candidate, or None below the threshold."""
  best: tuple[RecipeCandidate, float] | None = None
  for candidate in candidates:
    if not is_compatible(candidate, constraints):
      continue
    confidence = score_candidate(candidate, meal_type_bonus=meal_type_bonus, cuisine_bonus=cuisine_bonus)
    if best is None or confidence > best[1]:
      best = (candidate, confidence)
  if best is None or best[1] < min_confidence:
    return None
  return best


def _copy_items(items: Sequence[DraftItem]) -> list[DraftItem]:
  return [replace(item, tags=list(item.tags), extra=dict(item.extra)) for item in items]


class RecipeMatcher:
  """Maps unmatched draft items onto existing catalog recipes."""

  def __init__(self, catalog: RecipeCatalog, drafts: DraftsRepository, settings: MatcherSettings, *, clock: Callable[[], float] = monotonic_ms) -> None:
    self._catalog = catalog
    self._drafts = drafts
    self._settings = settings
    self._clock = clock

  async def find_match(self, item: DraftItem, constraints: MatchConstraints, *, user_id: str, min_confidence: float) -> tuple[RecipeCandidate, float] | None:
    query = CandidateQuery(
      title=item.title.strip(),
      meal_type=item.meal_type.strip().lower(),
      cuisine=constraints.cuisine,
      required_dietary=constraints.required_dietary,
      blocked_tags=constraints.blocked_tags,
      user_id=user_id,
    )
    candidates = await self._catalog.find_candidates(query)
    return pick_best_candidate(candidates, constraints, min_confidence=min_confidence, meal_type_bonus=self._settings.meal_type_bonus, cuisine_bonus=self._settings.cuisine_bonus)

  async def assign(self, draft: DraftRecord, preferences: HouseholdPreferences, *, user_id: str, options: MatchOptions) -> MatchRunResult:
    """Run one time-budgeted matching pass over a window of the draft."""
    started = self._clock()
    items = _copy_items(draft.items)
    total_items = len(items)
    assigned_before_run = sum(1 for item in items if item.is_assigned)
    window_start = max(0, options.start_index)
    window_end = total_items if options.max_items is None else min(total_items, window_start + options.max_items)

    assignments: list[Assignment] = []
    unmatched: list[int] = []
    pending = 0
    processed = 0
    dirty = False
    stopped_at: int | None = None

    logger.info("Starting recipe assignment run draft_id=%s total_items=%d already_assigned=%d window=%d..%d", draft.draft_id, total_items, assigned_before_run, window_start, window_end)

    for index in range(window_start, window_end):
      item = items[index]
      if item.is_assigned:
        continue
      if item.is_pending_generation:
        pending += 1
        continue

      elapsed = self._clock() - started
      if options.time_budget_ms - elapsed <= options.safety_buffer_ms:
        stopped_at = index
        logger.info("Stopping assignment run before budget exhaustion draft_id=%s index=%d elapsed_ms=%.0f", draft.draft_id, index, elapsed)
        break

      try:
        constraints = build_constraints(preferences, item.tags)
        match = await self.find_match(item, constraints, user_id=user_id, min_confidence=options.min_confidence)
      except Exception as exc:  # noqa: BLE001
        # One item failing never aborts the batch.
        logger.warning("Assignment failed for item draft_id=%s index=%d error=%s", draft.draft_id, index, exc)
        match = None

      processed += 1
      if match is None:
        unmatched.append(index)
      else:
        candidate, confidence = match
        items[index] = replace(item, recipe_id=candidate.recipe_id, generation_status=None)
        assignments.append(Assignment(item_index=index, recipe_id=candidate.recipe_id, confidence=confidence, source="existing-match"))
        dirty = True
        logger.debug("Matched item draft_id=%s index=%d recipe_id=%s confidence=%.3f", draft.draft_id, index, candidate.recipe_id, confidence)

      if dirty and processed % self._settings.save_interval == 0:
        await self._drafts.save_items(draft.draft_id, items)
        dirty = False

    if dirty:
      await self._drafts.save_items(draft.draft_id, items)

    has_more = stopped_at is not None
    next_item_index = stopped_at
    if not has_more and window_end < total_items:
      tail = [index for index in range(window_end, total_items) if not items[index].is_assigned and not items[index].is_pending_generation]
      if tail:
        has_more = True
        next_item_index = window_end

    total_assigned = assigned_before_run + len(assignments)
    elapsed_ms = int(self._clock() - started)
    stats = MatchStats(
      total_items=total_items,
      assigned_before_run=assigned_before_run,
      assigned_this_run=len(assignments),
      total_assigned=total_assigned,
      remaining=total_items - total_assigned,
      elapsed_ms=elapsed_ms,
      next_item_index=next_item_index,
      pending_assignments=pending,
    )
    logger.info("Recipe assignment run complete draft_id=%s assigned_this_run=%d unmatched=%d has_more=%s elapsed_ms=%d", draft.draft_id, len(assignments), len(unmatched), has_more, elapsed_ms)
    return MatchRunResult(assignments=assignments, unmatched_indexes=unmatched, stats=stats, has_more=has_more, items=items)
