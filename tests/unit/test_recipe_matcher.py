from __future__ import annotations

from dataclasses import replace

import pytest
from conftest import InMemoryCatalog, InMemoryDraftsRepo, build_draft, build_request

from mealplan.config import MatcherSettings
from mealplan.jobs.models import GenerationStatus
from mealplan.planning.matcher import MatchOptions, RecipeMatcher, pick_best_candidate, score_candidate
from mealplan.planning.preferences import HouseholdPreferences, build_constraints
from mealplan.storage.recipes_repo import RecipeCandidate


class SteppingClock:
  """Fake clock that only moves when the catalog is queried."""

  def __init__(self) -> None:
    self.now = 0.0

  def __call__(self) -> float:
    return self.now


class SlowCatalog(InMemoryCatalog):
  def __init__(self, clock: SteppingClock, cost_ms: float, recipes=None) -> None:
    super().__init__(recipes)
    self._clock = clock
    self._cost_ms = cost_ms

  async def find_candidates(self, query):
    self._clock.now += self._cost_ms
    return await super().find_candidates(query)


def _catalog_for(draft) -> list[dict]:
  return [{"recipe_id": f"recipe-{index}", "title": item.title, "meal_type": item.meal_type, "dietary_tags": ["vegan"]} for index, item in enumerate(draft.items)]


def test_allergen_in_ingredients_rejects_even_a_perfect_title_match() -> None:
  prefs = HouseholdPreferences(dietary_patterns=("vegan",), allergies=("peanut",))
  constraints = build_constraints(prefs, [])
  candidate = RecipeCandidate(recipe_id="r1", title="Satay noodles", similarity=1.0, dietary_tags=("vegan",), ingredient_names=("Peanut Butter", "noodles"), meal_type_match=True)

  assert pick_best_candidate([candidate], constraints, min_confidence=0.8) is None


def test_required_dietary_tags_must_all_be_present() -> None:
  constraints = build_constraints(HouseholdPreferences(dietary_patterns=("vegan", "gluten-free")), [])
  partial = RecipeCandidate(recipe_id="r1", title="Salad", similarity=0.95, dietary_tags=("vegan",))
  full = RecipeCandidate(recipe_id="r2", title="Salad", similarity=0.9, dietary_tags=("Vegan", "gluten-free"))

  best = pick_best_candidate([partial, full], constraints, min_confidence=0.8)

  assert best is not None
  assert best[0].recipe_id == "r2"


def test_confidence_adds_bonuses_and_clamps() -> None:
  base = RecipeCandidate(recipe_id="r1", title="x", similarity=0.75)
  assert score_candidate(base, meal_type_bonus=0.08, cuisine_bonus=0.04) == 0.75
  assert score_candidate(replace(base, meal_type_match=True), meal_type_bonus=0.08, cuisine_bonus=0.04) == 0.83
  assert score_candidate(replace(base, meal_type_match=True, cuisine_match=True), meal_type_bonus=0.08, cuisine_bonus=0.04) == 0.87
  assert score_candidate(replace(base, similarity=0.99, meal_type_match=True), meal_type_bonus=0.08, cuisine_bonus=0.04) == 1.0


def test_meal_type_bonus_can_lift_a_candidate_over_the_threshold() -> None:
  constraints = build_constraints(HouseholdPreferences(), [])
  candidate = RecipeCandidate(recipe_id="r1", title="x", similarity=0.75)
  assert pick_best_candidate([candidate], constraints, min_confidence=0.8) is None
  assert pick_best_candidate([replace(candidate, meal_type_match=True)], constraints, min_confidence=0.8) is not None


@pytest.mark.anyio
async def test_assign_matches_items_and_saves_periodically() -> None:
  request = build_request(start_date="2024-01-01", end_date="2024-01-07", meals_per_day=3)
  drafts = InMemoryDraftsRepo()
  draft = drafts.add(build_draft(request))
  catalog = InMemoryCatalog(_catalog_for(draft)[:-1])
  matcher = RecipeMatcher(catalog, drafts, MatcherSettings())

  run = await matcher.assign(draft, HouseholdPreferences(dietary_patterns=("vegan",)), user_id="user-1", options=MatchOptions.from_settings(MatcherSettings()))

  assert len(run.assignments) == 20
  assert run.unmatched_indexes == [20]
  assert run.has_more is False
  assert run.stats.total_assigned == 20
  assert all(assignment.source == "existing-match" for assignment in run.assignments)
  assert drafts.saves >= 20 // 3
  stored = drafts.drafts[draft.draft_id]
  assert stored.items[0].recipe_id == "recipe-0"
  assert stored.items[20].recipe_id is None


@pytest.mark.anyio
async def test_assign_stops_before_the_time_budget_runs_out() -> None:
  request = build_request(start_date="2024-01-01", end_date="2024-01-05", meals_per_day=2)
  drafts = InMemoryDraftsRepo()
  draft = drafts.add(build_draft(request))
  clock = SteppingClock()
  catalog = SlowCatalog(clock, 100, _catalog_for(draft))
  matcher = RecipeMatcher(catalog, drafts, MatcherSettings(), clock=clock)
  options = MatchOptions(time_budget_ms=200, safety_buffer_ms=0)

  run = await matcher.assign(draft, HouseholdPreferences(), user_id="user-1", options=options)

  assert len(draft.items) == 10
  assert run.has_more is True
  assert run.stats.next_item_index == 2
  assert [assignment.item_index for assignment in run.assignments] == [0, 1]

  resumed = await matcher.assign(drafts.drafts[draft.draft_id], HouseholdPreferences(), user_id="user-1", options=replace(options, start_index=2, time_budget_ms=10_000))
  assert resumed.has_more is False
  assert resumed.stats.total_assigned == 10


@pytest.mark.anyio
async def test_assign_is_idempotent_and_skips_pending_items() -> None:
  request = build_request(end_date="2024-01-01", meals_per_day=3)
  drafts = InMemoryDraftsRepo()
  draft = build_draft(request)
  draft.items[0].recipe_id = "kept-recipe"
  draft.items[1].generation_status = GenerationStatus(state="pending", item_index=1)
  drafts.add(draft)
  matcher = RecipeMatcher(InMemoryCatalog(_catalog_for(draft)), drafts, MatcherSettings())
  options = MatchOptions.from_settings(MatcherSettings())

  first = await matcher.assign(draft, HouseholdPreferences(), user_id="user-1", options=options)
  second = await matcher.assign(drafts.drafts[draft.draft_id], HouseholdPreferences(), user_id="user-1", options=options)

  assert [assignment.item_index for assignment in first.assignments] == [2]
  assert first.stats.pending_assignments == 1
  assert second.assignments == []
  stored = drafts.drafts[draft.draft_id]
  assert stored.items[0].recipe_id == "kept-recipe"
  assert stored.items[1].recipe_id is None


@pytest.mark.anyio
async def test_window_reports_remaining_tail() -> None:
  request = build_request(end_date="2024-01-02", meals_per_day=2)
  drafts = InMemoryDraftsRepo()
  draft = drafts.add(build_draft(request))
  matcher = RecipeMatcher(InMemoryCatalog(_catalog_for(draft)), drafts, MatcherSettings())

  run = await matcher.assign(draft, HouseholdPreferences(), user_id="user-1", options=MatchOptions(max_items=2))

  assert run.has_more is True
  assert run.stats.next_item_index == 2
  assert run.stats.remaining == 2


@pytest.mark.anyio
async def test_lowering_min_confidence_never_loses_matches() -> None:
  request = build_request(end_date="2024-01-02", meals_per_day=3)
  template = build_draft(request)
  recipes = [
    {"recipe_id": "exact-0", "title": template.items[0].title, "meal_type": template.items[0].meal_type},
    {"recipe_id": "exact-1", "title": template.items[1].title, "meal_type": template.items[1].meal_type},
    {"recipe_id": "variant-2", "title": f"Grandma's {template.items[2].title} bake", "meal_type": template.items[2].meal_type},
    {"recipe_id": "variant-3", "title": f"{template.items[3].title} with greens", "meal_type": template.items[3].meal_type},
  ]

  counts = []
  for threshold in (0.95, 0.8, 0.5, 0.0):
    drafts = InMemoryDraftsRepo()
    draft = drafts.add(build_draft(request))
    matcher = RecipeMatcher(InMemoryCatalog(recipes), drafts, MatcherSettings())
    run = await matcher.assign(draft, HouseholdPreferences(), user_id="user-1", options=MatchOptions(min_confidence=threshold))
    counts.append(len(run.assignments))

  assert counts == sorted(counts)
  assert counts[0] >= 2
  assert counts[-1] == len(template.items)
