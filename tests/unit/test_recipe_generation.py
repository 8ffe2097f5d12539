from __future__ import annotations

import pytest
from conftest import FakeRecipeSource, InMemoryDraftsRepo, build_draft, build_request

from mealplan.clients.recipe_generator import GeneratedRecipe
from mealplan.config import PlannerSettings
from mealplan.core.errors import RecipeGenerationError
from mealplan.planning.generation import RecipeBatchGenerator
from mealplan.planning.preferences import HouseholdPreferences


def _twenty_item_draft(drafts: InMemoryDraftsRepo):
  request = build_request(start_date="2024-01-01", end_date="2024-01-10", meals_per_day=2)
  return drafts.add(build_draft(request))


@pytest.mark.anyio
async def test_one_call_processes_a_single_chunk() -> None:
  drafts = InMemoryDraftsRepo()
  draft = _twenty_item_draft(drafts)
  source = FakeRecipeSource()
  generator = RecipeBatchGenerator(source, drafts, PlannerSettings())

  result = await generator.run_chunk(draft, list(range(20)), HouseholdPreferences())

  assert [assignment.item_index for assignment in result.generated] == list(range(7))
  assert result.remaining_indexes == list(range(7, 20))
  assert result.has_more is True
  assert all(assignment.source == "newly-generated" and assignment.confidence == 1.0 for assignment in result.generated)
  stored = drafts.drafts[draft.draft_id]
  assert stored.items[6].recipe_id == "gen-6"
  assert stored.items[6].generation_status.state == "resolved"
  assert stored.items[7].recipe_id is None
  assert stored.items[7].generation_status is None


@pytest.mark.anyio
async def test_resumed_chunks_reach_the_same_end_state_as_one_long_run() -> None:
  chunked_drafts = InMemoryDraftsRepo()
  draft = _twenty_item_draft(chunked_drafts)
  chunked = RecipeBatchGenerator(FakeRecipeSource(), chunked_drafts, PlannerSettings())
  remaining = list(range(20))
  invocations = 0
  while remaining:
    invocations += 1
    result = await chunked.run_chunk(chunked_drafts.drafts[draft.draft_id], remaining, HouseholdPreferences())
    remaining = result.remaining_indexes

  single_drafts = InMemoryDraftsRepo()
  single_draft = _twenty_item_draft(single_drafts)
  single = RecipeBatchGenerator(FakeRecipeSource(), single_drafts, PlannerSettings(chunk_size=50))
  await single.run_chunk(single_draft, list(range(20)), HouseholdPreferences())

  assert invocations == 3
  chunked_ids = [item.recipe_id for item in chunked_drafts.drafts[draft.draft_id].items]
  single_ids = [item.recipe_id for item in single_drafts.drafts[single_draft.draft_id].items]
  assert chunked_ids == single_ids == [f"gen-{index}" for index in range(20)]


@pytest.mark.anyio
async def test_timeouts_are_retried_and_other_errors_are_not() -> None:
  drafts = InMemoryDraftsRepo()
  draft = _twenty_item_draft(drafts)
  timeout = RecipeGenerationError("provider-timeout", "Recipe generator timed out")
  source = FakeRecipeSource(
    {
      0: [timeout, timeout, GeneratedRecipe(recipe_id="late", slug=None, title="x")],
      1: [RecipeGenerationError("constraint-violation", "contains peanut", violations=["peanut"])],
      2: [timeout, timeout, timeout],
    }
  )
  generator = RecipeBatchGenerator(source, drafts, PlannerSettings(chunk_size=3))

  result = await generator.run_chunk(draft, [0, 1, 2], HouseholdPreferences())

  assert [assignment.recipe_id for assignment in result.generated] == ["late"]
  assert result.failed_indexes == [1, 2]
  calls_per_index = [spec.item_index for spec in source.calls]
  assert calls_per_index.count(0) == 3
  assert calls_per_index.count(1) == 1
  assert calls_per_index.count(2) == 3
  violation = next(fault for fault in result.faults if fault.details["index"] == 1)
  assert violation.details["code"] == "constraint-violation"
  assert violation.details["violations"] == ["peanut"]
  # Failed items go back to the unmatched pool.
  assert drafts.drafts[draft.draft_id].unassigned_indexes()[:2] == [1, 2]


@pytest.mark.anyio
async def test_accepted_items_stay_pending_for_callbacks() -> None:
  drafts = InMemoryDraftsRepo()
  draft = _twenty_item_draft(drafts)
  generator = RecipeBatchGenerator(FakeRecipeSource(accept_async=True), drafts, PlannerSettings())

  result = await generator.run_chunk(draft, [4, 5], HouseholdPreferences())

  assert result.awaiting_indexes == [4, 5]
  assert result.generated == []
  assert drafts.drafts[draft.draft_id].pending_indexes() == [4, 5]


@pytest.mark.anyio
async def test_spec_carries_constraints_and_a_stable_idempotency_key() -> None:
  drafts = InMemoryDraftsRepo()
  draft = _twenty_item_draft(drafts)
  source = FakeRecipeSource()
  generator = RecipeBatchGenerator(source, drafts, PlannerSettings())
  prefs = HouseholdPreferences(dietary_patterns=("vegan",), allergies=("peanut",))

  await generator.run_chunk(draft, [3], prefs, session_preferences={"max_prep_min": 20})

  spec = source.calls[0]
  assert spec.idempotency_key == f"{draft.draft_id}:3"
  assert spec.constraints.required_dietary == ("vegan",)
  assert spec.constraints.blocked_ingredients == ("peanut",)
  assert spec.constraints.max_prep_min == 20
  assert spec.servings == 2


@pytest.mark.anyio
async def test_exhausted_budget_defers_the_remaining_batches() -> None:
  drafts = InMemoryDraftsRepo()
  draft = _twenty_item_draft(drafts)
  ticks = iter([0.0, 0.0, 50_000.0, 50_000.0, 50_000.0])

  def clock() -> float:
    return next(ticks, 50_000.0)

  generator = RecipeBatchGenerator(FakeRecipeSource(), drafts, PlannerSettings(), clock=clock)

  result = await generator.run_chunk(draft, list(range(7)), HouseholdPreferences())

  assert [assignment.item_index for assignment in result.generated] == [0, 1, 2]
  assert result.remaining_indexes == [3, 4, 5, 6]
  assert all(drafts.drafts[draft.draft_id].items[index].generation_status is None for index in (3, 4, 5, 6))
