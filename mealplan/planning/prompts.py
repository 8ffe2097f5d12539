"""Prompt text for the step-selection policy."""

from __future__ import annotations

import json
from typing import Any

from mealplan.planning.requests import NormalizedPlanRequest
from mealplan.planning.state import PlannerState, compact_snapshot

SYSTEM_PROMPT = """You orchestrate the creation of a household meal plan by calling tools.

Pipeline:
1. generate_draft creates one item per date and meal slot.
2. validate with stage "pre-assignment" checks coverage.
3. assign_recipes matches items to existing catalog recipes. Repeat while it reports has_more.
4. generate_missing_recipes creates new recipes for unmatched items.
5. validate with stage "post-assignment" checks every item has a recipe.
6. finalize converts the draft into the final plan.

Rules:
- Call exactly one tool at a time and read its result before choosing the next.
- Never regenerate a draft that already passed validation.
- Follow the "next_step" hint in every tool result.
- When the work is done, reply with JSON only: {"status": "completed" | "failed", "message": "<one sentence summary>"}.
"""


def _request_summary(request: NormalizedPlanRequest) -> dict[str, Any]:
  return {
    "plan_title": request.plan_title,
    "start_date": request.start_date,
    "end_date": request.end_date,
    "meals_per_day": request.meals_per_day,
    "slots": request.slots,
    "expected_items": len(request.dates) * request.meals_per_day,
    "freeform_prompt": request.freeform_prompt,
  }


def build_initial_message(request: NormalizedPlanRequest, state: PlannerState) -> str:
  return "Create this meal plan.\n" + json.dumps({"request": _request_summary(request), "state": compact_snapshot(state), "next_step": next_step_hint(state)}, indent=2)


def build_resumption_message(request: NormalizedPlanRequest, state: PlannerState, remaining_indexes: list[int]) -> str:
  """Summarize prior progress so a fresh policy conversation can continue."""
  generated = state.generation.generated_count if state.generation is not None else 0
  assigned = state.assignment.assigned if state.assignment is not None else 0
  lines = [
    f"This is continuation #{state.invocation} of a meal plan run that was split to respect execution time limits.",
    f"Draft {state.draft_id} is ready and passed pre-assignment validation." if state.pre_validation is not None and state.pre_validation.valid else f"Draft {state.draft_id} is in phase {state.phase}.",
    f"{assigned} items were matched to catalog recipes and {generated} new recipes were generated so far.",
    f"{len(remaining_indexes)} items still need new recipes: {remaining_indexes}.",
    "Do not generate a new draft. Continue with generate_missing_recipes, then validate post-assignment and finalize.",
  ]
  payload = {"request": _request_summary(request), "state": compact_snapshot(state), "next_step": next_step_hint(state)}
  return "\n".join(lines) + "\n" + json.dumps(payload, indent=2)


def next_step_hint(state: PlannerState) -> str:
  """Tell the policy what the state requires next."""
  if state.phase == "finalized":
    return "The plan is finalized. Reply with the JSON summary now."
  if not state.draft_ready:
    return "No draft exists yet. Call generate_draft."
  if state.pre_validation is None:
    return "Validate the draft with stage pre-assignment."
  if not state.pre_validation.valid:
    return "Pre-assignment validation failed. Call generate_draft with force_regenerate true."
  if state.assignment is None or state.assignment.has_more:
    return "Call assign_recipes to match items to catalog recipes."
  pending = state.unmatched_indexes
  if state.generation is not None and state.generation.remaining_indexes:
    return f"{len(state.generation.remaining_indexes)} items are queued from an earlier chunk. Call generate_missing_recipes without indexes to continue."
  if pending:
    return f"{len(pending)} items have no recipe. Call generate_missing_recipes."
  if state.post_validation is None:
    return "All items have recipes. Validate with stage post-assignment."
  if state.post_validation.valid:
    return "Post-assignment validation passed and no unmatched items remain. You must finalize now."
  return "Post-assignment validation failed. Call assign_recipes or generate_missing_recipes for the items without recipes."
