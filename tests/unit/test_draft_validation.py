from __future__ import annotations

from conftest import build_draft, build_request

from mealplan.jobs.models import DraftItem
from mealplan.planning.validation import validate, validate_draft


def test_missing_slot_is_reported_as_coverage_error() -> None:
  request = build_request(start_date="2024-01-01", end_date="2024-01-07", meals_per_day=3)
  draft = build_draft(request, skip_slots={("2024-01-02", "lunch")})

  snapshot = validate(draft, request, "pre-assignment")

  assert snapshot.valid is False
  assert snapshot.expected_items == 21
  assert snapshot.item_count == 20
  codes = [(issue.code, issue.message) for issue in snapshot.errors]
  assert codes == [("missing-coverage", "No item covers 2024-01-02 lunch")]


def test_duplicate_coverage_is_only_a_warning() -> None:
  request = build_request(start_date="2024-01-01", end_date="2024-01-01", meals_per_day=1)
  items = [DraftItem(date="2024-01-01", meal_type="breakfast", title="Oats"), DraftItem(date="2024-01-01", meal_type="Breakfast", title="Toast")]

  snapshot = validate_draft(items, start_date=request.start_date, end_date=request.end_date, meals_per_day=1, stage="pre-assignment")

  assert snapshot.valid is True
  assert [issue.code for issue in snapshot.warnings] == ["duplicate-slot"]


def test_item_field_errors() -> None:
  items = [
    DraftItem(date="2023-12-31", meal_type="breakfast", title="Early"),
    DraftItem(date="2024-01-01", meal_type="brunch", title="Odd"),
    DraftItem(date="2024-01-01", meal_type="breakfast", title="  "),
  ]

  snapshot = validate_draft(items, start_date="2024-01-01", end_date="2024-01-01", meals_per_day=1, stage="pre-assignment")

  codes = {issue.code for issue in snapshot.errors}
  assert {"date-out-of-range", "unknown-slot", "missing-title"} <= codes


def test_post_assignment_requires_recipe_ids() -> None:
  request = build_request(end_date="2024-01-01", meals_per_day=2)
  draft = build_draft(request)
  draft.items[0].recipe_id = "recipe-1"

  pre = validate(draft, request, "pre-assignment")
  post = validate(draft, request, "post-assignment")

  assert pre.valid is True
  assert post.valid is False
  assert [issue.item_index for issue in post.errors] == [1]
  assert post.errors[0].code == "missing-recipe"
