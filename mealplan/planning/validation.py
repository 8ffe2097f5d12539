"""Structural validation of a draft against the request that produced it."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from mealplan.jobs.models import DraftItem, DraftRecord
from mealplan.planning.requests import NormalizedPlanRequest, derive_slots, expected_dates
from mealplan.planning.state import ValidationIssue, ValidationSnapshot, ValidationStage


def validate_draft(items: Sequence[DraftItem], *, start_date: str, end_date: str, meals_per_day: int, stage: ValidationStage) -> ValidationSnapshot:
  """Check coverage and per-item fields, returning a verdict.

  The draft is valid when no issue has error severity. Missing (date, slot)
  coverage is an error; duplicate coverage is only a warning. The
  post-assignment stage also requires every item to carry a recipe id.
  """
  dates = expected_dates(start_date, end_date)
  slots = derive_slots(meals_per_day)
  date_set = set(dates)
  slot_set = set(slots)
  issues: list[ValidationIssue] = []
  coverage: Counter[tuple[str, str]] = Counter()

  for index, item in enumerate(items):
    slot = item.meal_type.strip().lower()
    if item.date not in date_set:
      issues.append(ValidationIssue(code="date-out-of-range", severity="error", message=f"Item {index} has date {item.date or '<empty>'} outside {start_date}..{end_date}", item_index=index, date=item.date, slot=slot))
    if slot not in slot_set:
      issues.append(ValidationIssue(code="unknown-slot", severity="error", message=f"Item {index} has unexpected meal type {item.meal_type or '<empty>'}", item_index=index, date=item.date, slot=slot))
    if not item.title.strip():
      issues.append(ValidationIssue(code="missing-title", severity="error", message=f"Item {index} has an empty title", item_index=index, date=item.date, slot=slot))
    if stage == "post-assignment" and not (item.recipe_id or "").strip():
      issues.append(ValidationIssue(code="missing-recipe", severity="error", message=f"Item {index} ({item.date} {slot}) has no recipe assigned", item_index=index, date=item.date, slot=slot))
    coverage[(item.date, slot)] += 1

  for day in dates:
    for slot in slots:
      count = coverage.get((day, slot), 0)
      if count == 0:
        issues.append(ValidationIssue(code="missing-coverage", severity="error", message=f"No item covers {day} {slot}", date=day, slot=slot))
      elif count > 1:
        issues.append(ValidationIssue(code="duplicate-slot", severity="warning", message=f"{count} items cover {day} {slot}", date=day, slot=slot))

  valid = not any(issue.severity == "error" for issue in issues)
  return ValidationSnapshot(stage=stage, valid=valid, issues=issues, expected_items=len(dates) * len(slots), item_count=len(items))


def validate(draft: DraftRecord, request: NormalizedPlanRequest, stage: ValidationStage) -> ValidationSnapshot:
  """Validate a draft snapshot using the date range and meal count of the request."""
  return validate_draft(draft.items, start_date=request.start_date, end_date=request.end_date, meals_per_day=request.meals_per_day, stage=stage)
