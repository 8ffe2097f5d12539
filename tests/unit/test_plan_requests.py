from __future__ import annotations

import pytest

from mealplan.core.errors import RequestValidationFailure
from mealplan.planning.requests import canonical_json, determine_scope, normalize_plan_request, payload_signature


def test_camel_and_snake_case_normalize_to_the_same_signature() -> None:
  snake = {"start_date": "2024-03-01", "end_date": "2024-03-07", "meals_per_day": 3, "household_id": "house-1"}
  camel = {"startDate": "2024-03-01", "endDate": "2024-03-07", "mealsPerDay": 3, "householdId": "house-1"}

  first, first_signature = normalize_plan_request(snake, user_id="user-1")
  second, second_signature = normalize_plan_request(camel, user_id="user-1")

  assert first == second
  assert first_signature == second_signature
  assert first.plan_title == "Meal Plan 2024-03-01 - 2024-03-07"
  assert first.scope == "weekly"
  assert first.timezone == "UTC"
  assert first.slots == ["breakfast", "lunch", "dinner"]


def test_signature_ignores_key_order_but_not_values() -> None:
  assert payload_signature({"a": 1, "b": {"y": 2, "x": 1}}) == payload_signature({"b": {"x": 1, "y": 2}, "a": 1})
  assert payload_signature({"a": 1}) != payload_signature({"a": 2})
  assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


def test_fallback_household_is_used_when_omitted() -> None:
  request, _ = normalize_plan_request({"start_date": "2024-03-01", "end_date": "2024-03-01", "meals_per_day": 1}, user_id="user-1", fallback_household_id="house-9")
  assert request.household_id == "house-9"
  assert request.scope == "daily"


@pytest.mark.parametrize(
  ("raw", "fragment"),
  [
    ({"start_date": "2024-03-01", "end_date": "2024-03-01", "meals_per_day": 1}, "household_id is required"),
    ({"start_date": "03/01/2024", "end_date": "2024-03-01", "meals_per_day": 1, "household_id": "h"}, "YYYY-MM-DD"),
    ({"start_date": "2024-03-05", "end_date": "2024-03-01", "meals_per_day": 1, "household_id": "h"}, "end_date must be greater"),
    ({"start_date": "2024-03-01", "end_date": "2024-03-01", "meals_per_day": 7, "household_id": "h"}, "between 1 and 6"),
    ({"end_date": "2024-03-01", "meals_per_day": 1, "household_id": "h"}, "start_date is required"),
  ],
)
def test_invalid_requests_are_rejected(raw: dict, fragment: str) -> None:
  with pytest.raises(RequestValidationFailure) as excinfo:
    normalize_plan_request(raw, user_id="user-1")
  assert fragment in excinfo.value.message


def test_scope_boundaries() -> None:
  assert determine_scope("2024-01-01", "2024-01-07") == "weekly"
  assert determine_scope("2024-01-01", "2024-01-08") == "monthly"
