"""Plan request normalization, slot derivation and the canonical payload signature."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from mealplan.core.errors import RequestValidationFailure

SLOT_VOCABULARY: tuple[str, ...] = ("breakfast", "lunch", "dinner", "snack", "supper", "dessert")
MAX_MEALS_PER_DAY = len(SLOT_VOCABULARY)

_ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

PlanScope = Literal["daily", "weekly", "monthly"]


def derive_slots(meals_per_day: int) -> list[str]:
  """Return the ordered slot labels for a meals-per-day count."""
  return list(SLOT_VOCABULARY[: max(0, meals_per_day)])


def expected_dates(start_date: str, end_date: str) -> list[str]:
  """Return every ISO date from start to end inclusive."""
  start = date.fromisoformat(start_date)
  end = date.fromisoformat(end_date)
  return [(start + timedelta(days=offset)).isoformat() for offset in range((end - start).days + 1)]


def determine_scope(start_date: str, end_date: str) -> PlanScope:
  days = (date.fromisoformat(end_date) - date.fromisoformat(start_date)).days + 1
  if days <= 1:
    return "daily"
  if days <= 7:
    return "weekly"
  return "monthly"


def _blank_to_none(value: Any) -> Any:
  if isinstance(value, str):
    stripped = value.strip()
    return stripped or None
  return value


class PlanRequestBody(BaseModel):
  """Raw ingress body; accepts snake_case and camelCase keys."""

  model_config = ConfigDict(extra="ignore")

  start_date: str = Field(validation_alias=AliasChoices("start_date", "startDate"))
  end_date: str = Field(validation_alias=AliasChoices("end_date", "endDate"))
  meals_per_day: int = Field(validation_alias=AliasChoices("meals_per_day", "mealsPerDay"))
  household_id: str | None = Field(default=None, validation_alias=AliasChoices("household_id", "householdId"))
  plan_title: str | None = Field(default=None, validation_alias=AliasChoices("plan_title", "planTitle"))
  freeform_prompt: str | None = Field(default=None, validation_alias=AliasChoices("freeform_prompt", "freeformPrompt"))
  use_user_preferences: bool = Field(default=True, validation_alias=AliasChoices("use_user_preferences", "applyProfilePreferences"))
  auto_generate_grocery_list: bool = Field(default=True, validation_alias=AliasChoices("auto_generate_grocery_list", "autoGenerateGroceryList"))
  include_pantry_inventory: bool = Field(default=True, validation_alias=AliasChoices("include_pantry_inventory", "includePantryInventory"))
  session_preferences: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("session_preferences", "sessionPreferences"))

  @field_validator("household_id", "plan_title", "freeform_prompt", mode="before")
  @classmethod
  def _strip_optional(cls, value: Any) -> Any:
    return _blank_to_none(value)

  @field_validator("start_date", "end_date", mode="before")
  @classmethod
  def _validate_date(cls, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
      raise ValueError("is required")
    stripped = value.strip()
    if not _ISO_DATE_PATTERN.match(stripped):
      raise ValueError("must be formatted as YYYY-MM-DD")
    try:
      date.fromisoformat(stripped)
    except ValueError as exc:
      raise ValueError("is not a valid date") from exc
    return stripped

  @field_validator("meals_per_day")
  @classmethod
  def _validate_meals_per_day(cls, value: int) -> int:
    if value < 1 or value > MAX_MEALS_PER_DAY:
      raise ValueError(f"must be between 1 and {MAX_MEALS_PER_DAY}")
    return value

  @field_validator("session_preferences", mode="before")
  @classmethod
  def _coerce_preferences(cls, value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}

  @model_validator(mode="after")
  def _check_range(self) -> PlanRequestBody:
    if self.end_date < self.start_date:
      raise ValueError("end_date must be greater than or equal to start_date")
    return self


@dataclass(frozen=True)
class NormalizedPlanRequest:
  """The immutable request stored as the job payload."""

  user_id: str
  household_id: str
  plan_title: str
  start_date: str
  end_date: str
  scope: PlanScope
  timezone: str
  meals_per_day: int
  use_user_preferences: bool = True
  session_preferences: dict[str, Any] = field(default_factory=dict, hash=False)
  freeform_prompt: str | None = None
  auto_generate_grocery_list: bool = True
  include_pantry_inventory: bool = True

  def to_payload(self) -> dict[str, Any]:
    return asdict(self)

  @classmethod
  def from_payload(cls, payload: dict[str, Any]) -> NormalizedPlanRequest:
    known = {name: payload[name] for name in cls.__dataclass_fields__ if name in payload}
    return cls(**known)

  @property
  def slots(self) -> list[str]:
    return derive_slots(self.meals_per_day)

  @property
  def dates(self) -> list[str]:
    return expected_dates(self.start_date, self.end_date)


def _format_validation_error(exc: ValidationError) -> str:
  messages: list[str] = []
  for error in exc.errors():
    location = ".".join(str(part) for part in error.get("loc", ()) if part != "__root__")
    message = str(error.get("msg", "invalid value")).removeprefix("Value error, ")
    if error.get("type") == "missing":
      message = "is required"
    messages.append(f"{location} {message}".strip() if location else message)
  return "; ".join(messages)


def canonical_json(payload: Any) -> str:
  """Serialize with recursively sorted keys and compact separators."""
  return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def payload_signature(payload: dict[str, Any]) -> str:
  """Stable SHA-256 hex digest of the canonical payload."""
  return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def normalize_plan_request(raw: Any, *, user_id: str, fallback_household_id: str | None = None) -> tuple[NormalizedPlanRequest, str]:
  """Validate a raw body and return the normalized request with its signature."""
  if not isinstance(raw, dict):
    raise RequestValidationFailure("Request payload must be a JSON object")
  try:
    body = PlanRequestBody.model_validate(raw)
  except ValidationError as exc:
    raise RequestValidationFailure(_format_validation_error(exc)) from exc

  household_id = body.household_id or fallback_household_id
  if not household_id:
    raise RequestValidationFailure("household_id is required")

  normalized = NormalizedPlanRequest(
    user_id=user_id,
    household_id=household_id,
    plan_title=body.plan_title or f"Meal Plan {body.start_date} - {body.end_date}",
    start_date=body.start_date,
    end_date=body.end_date,
    scope=determine_scope(body.start_date, body.end_date),
    timezone="UTC",
    meals_per_day=body.meals_per_day,
    use_user_preferences=body.use_user_preferences,
    session_preferences=body.session_preferences,
    freeform_prompt=body.freeform_prompt,
    auto_generate_grocery_list=body.auto_generate_grocery_list,
    include_pantry_inventory=body.include_pantry_inventory,
  )
  return normalized, payload_signature(normalized.to_payload())
