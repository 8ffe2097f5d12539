"""Domain models for asynchronous meal plan jobs and their drafts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

JobStatus = Literal["pending", "processing", "completed", "failed"]
JobType = Literal["meal_plan_generation"]
DraftStatus = Literal["generating", "completed", "failed", "expired", "converted"]
GenerationState = Literal["pending", "resolved"]
GenerationSource = Literal["recipes_ai", "ai_tools"]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
ACTIVE_JOB_STATUSES: tuple[str, ...] = ("pending", "processing")

# Allowed lifecycle transitions; terminal states have no outgoing edges.
JOB_TRANSITIONS: dict[str, frozenset[str]] = {
  "pending": frozenset({"processing", "failed"}),
  "processing": frozenset({"processing", "completed", "failed"}),
  "completed": frozenset(),
  "failed": frozenset(),
}


@dataclass
class JobRecord:
  """Represents one plan-generation request and its lifecycle."""

  job_id: str
  user_id: str
  job_type: JobType
  status: JobStatus
  progress: int
  payload: dict[str, Any]
  meta: dict[str, Any] = field(default_factory=dict)
  result: dict[str, Any] | None = None
  error: str | None = None
  created_at: str | None = None
  updated_at: str | None = None
  completed_at: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_JOB_STATUSES


@dataclass
class GenerationStatus:
  """Marker for an outstanding new-recipe generation on a draft item."""

  state: GenerationState
  item_index: int
  requested_at: str | None = None
  resolved_at: str | None = None
  recipe_id: str | None = None
  source: GenerationSource = "recipes_ai"

  @classmethod
  def from_dict(cls, raw: Any, *, fallback_index: int) -> GenerationStatus | None:
    """Parse a stored marker, ignoring malformed values."""
    if not isinstance(raw, dict):
      return None
    state = raw.get("state")
    if state not in ("pending", "resolved"):
      return None
    item_index = raw.get("item_index")
    source = raw.get("source")
    return cls(
      state=state,
      item_index=item_index if isinstance(item_index, int) else fallback_index,
      requested_at=raw.get("requested_at"),
      resolved_at=raw.get("resolved_at"),
      recipe_id=raw.get("recipe_id"),
      source=source if source in ("recipes_ai", "ai_tools") else "recipes_ai",
    )

  def to_dict(self) -> dict[str, Any]:
    payload: dict[str, Any] = {"state": self.state, "item_index": self.item_index, "source": self.source}
    if self.requested_at:
      payload["requested_at"] = self.requested_at
    if self.resolved_at:
      payload["resolved_at"] = self.resolved_at
    if self.recipe_id:
      payload["recipe_id"] = self.recipe_id
    return payload


@dataclass
class DraftItem:
  """A single (date, meal slot) entry in a draft plan."""

  date: str
  meal_type: str
  title: str
  description: str | None = None
  servings: int | None = None
  tags: list[str] = field(default_factory=list)
  recipe_id: str | None = None
  generation_status: GenerationStatus | None = None
  extra: dict[str, Any] = field(default_factory=dict)

  _KNOWN_KEYS = ("date", "meal_type", "title", "description", "servings", "tags", "recipe_id", "generation_status")

  @classmethod
  def from_dict(cls, raw: dict[str, Any], *, index: int) -> DraftItem:
    """Build an item from its stored JSON form, keeping unknown keys intact."""
    tags = raw.get("tags")
    servings = raw.get("servings")
    recipe_id = raw.get("recipe_id")
    return cls(
      date=str(raw.get("date") or ""),
      meal_type=str(raw.get("meal_type") or ""),
      title=str(raw.get("title") or ""),
      description=raw.get("description"),
      servings=servings if isinstance(servings, int) else None,
      tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
      recipe_id=recipe_id if isinstance(recipe_id, str) and recipe_id.strip() else None,
      generation_status=GenerationStatus.from_dict(raw.get("generation_status"), fallback_index=index),
      extra={key: value for key, value in raw.items() if key not in cls._KNOWN_KEYS},
    )

  def to_dict(self) -> dict[str, Any]:
    payload: dict[str, Any] = dict(self.extra)
    payload.update({"date": self.date, "meal_type": self.meal_type, "title": self.title, "tags": list(self.tags)})
    if self.description is not None:
      payload["description"] = self.description
    if self.servings is not None:
      payload["servings"] = self.servings
    if self.recipe_id:
      payload["recipe_id"] = self.recipe_id
    if self.generation_status is not None:
      payload["generation_status"] = self.generation_status.to_dict()
    return payload

  @property
  def is_assigned(self) -> bool:
    return bool(self.recipe_id)

  @property
  def is_pending_generation(self) -> bool:
    return self.generation_status is not None and self.generation_status.state == "pending"


@dataclass
class DraftRecord:
  """The working plan produced by draft generation."""

  draft_id: str
  user_id: str
  household_id: str
  status: DraftStatus
  start_date: str
  end_date: str
  meals_per_day: int
  items: list[DraftItem] = field(default_factory=list)
  job_id: str | None = None
  plan_title: str | None = None
  error_message: str | None = None
  meal_plan_id: str | None = None
  created_at: str | None = None
  updated_at: str | None = None

  def unassigned_indexes(self) -> list[int]:
    """Return indexes that still need a recipe and are not awaiting generation."""
    return [index for index, item in enumerate(self.items) if not item.is_assigned and not item.is_pending_generation]

  def pending_indexes(self) -> list[int]:
    return [index for index, item in enumerate(self.items) if not item.is_assigned and item.is_pending_generation]
