"""Household preference aggregation and the matching constraints derived from it."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

RECOGNIZED_DIETARY_TAGS: tuple[str, ...] = ("vegan", "vegetarian", "pescatarian", "gluten-free", "dairy-free", "halal", "kosher")

_CUISINE_KEYS = ("cuisines", "favorite_cuisines", "preferred_cuisines")
_DISLIKE_KEYS = ("dislikes", "disliked_ingredients")
_DIETARY_KEYS = ("dietary_patterns", "diets", "eating_styles")
_EXCLUDED_KEYS = ("excluded_ingredients", "avoid", "restrictions")
_ALLERGY_KEYS = ("allergies", "allergens")


@dataclass(frozen=True)
class HouseholdPreferences:
  """Combined preferences across the active members of a household."""

  cuisines: tuple[str, ...] = ()
  dislikes: tuple[str, ...] = ()
  dietary_patterns: tuple[str, ...] = ()
  excluded_ingredients: tuple[str, ...] = ()
  allergies: tuple[str, ...] = ()
  convenience_level: str | None = None
  cooking_time: str | None = None
  leftovers_policy: str | None = None
  member_ids: tuple[str, ...] = field(default=())

  def to_dict(self) -> dict[str, Any]:
    return {
      "cuisines": list(self.cuisines),
      "dislikes": list(self.dislikes),
      "dietary_patterns": list(self.dietary_patterns),
      "excluded_ingredients": list(self.excluded_ingredients),
      "allergies": list(self.allergies),
      "convenience_level": self.convenience_level,
      "cooking_time": self.cooking_time,
      "leftovers_policy": self.leftovers_policy,
    }


@dataclass(frozen=True)
class MatchConstraints:
  """Hard constraints applied to one draft item during matching or generation."""

  required_dietary: tuple[str, ...]
  blocked_tags: tuple[str, ...]
  blocked_ingredients: tuple[str, ...]
  cuisine: str | None


def normalize_lowercase(values: Iterable[Any]) -> list[str]:
  """Lowercase, trim and de-duplicate string values while keeping first-seen order."""
  seen: dict[str, None] = {}
  for value in values:
    if not isinstance(value, str):
      continue
    normalized = value.strip().lower()
    if normalized:
      seen.setdefault(normalized, None)
  return list(seen)


def _unique(values: Iterable[str]) -> tuple[str, ...]:
  seen: dict[str, None] = {}
  for value in values:
    trimmed = value.strip()
    if trimmed:
      seen.setdefault(trimmed, None)
  return tuple(seen)


def _collect_lists(source: Mapping[str, Any], keys: Sequence[str], into: list[str]) -> None:
  for key in keys:
    raw = source.get(key)
    if isinstance(raw, list):
      into.extend(entry.strip() for entry in raw if isinstance(entry, str) and entry.strip())


def _most_frequent(values: list[str]) -> str | None:
  if not values:
    return None
  # Counter.most_common keeps first-seen order for ties.
  return Counter(values).most_common(1)[0][0]


def aggregate_preferences(member_sources: Mapping[str, Sequence[Mapping[str, Any]]]) -> HouseholdPreferences:
  """Combine preference documents keyed by member id into one household view.

  Each member may contribute several documents (profile preferences, dietary
  settings, cooking settings). List-valued preferences are unioned; scalar
  cooking preferences take the most frequent value. Cuisines are ordered by how
  many documents mention them so the first entry is the household favourite.
  """
  cuisines: list[str] = []
  dislikes: list[str] = []
  dietary_patterns: list[str] = []
  excluded: list[str] = []
  allergies: list[str] = []
  convenience_levels: list[str] = []
  cooking_times: list[str] = []
  leftovers_policies: list[str] = []

  for sources in member_sources.values():
    for source in sources:
      _collect_lists(source, _CUISINE_KEYS, cuisines)
      _collect_lists(source, _DISLIKE_KEYS, dislikes)
      _collect_lists(source, _DIETARY_KEYS, dietary_patterns)
      _collect_lists(source, _EXCLUDED_KEYS, excluded)
      _collect_lists(source, _ALLERGY_KEYS, allergies)
      for key, bucket in (("convenience_level", convenience_levels), ("cooking_time", cooking_times), ("leftovers_policy", leftovers_policies)):
        value = source.get(key)
        if isinstance(value, str) and value.strip():
          bucket.append(value.strip())

  cuisine_counts = Counter(cuisines)
  ordered_cuisines = sorted(_unique(cuisines), key=lambda cuisine: -cuisine_counts[cuisine])

  return HouseholdPreferences(
    cuisines=tuple(ordered_cuisines),
    dislikes=_unique(dislikes),
    dietary_patterns=_unique(dietary_patterns),
    excluded_ingredients=_unique(excluded),
    allergies=_unique(allergies),
    convenience_level=_most_frequent(convenience_levels),
    cooking_time=_most_frequent(cooking_times),
    leftovers_policy=_most_frequent(leftovers_policies),
    member_ids=tuple(member_sources.keys()),
  )


def required_dietary_tags(preferences: HouseholdPreferences, item_tags: Sequence[str]) -> list[str]:
  """Household dietary patterns plus any recognized dietary tags on the item."""
  item_dietary = [tag for tag in item_tags if isinstance(tag, str) and tag.strip().lower() in RECOGNIZED_DIETARY_TAGS]
  return normalize_lowercase([*preferences.dietary_patterns, *item_dietary])


def blocked_tokens(preferences: HouseholdPreferences) -> tuple[list[str], list[str]]:
  """Return (tag tokens, ingredient tokens) built from allergies and exclusions."""
  tokens = normalize_lowercase([*preferences.allergies, *preferences.excluded_ingredients])
  return [f"contains:{token}" for token in tokens], tokens


def infer_cuisine(item_tags: Sequence[str], preferences: HouseholdPreferences) -> str | None:
  """Pick a cuisine hint from the item's tags, falling back to the household favourite."""
  normalized_tags = normalize_lowercase(item_tags)
  for tag in normalized_tags:
    if tag.startswith("cuisine:"):
      value = tag.split(":", 1)[1].strip()
      if value:
        return value

  household = {cuisine.lower() for cuisine in preferences.cuisines}
  for tag in normalized_tags:
    if tag in household:
      return tag

  if preferences.cuisines:
    return preferences.cuisines[0].lower()
  return None


def build_constraints(preferences: HouseholdPreferences, item_tags: Sequence[str]) -> MatchConstraints:
  tag_tokens, ingredient_tokens = blocked_tokens(preferences)
  return MatchConstraints(
    required_dietary=tuple(required_dietary_tags(preferences, item_tags)),
    blocked_tags=tuple(tag_tokens),
    blocked_ingredients=tuple(ingredient_tokens),
    cuisine=infer_cuisine(item_tags, preferences),
  )


def merge_preferences(base: HouseholdPreferences, session_preferences: Mapping[str, Any] | None) -> HouseholdPreferences:
  """Layer per-request session preferences over the household aggregate."""
  if not session_preferences:
    return base
  session = aggregate_preferences({"session": [session_preferences]})
  return HouseholdPreferences(
    cuisines=_unique([*session.cuisines, *base.cuisines]),
    dislikes=_unique([*base.dislikes, *session.dislikes]),
    dietary_patterns=_unique([*base.dietary_patterns, *session.dietary_patterns]),
    excluded_ingredients=_unique([*base.excluded_ingredients, *session.excluded_ingredients]),
    allergies=_unique([*base.allergies, *session.allergies]),
    convenience_level=session.convenience_level or base.convenience_level,
    cooking_time=session.cooking_time or base.cooking_time,
    leftovers_policy=session.leftovers_policy or base.leftovers_policy,
    member_ids=base.member_ids,
  )
