"""Read-only recipe catalog interface used by the matcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class CandidateQuery:
  """Lookup parameters for one draft item."""

  title: str
  meal_type: str
  cuisine: str | None
  required_dietary: tuple[str, ...]
  blocked_tags: tuple[str, ...]
  user_id: str


@dataclass(frozen=True)
class RecipeCandidate:
  """A catalog recipe annotated with similarity and categorical match flags."""

  recipe_id: str
  title: str
  similarity: float
  cuisine: str | None = None
  dietary_tags: tuple[str, ...] = ()
  ingredient_names: tuple[str, ...] = field(default=())
  meal_type_match: bool = False
  cuisine_match: bool = False


class RecipeCatalog(Protocol):
  """Repository contract for candidate lookup."""

  async def find_candidates(self, query: CandidateQuery) -> list[RecipeCandidate]:
    """Return candidates ranked by title similarity, best first."""
