"""Postgres recipe catalog using ``pg_trgm`` similarity with a client-side fallback."""

from __future__ import annotations

import logging

from sqlalchemy import Select, func, or_, select, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from mealplan.config import MatcherSettings
from mealplan.core.database import require_session_factory
from mealplan.core.errors import StorageError
from mealplan.planning.preferences import normalize_lowercase
from mealplan.planning.similarity import trigram_similarity
from mealplan.schema.recipes import Recipe, RecipeIngredient, RecipeTag
from mealplan.storage.recipes_repo import CandidateQuery, RecipeCandidate, RecipeCatalog

logger = logging.getLogger(__name__)

_SIMILARITY_SQL = text(
  """
  select
    r.id,
    r.title,
    r.cuisine,
    r.dietary_tags,
    coalesce(array_agg(distinct lower(ri.ingredient_name)) filter (where ri.ingredient_name is not null), '{}') as ingredient_names,
    similarity(lower(r.title), lower(:title)) as similarity,
    max(case when lower(rt.tag) = lower(:meal_type) then 1 else 0 end) as meal_type_match,
    case
      when coalesce(:cuisine, '') = '' then 0
      when lower(r.cuisine) = lower(:cuisine) then 1
      else 0
    end as cuisine_match
  from recipes r
  left join recipe_tags rt on rt.recipe_id = r.id
  left join recipe_ingredients ri on ri.recipe_id = r.id
  where similarity(lower(r.title), lower(:title)) >= :threshold
    and (cardinality(cast(:required as text[])) = 0 or r.dietary_tags @> cast(:required as text[]))
    and (cardinality(cast(:blocked as text[])) = 0 or not (r.dietary_tags && cast(:blocked as text[])))
    and (r.is_public = true or r.created_by = :user_id)
  group by r.id
  order by similarity desc, meal_type_match desc, cuisine_match desc, r.updated_at desc
  limit :limit
  """
)


def fallback_statement(query: CandidateQuery, *, limit: int) -> Select:
  """Case-insensitive title prefilter over recipes visible to the user, newest first."""
  return (
    select(Recipe)
    .where(or_(Recipe.is_public.is_(True), Recipe.created_by == query.user_id), Recipe.title.ilike(f"%{query.title}%"))
    .order_by(Recipe.updated_at.desc())
    .limit(limit)
  )


class PostgresRecipeCatalog(RecipeCatalog):
  """Candidate lookup against the recipes tables."""

  def __init__(self, settings: MatcherSettings) -> None:
    self._settings = settings
    self._session_factory = require_session_factory()

  async def find_candidates(self, query: CandidateQuery) -> list[RecipeCandidate]:
    try:
      candidates = await self._find_with_similarity(query)
    except DBAPIError as exc:
      # pg_trgm is missing or the statement failed; the substring path still works.
      logger.warning("Trigram candidate query unavailable, using fallback title=%s error=%s", query.title, exc.orig if exc.orig else exc)
      candidates = []
    if candidates:
      return candidates
    try:
      return await self._find_with_fallback(query)
    except SQLAlchemyError as exc:
      raise StorageError("Recipe candidate lookup failed", details={"title": query.title, "error": str(exc)}) from exc

  async def _find_with_similarity(self, query: CandidateQuery) -> list[RecipeCandidate]:
    params = {
      "title": query.title,
      "meal_type": query.meal_type or "",
      "cuisine": query.cuisine,
      "threshold": self._settings.similarity_threshold,
      "required": list(query.required_dietary),
      "blocked": list(query.blocked_tags),
      "user_id": query.user_id,
      "limit": self._settings.candidate_limit,
    }
    async with self._session_factory() as session:
      rows = (await session.execute(_SIMILARITY_SQL, params)).mappings().all()
    return [
      RecipeCandidate(
        recipe_id=str(row["id"]),
        title=str(row["title"]),
        similarity=float(row["similarity"] or 0),
        cuisine=row["cuisine"],
        dietary_tags=tuple(row["dietary_tags"] or ()),
        ingredient_names=tuple(row["ingredient_names"] or ()),
        meal_type_match=bool(row["meal_type_match"]),
        cuisine_match=bool(row["cuisine_match"]),
      )
      for row in rows
    ]

  async def _find_with_fallback(self, query: CandidateQuery) -> list[RecipeCandidate]:
    """Substring prefilter scored client-side with the same trigram similarity."""
    required = set(query.required_dietary)
    blocked = set(query.blocked_tags)
    stmt = fallback_statement(query, limit=self._settings.fallback_candidate_limit)
    candidates: list[RecipeCandidate] = []
    async with self._session_factory() as session:
      recipes = (await session.execute(stmt)).scalars().all()
      for recipe in recipes:
        dietary_tags = normalize_lowercase(recipe.dietary_tags or [])
        if required and not required.issubset(dietary_tags):
          continue
        if blocked and blocked.intersection(dietary_tags):
          continue
        ingredient_rows = await session.execute(select(func.lower(RecipeIngredient.ingredient_name)).where(RecipeIngredient.recipe_id == recipe.id))
        tag_rows = await session.execute(select(func.lower(RecipeTag.tag)).where(RecipeTag.recipe_id == recipe.id))
        recipe_tags = set(tag_rows.scalars().all())
        cuisine_match = bool(query.cuisine and recipe.cuisine and recipe.cuisine.lower() == query.cuisine.lower())
        candidates.append(
          RecipeCandidate(
            recipe_id=recipe.id,
            title=recipe.title,
            similarity=trigram_similarity(recipe.title, query.title, size=self._settings.trigram_size),
            cuisine=recipe.cuisine,
            dietary_tags=tuple(dietary_tags),
            ingredient_names=tuple(ingredient_rows.scalars().all()),
            meal_type_match=bool(query.meal_type) and query.meal_type.lower() in recipe_tags,
            cuisine_match=cuisine_match,
          )
        )
    candidates.sort(key=lambda candidate: candidate.similarity, reverse=True)
    return candidates
