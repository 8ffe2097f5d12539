"""HTTP client for the remote recipe generator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, get_args

import httpx

from mealplan.config import Settings
from mealplan.core.errors import RecipeErrorCode, RecipeGenerationError

logger = logging.getLogger(__name__)

_KNOWN_CODES: frozenset[str] = frozenset(get_args(RecipeErrorCode))


@dataclass(frozen=True)
class RecipeConstraints:
  required_dietary: tuple[str, ...] = ()
  blocked_ingredients: tuple[str, ...] = ()
  blocked_tags: tuple[str, ...] = ()
  max_prep_min: int | None = None
  max_cook_min: int | None = None

  def to_dict(self) -> dict[str, Any]:
    payload: dict[str, Any] = {
      "required_dietary": list(self.required_dietary),
      "blocked_ingredients": list(self.blocked_ingredients),
      "blocked_tags": list(self.blocked_tags),
    }
    if self.max_prep_min is not None:
      payload["max_prep_min"] = self.max_prep_min
    if self.max_cook_min is not None:
      payload["max_cook_min"] = self.max_cook_min
    return payload


@dataclass(frozen=True)
class RecipeSpec:
  """Everything the generator needs to synthesize one recipe."""

  title: str
  meal_type: str
  servings: int
  constraints: RecipeConstraints
  idempotency_key: str
  household_context: dict[str, Any] = field(default_factory=dict)
  description: str | None = None
  owner_id: str | None = None
  draft_id: str | None = None
  item_index: int | None = None


@dataclass(frozen=True)
class GeneratedRecipe:
  recipe_id: str
  slug: str | None
  title: str


class RecipeGeneratorClient:
  """Synthesizes new recipes for draft items the catalog could not cover."""

  def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
    self._settings = settings
    self._client = client

  def _headers(self, spec: RecipeSpec) -> dict[str, str]:
    headers = {"content-type": "application/json", "idempotency-key": spec.idempotency_key}
    if self._settings.service_token:
      headers["authorization"] = f"Bearer {self._settings.service_token}"
    return headers

  async def _post(self, url: str, body: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
    if self._client is not None:
      return await self._client.post(url, json=body, headers=headers, timeout=self._settings.collaborator_timeout_seconds)
    async with httpx.AsyncClient(trust_env=False) as client:
      return await client.post(url, json=body, headers=headers, timeout=self._settings.collaborator_timeout_seconds)

  async def generate(self, spec: RecipeSpec) -> GeneratedRecipe | None:
    """Create one recipe, raising RecipeGenerationError with a typed code on failure.

    Returns None when the generator accepted the work asynchronously (HTTP 202);
    the result then arrives later through the recipe callback endpoint.
    """
    if not self._settings.recipe_generator_url:
      raise RecipeGenerationError("provider-error", "Recipe generator URL is not configured")

    body: dict[str, Any] = {
      "title": spec.title,
      "meal_type": spec.meal_type,
      "servings": spec.servings,
      "constraints": spec.constraints.to_dict(),
      "household_context": spec.household_context,
      "idempotency_key": spec.idempotency_key,
      # Generated recipes are owned by the system identity.
      "owner_id": spec.owner_id or self._settings.system_user_id,
    }
    if spec.description:
      body["description"] = spec.description
    # Lets an asynchronous completion find its way back to the draft item.
    if spec.draft_id is not None:
      body["draft_id"] = spec.draft_id
      body["draft_item_index"] = spec.item_index

    try:
      response = await self._post(self._settings.recipe_generator_url, body, self._headers(spec))
    except httpx.TimeoutException as exc:
      raise RecipeGenerationError("provider-timeout", f"Recipe generator timed out: {exc}") from exc
    except httpx.RequestError as exc:
      raise RecipeGenerationError("provider-error", f"Recipe generator unreachable: {exc}") from exc

    if response.status_code == 202:
      logger.info("Recipe generation accepted asynchronously idempotency_key=%s", spec.idempotency_key)
      return None

    try:
      data = response.json()
    except ValueError:
      data = None

    if response.status_code >= 400 or (isinstance(data, dict) and data.get("code") in _KNOWN_CODES):
      raise _to_error(response.status_code, data)

    if not isinstance(data, dict) or not isinstance(data.get("recipe_id"), str) or not data["recipe_id"]:
      raise RecipeGenerationError("schema-validation", "Recipe generator response is missing recipe_id")

    logger.debug("Recipe generated recipe_id=%s title=%s", data["recipe_id"], data.get("title"))
    return GeneratedRecipe(recipe_id=data["recipe_id"], slug=data.get("slug"), title=str(data.get("title") or spec.title))


def _to_error(status_code: int, data: Any) -> RecipeGenerationError:
  if not isinstance(data, dict):
    code = "provider-timeout" if status_code in (408, 504) else "provider-error"
    return RecipeGenerationError(code, f"Recipe generator returned {status_code}")
  raw_code = data.get("code")
  code = raw_code if raw_code in _KNOWN_CODES else ("provider-timeout" if status_code in (408, 504) else "provider-error")
  message = str(data.get("message") or data.get("error") or f"Recipe generator returned {status_code}")
  violations = data.get("violations")
  return RecipeGenerationError(code, message, violations=[str(entry) for entry in violations] if isinstance(violations, list) else None)
