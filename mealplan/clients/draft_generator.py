"""HTTP client for the remote draft generator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from mealplan.config import Settings
from mealplan.core.errors import PermanentFailure, TransientFailure, is_transient_status
from mealplan.planning.requests import NormalizedPlanRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DraftReceipt:
  draft_id: str
  status: str


class DraftGeneratorClient:
  """Asks the draft generator to produce titles and descriptions for every slot."""

  def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
    self._settings = settings
    self._client = client

  def _headers(self) -> dict[str, str]:
    headers = {"content-type": "application/json"}
    if self._settings.service_token:
      headers["authorization"] = f"Bearer {self._settings.service_token}"
    return headers

  async def _post(self, url: str, body: dict[str, Any]) -> httpx.Response:
    if self._client is not None:
      return await self._client.post(url, json=body, headers=self._headers(), timeout=self._settings.collaborator_timeout_seconds)
    async with httpx.AsyncClient(trust_env=False) as client:
      return await client.post(url, json=body, headers=self._headers(), timeout=self._settings.collaborator_timeout_seconds)

  async def generate(self, request: NormalizedPlanRequest, job_id: str, attempt: int) -> DraftReceipt:
    """Request a new draft; raise TransientFailure or PermanentFailure on errors."""
    if not self._settings.draft_generator_url:
      raise PermanentFailure("Draft generator URL is not configured")

    body = {**request.to_payload(), "job_id": job_id, "attempt": attempt}
    try:
      response = await self._post(self._settings.draft_generator_url, body)
    except httpx.TimeoutException as exc:
      raise TransientFailure(f"Draft generator timed out: {exc}") from exc
    except httpx.RequestError as exc:
      raise TransientFailure(f"Draft generator unreachable: {exc}") from exc

    if response.status_code >= 400:
      message = _error_message(response)
      logger.warning("Draft generator rejected request job_id=%s attempt=%d status=%d message=%s", job_id, attempt, response.status_code, message)
      if is_transient_status(response.status_code):
        raise TransientFailure(message, details={"status": response.status_code})
      raise PermanentFailure(message, details={"status": response.status_code})

    try:
      data = response.json()
    except ValueError as exc:
      raise PermanentFailure("Draft generator returned invalid JSON") from exc

    draft_id = data.get("draft_id") if isinstance(data, dict) else None
    if not isinstance(draft_id, str) or not draft_id.strip():
      raise PermanentFailure("Draft generator response is missing draft_id")
    return DraftReceipt(draft_id=draft_id, status=str(data.get("status") or "completed"))


def _error_message(response: httpx.Response) -> str:
  try:
    data = response.json()
  except ValueError:
    return response.text or f"Draft generator returned {response.status_code}"
  if isinstance(data, dict):
    for key in ("error", "message", "detail"):
      value = data.get(key)
      if isinstance(value, str) and value:
        return value
  return f"Draft generator returned {response.status_code}"
