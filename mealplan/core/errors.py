"""Error taxonomy shared by the ingress API, the job worker and the planner."""

from __future__ import annotations

from typing import Any, Literal

RecipeErrorCode = Literal["schema-validation", "constraint-violation", "provider-timeout", "provider-error", "persist-error"]


class OrchestrationError(RuntimeError):
  """Base failure for meal plan orchestration, mapped to a 500 response."""

  status_code = 500

  def __init__(self, message: str, *, details: Any | None = None, status_code: int | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.details = details
    if status_code is not None:
      self.status_code = status_code


class RequestValidationFailure(OrchestrationError):
  """Bad input from the caller. Never retried."""

  status_code = 400


class AuthorizationFailure(OrchestrationError):
  """Caller is not allowed to act on the requested scope. Never retried."""

  status_code = 403


class TransientFailure(OrchestrationError):
  """Remote failure that may succeed on retry (5xx, 408, timeouts)."""

  status_code = 503


class PermanentFailure(OrchestrationError):
  """Business-rule rejection from a collaborator. Never retried."""

  status_code = 422


class StorageError(OrchestrationError):
  """Raised when a job or draft row cannot be read or written."""


class PlannerAbort(OrchestrationError):
  """Fatal planner failure after exhausting tool-failure tolerance."""

  def __init__(self, message: str, *, faults: list[dict[str, Any]] | None = None) -> None:
    super().__init__(message, details={"faults": faults or []})
    self.faults = faults or []


class RecipeGenerationError(RuntimeError):
  """Typed failure returned by the recipe generator for one plan item."""

  def __init__(self, code: RecipeErrorCode, message: str, *, violations: list[str] | None = None) -> None:
    super().__init__(message)
    self.code = code
    self.message = message
    self.violations = violations or []

  @property
  def is_timeout(self) -> bool:
    """Report whether the failure looks like a timeout and is worth retrying."""
    if self.code == "provider-timeout":
      return True
    lowered = self.message.lower()
    return "timeout" in lowered or "timed out" in lowered


def is_transient_status(status_code: int) -> bool:
  """Classify an HTTP status code as transient (retryable)."""
  return status_code >= 500 or status_code == 408


class JobStateError(OrchestrationError):
  """Raised when a lifecycle transition would leave a terminal state."""

  status_code = 409


class ResourceNotFound(OrchestrationError):
  """The job or draft does not exist or is not visible to the caller."""

  status_code = 404
