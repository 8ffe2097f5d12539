"""Step-selection policies for the planner loop."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import msgspec
import openai
from openai import AsyncOpenAI

from mealplan.config import Settings
from mealplan.core.errors import PermanentFailure, TransientFailure
from mealplan.planning.state import PlannerState
from mealplan.planning.tools import TOOL_SCHEMAS, AssignRecipes, FinalizePlan, GenerateDraft, GenerateMissingRecipes, ToolCall, ValidateDraft, tool_name

logger = logging.getLogger(__name__)

SummaryStatus = Literal["completed", "failed"]


@dataclass(frozen=True)
class RequestedTool:
  call_id: str
  name: str
  arguments: str


@dataclass(frozen=True)
class PolicyDecision:
  """Either a list of tool calls or a terminal text reply."""

  tool_calls: list[RequestedTool] = field(default_factory=list)
  text: str | None = None
  assistant_message: dict[str, Any] | None = None


@dataclass(frozen=True)
class PlanSummary:
  status: SummaryStatus
  message: str


class StepPolicy(Protocol):
  async def next_step(self, messages: list[dict[str, Any]], state: PlannerState) -> PolicyDecision: ...


def parse_summary(text: str | None) -> PlanSummary:
  """Parse the policy's final reply into a status and message."""
  content = (text or "").strip()
  if content.startswith("```"):
    content = content.strip("`").removeprefix("json").strip()
  try:
    data = json.loads(content)
  except ValueError:
    data = None
  if isinstance(data, dict):
    status = str(data.get("status") or "").strip().lower()
    message = str(data.get("message") or "").strip() or content
    return PlanSummary(status="failed" if status == "failed" else "completed", message=message)
  lowered = content.lower()
  failed = any(marker in lowered for marker in ("failed", "unable", "cannot", "error"))
  return PlanSummary(status="failed" if failed else "completed", message=content or "Planner stopped without a summary")


def choose_next_tool(state: PlannerState) -> ToolCall | None:
  """Pick the next pipeline step from state alone, or None when nothing applies."""
  if state.phase in ("finalized", "failed"):
    return None
  if not state.draft_ready:
    return GenerateDraft()
  if state.pre_validation is None:
    return ValidateDraft(stage="pre-assignment")
  if not state.pre_validation.valid and state.assignment is None:
    return GenerateDraft(force_regenerate=True)
  if state.assignment is None:
    return AssignRecipes()
  if state.assignment.has_more:
    return AssignRecipes(start_index=state.assignment.next_item_index)
  if state.unmatched_indexes:
    return GenerateMissingRecipes()
  if state.post_validation is None:
    return ValidateDraft(stage="post-assignment")
  if state.post_validation.valid:
    return FinalizePlan()
  return None


class DeterministicStepPolicy:
  """Runs the pipeline in its fixed order without a language model."""

  def __init__(self) -> None:
    self._counter = 0

  async def next_step(self, messages: list[dict[str, Any]], state: PlannerState) -> PolicyDecision:
    call = choose_next_tool(state)
    if call is None:
      status = "completed" if state.phase == "finalized" else "failed"
      return PolicyDecision(text=json.dumps({"status": status, "message": f"Planner stopped in phase {state.phase}"}))
    self._counter += 1
    arguments = {key: value for key, value in msgspec.to_builtins(call).items() if key != "tool" and value is not None}
    return PolicyDecision(tool_calls=[RequestedTool(call_id=f"step-{self._counter}", name=tool_name(call), arguments=json.dumps(arguments))])


class OpenRouterStepPolicy:
  """Chat-completions policy with function tools, served through OpenRouter."""

  def __init__(self, settings: Settings, *, client: AsyncOpenAI | None = None) -> None:
    self._model = settings.planner.model
    if client is not None:
      self._client = client
      return
    if not settings.openrouter_api_key:
      raise ValueError("OPENROUTER_API_KEY environment variable is required")

    # OpenRouter uses the OpenAI-compatible API; we add optional attribution headers.
    default_headers = {}
    referer = os.getenv("OPENROUTER_HTTP_REFERER")
    if referer:
      default_headers["HTTP-Referer"] = referer
    title = os.getenv("OPENROUTER_TITLE")
    if title:
      default_headers["X-Title"] = title
    self._client = AsyncOpenAI(api_key=settings.openrouter_api_key, base_url=settings.openrouter_base_url, default_headers=default_headers or None)

  async def next_step(self, messages: list[dict[str, Any]], state: PlannerState) -> PolicyDecision:
    try:
      response = await self._client.chat.completions.create(model=self._model, messages=messages, tools=TOOL_SCHEMAS, tool_choice="auto", parallel_tool_calls=False)
    except (openai.APITimeoutError, openai.APIConnectionError) as exc:
      raise TransientFailure(f"Step-selection policy unavailable: {exc}") from exc
    except openai.APIStatusError as exc:
      if exc.status_code >= 500 or exc.status_code in (408, 429):
        raise TransientFailure(f"Step-selection policy returned {exc.status_code}") from exc
      raise PermanentFailure(f"Step-selection policy rejected the request ({exc.status_code})") from exc

    if response.usage:
      logger.debug("Policy usage prompt_tokens=%s completion_tokens=%s phase=%s", response.usage.prompt_tokens, response.usage.completion_tokens, state.phase)

    message = response.choices[0].message
    tool_calls = [RequestedTool(call_id=call.id, name=call.function.name, arguments=call.function.arguments or "{}") for call in (message.tool_calls or []) if call.type == "function"]
    if not tool_calls:
      return PolicyDecision(text=message.content or "")

    assistant_message = {
      "role": "assistant",
      "content": message.content,
      "tool_calls": [{"id": call.call_id, "type": "function", "function": {"name": call.name, "arguments": call.arguments}} for call in tool_calls],
    }
    return PolicyDecision(tool_calls=tool_calls, text=message.content, assistant_message=assistant_message)


def build_step_policy(settings: Settings) -> StepPolicy:
  """Use the language-model policy when configured, otherwise the fixed pipeline order."""
  if settings.openrouter_api_key:
    return OpenRouterStepPolicy(settings)
  logger.warning("OPENROUTER_API_KEY not set; planner runs the deterministic pipeline.")
  return DeterministicStepPolicy()
