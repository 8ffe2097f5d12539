"""Typed tool-call payloads the step-selection policy may request.

Each tool is a tagged msgspec struct. Raw tool calls are validated at the
boundary: unknown tools, unknown fields and wrong types are rejected before
anything executes.
"""

from __future__ import annotations

from typing import Annotated, Any

import msgspec

from mealplan.planning.state import ValidationStage


class ToolCallError(ValueError):
  """Raised when a tool call cannot be decoded into a known payload."""


class _Tool(msgspec.Struct, tag_field="tool", forbid_unknown_fields=True, frozen=True):
  pass


class GenerateDraft(_Tool, tag="generate_draft"):
  force_regenerate: bool = False


class ValidateDraft(_Tool, tag="validate"):
  stage: ValidationStage


class AssignRecipes(_Tool, tag="assign_recipes"):
  start_index: Annotated[int, msgspec.Meta(ge=0)] | None = None
  max_items: Annotated[int, msgspec.Meta(ge=1)] | None = None


class GenerateMissingRecipes(_Tool, tag="generate_missing_recipes"):
  indexes: list[Annotated[int, msgspec.Meta(ge=0)]] | None = None


class FinalizePlan(_Tool, tag="finalize"):
  dry_run: bool = False


ToolCall = GenerateDraft | ValidateDraft | AssignRecipes | GenerateMissingRecipes | FinalizePlan

TOOL_NAMES: tuple[str, ...] = ("generate_draft", "validate", "assign_recipes", "generate_missing_recipes", "finalize")


def tool_name(call: ToolCall) -> str:
  return type(call).__struct_config__.tag  # type: ignore[return-value]


def parse_tool_call(name: str, arguments: str | dict[str, Any] | None) -> ToolCall:
  """Decode a raw (name, arguments) pair into a typed payload."""
  if name not in TOOL_NAMES:
    raise ToolCallError(f"Unknown tool '{name}'")
  if arguments is None or arguments == "":
    raw: Any = {}
  elif isinstance(arguments, str):
    try:
      raw = msgspec.json.decode(arguments)
    except msgspec.DecodeError as exc:
      raise ToolCallError(f"Arguments for '{name}' are not valid JSON: {exc}") from exc
  else:
    raw = arguments
  if not isinstance(raw, dict):
    raise ToolCallError(f"Arguments for '{name}' must be a JSON object")
  if "tool" in raw:
    raise ToolCallError(f"Arguments for '{name}' must not include a 'tool' field")
  try:
    return msgspec.convert({"tool": name, **raw}, ToolCall)
  except msgspec.ValidationError as exc:
    raise ToolCallError(f"Invalid arguments for '{name}': {exc}") from exc


def _function(name: str, description: str, properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
  return {
    "type": "function",
    "function": {
      "name": name,
      "description": description,
      "parameters": {"type": "object", "properties": properties, "required": required or [], "additionalProperties": False},
    },
  }


TOOL_SCHEMAS: list[dict[str, Any]] = [
  _function(
    "generate_draft",
    "Create the meal plan draft (titles and descriptions for every date and meal slot). Reuses the existing draft unless force_regenerate is true.",
    {"force_regenerate": {"type": "boolean", "description": "Discard the current draft and generate a new one."}},
  ),
  _function(
    "validate",
    "Check the draft for date and slot coverage. Use stage 'pre-assignment' before assigning recipes and 'post-assignment' afterwards.",
    {"stage": {"type": "string", "enum": ["pre-assignment", "post-assignment"]}},
    ["stage"],
  ),
  _function(
    "assign_recipes",
    "Match unassigned draft items to existing catalog recipes under the household's dietary constraints.",
    {
      "start_index": {"type": "integer", "minimum": 0, "description": "First item index to process."},
      "max_items": {"type": "integer", "minimum": 1, "description": "Maximum number of items to process in this run."},
    },
  ),
  _function(
    "generate_missing_recipes",
    "Generate brand-new recipes for items that no catalog recipe matched. Defaults to the current unmatched items.",
    {"indexes": {"type": "array", "items": {"type": "integer", "minimum": 0}, "description": "Explicit item indexes to generate recipes for."}},
  ),
  _function(
    "finalize",
    "Finalize the plan once post-assignment validation passed. With dry_run the draft is checked but not converted.",
    {"dry_run": {"type": "boolean"}},
  ),
]
