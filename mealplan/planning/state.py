"""Planner working memory and the snapshots it is made of.

PlannerState is the only thing carried across invocations of a chunked run:
it is serialized into the job's resumption checkpoint and rebuilt from there,
so a fresh invocation never depends on the policy's previous conversation.
"""

from __future__ import annotations

from typing import Any, Literal

import msgspec

from mealplan.jobs.metadata import JobEvent, JobFault

STATE_VERSION = 1

PlannerPhase = Literal["no-draft", "drafting", "draft-ready", "pre-validated", "assigning", "generating-missing", "post-validated", "finalized", "failed"]
ValidationStage = Literal["pre-assignment", "post-assignment"]
IssueSeverity = Literal["error", "warning"]
AssignmentSource = Literal["existing-match", "newly-generated"]


class StateStruct(msgspec.Struct, forbid_unknown_fields=False):
  """Base struct for persisted planner snapshots."""


class ValidationIssue(StateStruct):
  code: str
  severity: IssueSeverity
  message: str
  item_index: int | None = None
  date: str | None = None
  slot: str | None = None


class ValidationSnapshot(StateStruct):
  stage: ValidationStage
  valid: bool
  issues: list[ValidationIssue]
  expected_items: int
  item_count: int

  @property
  def errors(self) -> list[ValidationIssue]:
    return [issue for issue in self.issues if issue.severity == "error"]

  @property
  def warnings(self) -> list[ValidationIssue]:
    return [issue for issue in self.issues if issue.severity == "warning"]


class Assignment(StateStruct):
  item_index: int
  recipe_id: str
  confidence: float
  source: AssignmentSource


class AssignmentSnapshot(StateStruct):
  runs: int = 0
  total_items: int = 0
  assigned: int = 0
  assigned_last_run: int = 0
  unmatched_indexes: list[int] = msgspec.field(default_factory=list)
  pending_indexes: list[int] = msgspec.field(default_factory=list)
  has_more: bool = False
  next_item_index: int | None = None
  assignments: list[Assignment] = msgspec.field(default_factory=list)


class RecipeGenerationSnapshot(StateStruct):
  generated_count: int = 0
  remaining_indexes: list[int] = msgspec.field(default_factory=list)
  failed_indexes: list[int] = msgspec.field(default_factory=list)
  awaiting_indexes: list[int] = msgspec.field(default_factory=list)
  chunks_processed: int = 0
  generated: list[Assignment] = msgspec.field(default_factory=list)
  faults: list[JobFault] = msgspec.field(default_factory=list)


class FinalizationSnapshot(StateStruct):
  finalized: bool
  dry_run: bool
  draft_status: str | None
  message: str
  unresolved_indexes: list[int] = msgspec.field(default_factory=list)


class PlannerState(StateStruct):
  version: int = STATE_VERSION
  phase: PlannerPhase = "no-draft"
  draft_id: str | None = None
  draft_status: str | None = None
  pre_validation: ValidationSnapshot | None = None
  post_validation: ValidationSnapshot | None = None
  assignment: AssignmentSnapshot | None = None
  generation: RecipeGenerationSnapshot | None = None
  finalization: FinalizationSnapshot | None = None
  events: list[JobEvent] = msgspec.field(default_factory=list)
  faults: list[JobFault] = msgspec.field(default_factory=list)
  consecutive_failures: dict[str, int] = msgspec.field(default_factory=dict)
  last_tool: str | None = None
  iterations: int = 0
  invocation: int = 1
  unmatched_indexes: list[int] = msgspec.field(default_factory=list)

  @property
  def draft_ready(self) -> bool:
    return self.draft_id is not None and self.phase not in ("no-draft", "drafting", "failed")


def dump_state(state: PlannerState) -> dict[str, Any]:
  return msgspec.to_builtins(state)


def load_state(raw: dict[str, Any] | None) -> PlannerState:
  """Rebuild planner state from its serialized form."""
  if not raw:
    return PlannerState()
  try:
    return msgspec.convert(raw, PlannerState, strict=False)
  except msgspec.ValidationError as exc:
    raise ValueError(f"Planner state failed validation: {exc}") from exc


def _bounded[T](entries: list[T], entry: T, limit: int) -> list[T]:
  return [*entries, entry][-limit:] if limit > 0 else []


def add_event(state: PlannerState, event: JobEvent, *, limit: int) -> None:
  state.events = _bounded(state.events, event, limit)


def add_fault(state: PlannerState, fault: JobFault, *, limit: int) -> None:
  state.faults = _bounded(state.faults, fault, limit)


def compact_snapshot(state: PlannerState) -> dict[str, Any]:
  """Summarize state for the step-selection policy without item-level detail."""
  snapshot: dict[str, Any] = {
    "phase": state.phase,
    "draft_id": state.draft_id,
    "draft_status": state.draft_status,
    "unmatched_count": len(state.unmatched_indexes),
  }
  for label, validation in (("pre_validation", state.pre_validation), ("post_validation", state.post_validation)):
    if validation is not None:
      snapshot[label] = {"valid": validation.valid, "errors": len(validation.errors), "warnings": len(validation.warnings), "first_errors": [issue.message for issue in validation.errors[:3]]}
  if state.assignment is not None:
    snapshot["assignment"] = {
      "runs": state.assignment.runs,
      "assigned": state.assignment.assigned,
      "total_items": state.assignment.total_items,
      "unmatched": len(state.assignment.unmatched_indexes),
      "pending": len(state.assignment.pending_indexes),
      "has_more": state.assignment.has_more,
    }
  if state.generation is not None:
    snapshot["generation"] = {
      "generated": state.generation.generated_count,
      "remaining": len(state.generation.remaining_indexes),
      "failed": len(state.generation.failed_indexes),
      "awaiting_callbacks": len(state.generation.awaiting_indexes),
      "chunks": state.generation.chunks_processed,
    }
  if state.finalization is not None:
    snapshot["finalization"] = {"finalized": state.finalization.finalized, "dry_run": state.finalization.dry_run}
  if state.faults:
    snapshot["recent_faults"] = [f"{fault.source}: {fault.message}" for fault in state.faults[-3:]]
  return snapshot
