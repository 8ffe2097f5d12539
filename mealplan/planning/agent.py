"""Tool-driven control loop that turns a plan request into a finalized draft.

The step-selection policy picks the next tool; the agent executes it, folds
the result into ``PlannerState`` and answers with a structured result, a
compact state snapshot and a next-step hint. All cross-invocation continuity
lives in ``PlannerState``: a continuation starts a fresh policy conversation
from a resumption message and never relies on provider-side memory.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Literal

import msgspec

from mealplan.config import Settings
from mealplan.core.errors import JobStateError, OrchestrationError, PermanentFailure, PlannerAbort, StorageError
from mealplan.jobs.metadata import JobEvent, JobFault, ResumptionCheckpoint
from mealplan.jobs.models import DraftRecord
from mealplan.jobs.progress import PROGRESS_DRAFT_READY, PROGRESS_PRE_VALIDATED, JobProgressTracker, work_progress
from mealplan.planning.generation import RecipeBatchGenerator
from mealplan.planning.matcher import MatchOptions, RecipeMatcher
from mealplan.planning.policy import DeterministicStepPolicy, PlanSummary, PolicyDecision, RequestedTool, StepPolicy, choose_next_tool, parse_summary
from mealplan.planning.preferences import HouseholdPreferences, merge_preferences
from mealplan.planning.prompts import SYSTEM_PROMPT, build_initial_message, build_resumption_message, next_step_hint
from mealplan.planning.requests import NormalizedPlanRequest
from mealplan.planning.retry import DraftRetryRunner
from mealplan.planning.state import (
  AssignmentSnapshot,
  FinalizationSnapshot,
  PlannerState,
  RecipeGenerationSnapshot,
  add_event,
  add_fault,
  compact_snapshot,
  dump_state,
)
from mealplan.planning.tools import AssignRecipes, FinalizePlan, GenerateDraft, GenerateMissingRecipes, ToolCall, ToolCallError, ValidateDraft, parse_tool_call, tool_name
from mealplan.planning.validation import validate
from mealplan.services.tasks.interface import TaskEnqueuer
from mealplan.storage.drafts_repo import DraftsRepository
from mealplan.storage.households_repo import HouseholdDirectory
from mealplan.utils.timeutils import now_iso

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["completed", "checkpointed"]
CheckpointReason = Literal["chunked", "awaiting-callbacks"]


@dataclass(frozen=True)
class PlannerOutcome:
  status: OutcomeStatus
  message: str
  result: dict[str, Any] | None = None


@dataclass
class PlannerDependencies:
  """Collaborators the agent executes tools with."""

  drafts: DraftsRepository
  households: HouseholdDirectory
  matcher: RecipeMatcher
  generator: RecipeBatchGenerator
  draft_runner: DraftRetryRunner
  policy: StepPolicy
  enqueuer: TaskEnqueuer


@dataclass
class _ToolOutcome:
  payload: dict[str, Any]
  stop: PlannerOutcome | None = None


@dataclass
class _RunContext:
  messages: list[dict[str, Any]] = field(default_factory=list)
  summary: PlanSummary | None = None


def _assistant_message(decision: PolicyDecision) -> dict[str, Any]:
  if decision.assistant_message is not None:
    return decision.assistant_message
  return {
    "role": "assistant",
    "content": decision.text,
    "tool_calls": [{"id": call.call_id, "type": "function", "function": {"name": call.name, "arguments": call.arguments}} for call in decision.tool_calls],
  }


class PlannerAgent:
  """Runs one invocation of the planning loop for a single job."""

  def __init__(self, *, tracker: JobProgressTracker, request: NormalizedPlanRequest, state: PlannerState, deps: PlannerDependencies, settings: Settings) -> None:
    self._tracker = tracker
    self._request = request
    self._state = state
    self._deps = deps
    self._settings = settings
    self._preferences: HouseholdPreferences | None = None
    self._result: dict[str, Any] | None = None

  @property
  def state(self) -> PlannerState:
    return self._state

  @property
  def _history_limit(self) -> int:
    return self._settings.planner.history_limit

  async def run(self, *, checkpoint: ResumptionCheckpoint | None = None) -> PlannerOutcome:
    """Drive the policy until the plan is finalized, checkpointed or the run aborts."""
    state = self._state
    job_id = self._tracker.job.job_id
    ctx = _RunContext(messages=[{"role": "system", "content": SYSTEM_PROMPT}])

    if checkpoint is not None:
      await self._refresh_from_draft(checkpoint)
      ctx.messages.append({"role": "user", "content": build_resumption_message(self._request, state, checkpoint.remaining_indexes)})
      self._event("resumed", f"Continuation #{state.invocation} started", {"remaining": len(checkpoint.remaining_indexes), "reason": checkpoint.reason})
    else:
      ctx.messages.append({"role": "user", "content": build_initial_message(self._request, state)})

    logger.info("Planner run started job_id=%s invocation=%d phase=%s", job_id, state.invocation, state.phase)

    policy = self._deps.policy
    for _ in range(self._settings.planner.max_iterations):
      if state.phase == "finalized":
        break
      state.iterations += 1
      try:
        decision = await policy.next_step(ctx.messages, state)
      except (PlannerAbort, StorageError):
        raise
      except OrchestrationError as exc:
        # The rest of this invocation runs in the fixed pipeline order.
        logger.warning("Step-selection policy failed job_id=%s error=%s; switching to the deterministic order", job_id, exc.message)
        self._fault("policy", exc.message)
        self._event("fallback", f"Policy unavailable in phase {state.phase}; continuing deterministically")
        policy = DeterministicStepPolicy()
        continue

      if not decision.tool_calls:
        ctx.summary = parse_summary(decision.text)
        logger.info("Policy returned summary job_id=%s status=%s message=%s", job_id, ctx.summary.status, ctx.summary.message)
        break

      ctx.messages.append(_assistant_message(decision))
      for requested in decision.tool_calls:
        outcome = await self._dispatch(requested)
        ctx.messages.append({"role": "tool", "tool_call_id": requested.call_id, "content": json.dumps(outcome.payload, default=str)})
        if outcome.stop is not None:
          return outcome.stop
    else:
      logger.warning("Planner reached the iteration limit job_id=%s iterations=%d", job_id, state.iterations)

    if state.phase == "finalized":
      return self._completed(ctx.summary.message if ctx.summary and ctx.summary.status == "completed" else None)

    if self._fallback_eligible():
      return await self._run_fallback()

    message = ctx.summary.message if ctx.summary is not None else f"Planner stopped in phase {state.phase} before finalizing"
    state.phase = "failed"
    raise PlannerAbort(message, faults=self._fault_dicts())

  def _fallback_eligible(self) -> bool:
    state = self._state
    if not state.draft_ready:
      return False
    pre_validated = state.pre_validation is not None and state.pre_validation.valid
    nothing_unmatched = state.assignment is not None and not state.unmatched_indexes
    return pre_validated or nothing_unmatched

  async def _run_fallback(self) -> PlannerOutcome:
    """Finish the remaining pipeline deterministically, without the policy."""
    state = self._state
    logger.info("Running fallback finalization job_id=%s phase=%s", self._tracker.job.job_id, state.phase)
    self._event("fallback", f"Policy stopped in phase {state.phase}; finishing deterministically")
    step_limit = self._settings.planner.max_iterations * 3
    for _ in range(step_limit):
      call = choose_next_tool(state)
      if call is None:
        break
      outcome = await self._execute(call)
      if outcome.stop is not None:
        return outcome.stop
      if state.phase == "finalized":
        return self._completed("Meal plan finalized by the orchestrator")

    message = f"Fallback finalization could not complete from phase {state.phase}"
    state.phase = "failed"
    raise PlannerAbort(message, faults=self._fault_dicts())

  async def _dispatch(self, requested: RequestedTool) -> _ToolOutcome:
    try:
      call = parse_tool_call(requested.name, requested.arguments)
    except ToolCallError as exc:
      return await self._tool_failed(requested.name, exc)
    return await self._execute(call)

  async def _execute(self, call: ToolCall) -> _ToolOutcome:
    name = tool_name(call)
    state = self._state
    state.last_tool = name
    logger.info("Executing tool job_id=%s tool=%s phase=%s", self._tracker.job.job_id, name, state.phase)
    try:
      outcome = await self._run_tool(call)
    except (PlannerAbort, StorageError, JobStateError):
      raise
    except Exception as exc:  # noqa: BLE001
      return await self._tool_failed(name, exc)

    state.consecutive_failures[name] = 0
    outcome.payload.setdefault("ok", True)
    outcome.payload["state"] = compact_snapshot(state)
    outcome.payload["next_step"] = next_step_hint(state)
    self._event("tool", f"{name} succeeded", {"phase": state.phase})
    if outcome.stop is None:
      await self._save_state()
    return outcome

  async def _tool_failed(self, name: str, exc: Exception) -> _ToolOutcome:
    state = self._state
    message = exc.message if isinstance(exc, OrchestrationError) else (str(exc) or type(exc).__name__)
    count = state.consecutive_failures.get(name, 0) + 1
    state.consecutive_failures[name] = count
    self._fault(name, message, attempt=count)
    await self._tracker.fault(name, message, attempt=count)
    logger.warning("Tool failed job_id=%s tool=%s consecutive_failures=%d error=%s", self._tracker.job.job_id, name, count, message)

    if count >= self._settings.planner.tool_failure_limit:
      state.phase = "failed"
      raise PlannerAbort(f"Tool {name} failed {count} times in a row: {message}", faults=self._fault_dicts())

    await self._save_state()
    return _ToolOutcome(payload={"ok": False, "error": message, "consecutive_failures": count, "state": compact_snapshot(state), "next_step": next_step_hint(state)})

  async def _run_tool(self, call: ToolCall) -> _ToolOutcome:
    if isinstance(call, GenerateDraft):
      return await self._generate_draft(call)
    if isinstance(call, ValidateDraft):
      return await self._validate(call)
    if isinstance(call, AssignRecipes):
      return await self._assign(call)
    if isinstance(call, GenerateMissingRecipes):
      return await self._generate_missing(call)
    return await self._finalize(call)

  async def _generate_draft(self, call: GenerateDraft) -> _ToolOutcome:
    state = self._state
    if state.draft_ready and not call.force_regenerate:
      return _ToolOutcome(payload={"draft_id": state.draft_id, "reused": True})

    state.phase = "drafting"
    receipt = await self._deps.draft_runner.run(self._tracker, self._request)
    draft = await self._load_draft(receipt.draft_id)
    if draft.status == "failed":
      raise PermanentFailure(draft.error_message or f"Draft {draft.draft_id} failed")

    state.draft_id = draft.draft_id
    state.draft_status = draft.status
    state.phase = "draft-ready"
    state.pre_validation = None
    state.post_validation = None
    state.assignment = None
    state.generation = None
    state.finalization = None
    state.unmatched_indexes = draft.unassigned_indexes()
    await self._tracker.advance(PROGRESS_DRAFT_READY, meta_patch={"draft_id": draft.draft_id})
    logger.info("Draft ready job_id=%s draft_id=%s items=%d", self._tracker.job.job_id, draft.draft_id, len(draft.items))
    return _ToolOutcome(payload={"draft_id": draft.draft_id, "status": draft.status, "item_count": len(draft.items)})

  async def _validate(self, call: ValidateDraft) -> _ToolOutcome:
    state = self._state
    draft = await self._load_draft()
    snapshot = validate(draft, self._request, call.stage)
    if call.stage == "pre-assignment":
      state.pre_validation = snapshot
      if snapshot.valid:
        state.phase = "pre-validated"
        await self._tracker.advance(PROGRESS_PRE_VALIDATED)
    else:
      state.post_validation = snapshot
      if snapshot.valid:
        state.phase = "post-validated"
    logger.info("Validation job_id=%s stage=%s valid=%s errors=%d warnings=%d", self._tracker.job.job_id, call.stage, snapshot.valid, len(snapshot.errors), len(snapshot.warnings))
    return _ToolOutcome(
      payload={
        "stage": call.stage,
        "valid": snapshot.valid,
        "expected_items": snapshot.expected_items,
        "item_count": snapshot.item_count,
        "errors": [issue.message for issue in snapshot.errors[:10]],
        "warnings": len(snapshot.warnings),
      }
    )

  async def _assign(self, call: AssignRecipes) -> _ToolOutcome:
    state = self._state
    draft = await self._load_draft()
    preferences = await self._load_preferences()
    options = MatchOptions.from_settings(self._settings.matcher, start_index=call.start_index, max_items=call.max_items)
    state.phase = "assigning"
    run = await self._deps.matcher.assign(draft, preferences, user_id=self._request.user_id, options=options)

    snapshot = state.assignment or AssignmentSnapshot()
    snapshot.runs += 1
    snapshot.total_items = run.stats.total_items
    snapshot.assigned = run.stats.total_assigned
    snapshot.assigned_last_run = run.stats.assigned_this_run
    snapshot.unmatched_indexes = list(run.unmatched_indexes)
    snapshot.pending_indexes = [index for index, item in enumerate(run.items) if item.is_pending_generation]
    snapshot.has_more = run.has_more
    snapshot.next_item_index = run.stats.next_item_index
    snapshot.assignments = [*snapshot.assignments, *run.assignments]
    state.assignment = snapshot
    state.unmatched_indexes = [index for index, item in enumerate(run.items) if not item.is_assigned and not item.is_pending_generation]
    state.post_validation = None

    stats = run.stats.to_dict()
    await self._tracker.advance(work_progress(run.stats.total_assigned, run.stats.total_items), meta_patch={"recipe_assignment": stats})
    return _ToolOutcome(payload={**stats, "hasMore": run.has_more, "unmatchedIndexes": run.unmatched_indexes})

  async def _generate_missing(self, call: GenerateMissingRecipes) -> _ToolOutcome:
    state = self._state
    indexes = list(call.indexes) if call.indexes is not None else self._generation_queue()
    if not indexes:
      return _ToolOutcome(payload={"generated": 0, "message": "No unmatched items"})

    draft = await self._load_draft()
    preferences = await self._load_preferences()
    state.phase = "generating-missing"
    run = await self._deps.generator.run_chunk(draft, indexes, preferences, session_preferences=self._request.session_preferences)

    snapshot = state.generation or RecipeGenerationSnapshot()
    snapshot.generated_count += len(run.generated)
    snapshot.generated = [*snapshot.generated, *run.generated]
    snapshot.failed_indexes = [index for index in dict.fromkeys([*snapshot.failed_indexes, *run.failed_indexes]) if not run.items[index].is_assigned]
    snapshot.awaiting_indexes = [index for index, item in enumerate(run.items) if item.is_pending_generation]
    snapshot.remaining_indexes = list(run.remaining_indexes)
    snapshot.chunks_processed += 1
    snapshot.faults = [*snapshot.faults, *run.faults][-self._history_limit :]
    state.generation = snapshot
    state.unmatched_indexes = [index for index, item in enumerate(run.items) if not item.is_assigned and not item.is_pending_generation]
    state.post_validation = None
    for fault in run.faults:
      add_fault(state, fault, limit=self._history_limit)

    assigned = sum(1 for item in run.items if item.is_assigned)
    await self._tracker.advance(work_progress(assigned, len(run.items)))

    if not run.generated and not run.awaiting_indexes and run.failed_indexes and not run.remaining_indexes:
      raise OrchestrationError(f"Recipe generation failed for all {len(run.failed_indexes)} requested items", details={"failed_indexes": run.failed_indexes})

    payload = {
      "generated": len(run.generated),
      "failed_indexes": run.failed_indexes,
      "awaiting_callbacks": snapshot.awaiting_indexes,
      "remaining": len(run.remaining_indexes),
    }
    if run.remaining_indexes:
      return _ToolOutcome(payload=payload, stop=await self._checkpoint(run.remaining_indexes, reason="chunked"))
    if snapshot.awaiting_indexes and not state.unmatched_indexes:
      return _ToolOutcome(payload=payload, stop=await self._checkpoint([], reason="awaiting-callbacks"))
    return _ToolOutcome(payload=payload)

  def _generation_queue(self) -> list[int]:
    """Items the next generation chunk should cover when the caller names none.

    The persisted queue from earlier chunks comes first. Once it drains, items
    that never failed are next. Only previously failed items left means a
    retry pass limited to one chunk, so an all-failed retry surfaces as a tool
    failure instead of another continuation.
    """
    state = self._state
    unmatched = set(state.unmatched_indexes)
    snapshot = state.generation
    if snapshot is None:
      return list(state.unmatched_indexes)
    queued = [index for index in snapshot.remaining_indexes if index in unmatched]
    if queued:
      return queued
    failed = set(snapshot.failed_indexes)
    fresh = [index for index in state.unmatched_indexes if index not in failed]
    if fresh:
      return fresh
    return list(state.unmatched_indexes)[: self._settings.planner.chunk_size]

  async def _finalize(self, call: FinalizePlan) -> _ToolOutcome:
    state = self._state
    draft = await self._load_draft()
    snapshot = validate(draft, self._request, "post-assignment")
    state.post_validation = snapshot
    if not snapshot.valid:
      raise OrchestrationError(f"Cannot finalize: {len(snapshot.errors)} post-assignment errors, first: {snapshot.errors[0].message}")

    if call.dry_run:
      state.finalization = FinalizationSnapshot(finalized=False, dry_run=True, draft_status=draft.status, message="Dry run passed")
      return _ToolOutcome(payload={"finalized": False, "dry_run": True})

    await self._deps.drafts.update_status(draft.draft_id, "converted")
    state.draft_status = "converted"
    state.phase = "finalized"
    state.finalization = FinalizationSnapshot(finalized=True, dry_run=False, draft_status="converted", message="Meal plan finalized")
    self._result = self._build_result(replace(draft, status="converted"))
    logger.info("Draft finalized job_id=%s draft_id=%s", self._tracker.job.job_id, draft.draft_id)
    return _ToolOutcome(payload={"finalized": True, "draft_id": draft.draft_id})

  def _build_result(self, draft: DraftRecord) -> dict[str, Any]:
    state = self._state
    generated = state.generation.generated_count if state.generation is not None else 0
    matched = len(state.assignment.assignments) if state.assignment is not None else 0
    return {
      "draft_id": draft.draft_id,
      "draft_status": draft.status,
      "plan_title": self._request.plan_title,
      "start_date": self._request.start_date,
      "end_date": self._request.end_date,
      "meals_per_day": self._request.meals_per_day,
      "item_count": len(draft.items),
      "matched_recipes": matched,
      "generated_recipes": generated,
      "items": [item.to_dict() for item in draft.items],
    }

  def _completed(self, message: str | None) -> PlannerOutcome:
    return PlannerOutcome(status="completed", message=message or "Meal plan generated", result=self._result)

  async def _checkpoint(self, remaining: list[int], *, reason: CheckpointReason) -> PlannerOutcome:
    """Persist state for a fresh invocation and, for chunked runs, trigger it."""
    state = self._state
    job_id = self._tracker.job.job_id
    message = build_resumption_message(self._request, state, remaining)
    checkpoint = ResumptionCheckpoint(state=dump_state(state), remaining_indexes=list(remaining), invocation=state.invocation, saved_at=now_iso(), resumption_message=message, reason=reason)
    await self._tracker.advance(self._tracker.job.progress, meta_patch={"checkpoint": msgspec.to_builtins(checkpoint), "last_state": dump_state(state)})
    await self._tracker.event("checkpoint", f"Checkpoint saved with {len(remaining)} items remaining", {"reason": reason, "invocation": state.invocation})
    logger.info("Checkpoint saved job_id=%s reason=%s remaining=%d invocation=%d", job_id, reason, len(remaining), state.invocation)

    if reason == "chunked":
      await self._deps.enqueuer.enqueue(job_id, {"resume": True})
      return PlannerOutcome(status="checkpointed", message=f"Continuing with {len(remaining)} items in a new invocation")
    return PlannerOutcome(status="checkpointed", message="Waiting for asynchronous recipe generation")

  async def _refresh_from_draft(self, checkpoint: ResumptionCheckpoint) -> None:
    """Rebuild item-derived state from the stored draft after a pause."""
    state = self._state
    if state.draft_id is None:
      return
    draft = await self._load_draft()
    state.unmatched_indexes = draft.unassigned_indexes()
    if state.generation is not None:
      state.generation.awaiting_indexes = draft.pending_indexes()
      if checkpoint.reason == "chunked":
        unmatched = set(state.unmatched_indexes)
        state.generation.remaining_indexes = [index for index in checkpoint.remaining_indexes if index in unmatched]
    state.post_validation = None

  async def _load_draft(self, draft_id: str | None = None) -> DraftRecord:
    target = draft_id or self._state.draft_id
    if target is None:
      raise OrchestrationError("No draft exists yet; call generate_draft first")
    draft = await self._deps.drafts.get_draft(target)
    if draft is None:
      raise PermanentFailure(f"Draft {target} not found")
    return draft

  async def _load_preferences(self) -> HouseholdPreferences:
    if self._preferences is None:
      base = HouseholdPreferences()
      if self._request.use_user_preferences:
        base = await self._deps.households.load_preferences(self._request.household_id)
      self._preferences = merge_preferences(base, self._request.session_preferences)
    return self._preferences

  async def _save_state(self) -> None:
    await self._tracker.advance(self._tracker.job.progress, meta_patch={"last_state": dump_state(self._state)})

  def _event(self, kind: str, message: str, data: dict[str, Any] | None = None) -> None:
    add_event(self._state, JobEvent(at=now_iso(), kind=kind, message=message, data=data), limit=self._history_limit)

  def _fault(self, source: str, message: str, *, attempt: int | None = None) -> None:
    add_fault(self._state, JobFault(at=now_iso(), source=source, message=message, attempt=attempt), limit=self._history_limit)

  def _fault_dicts(self) -> list[dict[str, Any]]:
    return [msgspec.to_builtins(fault) for fault in self._state.faults]
