from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

import pytest
from conftest import FakeDraftSource, FakeRecipeSource, InMemoryCatalog, InMemoryDraftsRepo, InMemoryHouseholds, RecordingEnqueuer, build_draft, build_request

from mealplan.config import MatcherSettings, PlannerSettings
from mealplan.core.errors import PlannerAbort, RecipeGenerationError, TransientFailure
from mealplan.jobs.manager import JobManager
from mealplan.jobs.metadata import decode_metadata
from mealplan.jobs.progress import JobProgressTracker
from mealplan.planning.agent import PlannerAgent, PlannerDependencies
from mealplan.planning.generation import RecipeBatchGenerator
from mealplan.planning.matcher import RecipeMatcher
from mealplan.planning.policy import DeterministicStepPolicy, PolicyDecision, RequestedTool
from mealplan.planning.retry import DraftRetryRunner
from mealplan.planning.state import PlannerState, load_state


async def _no_sleep(delay: float) -> None:
  return None


class ScriptedPolicy:
  """Replays fixed decisions, then returns a completion summary."""

  def __init__(self, steps: list[Any]) -> None:
    self.steps = list(steps)
    self.seen: list[list[dict[str, Any]]] = []

  async def next_step(self, messages, state):
    self.seen.append(list(messages))
    if not self.steps:
      return PolicyDecision(text=json.dumps({"status": "completed", "message": "done"}))
    step = self.steps.pop(0)
    if isinstance(step, Exception):
      raise step
    if isinstance(step, str):
      return PolicyDecision(text=step)
    name, arguments = step
    return PolicyDecision(tool_calls=[RequestedTool(call_id=f"call-{len(self.seen)}", name=name, arguments=json.dumps(arguments))])


def _deps(drafts: InMemoryDraftsRepo, *, policy, catalog: InMemoryCatalog | None = None, recipes: FakeRecipeSource | None = None, planner: PlannerSettings | None = None, enqueuer: RecordingEnqueuer | None = None) -> PlannerDependencies:
  planner = planner or PlannerSettings()
  return PlannerDependencies(
    drafts=drafts,
    households=InMemoryHouseholds({"user-1": ["house-1"]}),
    matcher=RecipeMatcher(catalog or InMemoryCatalog(), drafts, MatcherSettings()),
    generator=RecipeBatchGenerator(recipes or FakeRecipeSource(), drafts, planner),
    draft_runner=DraftRetryRunner(FakeDraftSource(drafts), drafts, planner, sleep=_no_sleep),
    policy=policy,
    enqueuer=enqueuer or RecordingEnqueuer(),
  )


def _catalog_covering(request, count: int) -> InMemoryCatalog:
  draft = build_draft(request)
  return InMemoryCatalog([{"recipe_id": f"catalog-{index}", "title": item.title, "meal_type": item.meal_type} for index, item in enumerate(draft.items[:count])])


async def _tracker(manager: JobManager, request) -> JobProgressTracker:
  job = await manager.create_job(request.user_id, "meal_plan_generation", request.to_payload(), {"payload_signature": "sig"})
  return JobProgressTracker(manager=manager, job=await manager.mark_processing(job))


@pytest.mark.anyio
async def test_deterministic_run_matches_generates_and_finalizes(manager: JobManager, settings) -> None:
  request = build_request(end_date="2024-01-03", meals_per_day=2)
  drafts = InMemoryDraftsRepo()
  deps = _deps(drafts, policy=DeterministicStepPolicy(), catalog=_catalog_covering(request, 4))
  tracker = await _tracker(manager, request)
  agent = PlannerAgent(tracker=tracker, request=request, state=PlannerState(), deps=deps, settings=settings)

  outcome = await agent.run()

  assert outcome.status == "completed"
  assert outcome.result["matched_recipes"] == 4
  assert outcome.result["generated_recipes"] == 2
  assert [item["recipe_id"] for item in outcome.result["items"]] == ["catalog-0", "catalog-1", "catalog-2", "catalog-3", "gen-4", "gen-5"]
  assert agent.state.phase == "finalized"
  assert drafts.drafts[agent.state.draft_id].status == "converted"
  assert tracker.job.progress == 98
  assert decode_metadata(tracker.job.meta).recipe_assignment["totalAssigned"] == 4


@pytest.mark.anyio
async def test_policy_that_stops_early_is_finished_by_the_fallback(manager: JobManager, settings) -> None:
  request = build_request(end_date="2024-01-02", meals_per_day=1)
  drafts = InMemoryDraftsRepo()
  policy = ScriptedPolicy([("generate_draft", {}), ("validate", {"stage": "pre-assignment"}), '{"status": "completed", "message": "looks good"}'])
  deps = _deps(drafts, policy=policy)
  agent = PlannerAgent(tracker=await _tracker(manager, request), request=request, state=PlannerState(), deps=deps, settings=settings)

  outcome = await agent.run()

  assert outcome.status == "completed"
  assert outcome.message == "Meal plan finalized by the orchestrator"
  assert any(event.kind == "fallback" for event in agent.state.events)
  assert all(item.recipe_id for item in drafts.drafts[agent.state.draft_id].items)


@pytest.mark.anyio
async def test_tool_results_carry_state_and_next_step(manager: JobManager, settings) -> None:
  request = build_request(end_date="2024-01-01", meals_per_day=1)
  policy = ScriptedPolicy([("generate_draft", {})])
  deps = _deps(InMemoryDraftsRepo(), policy=policy)
  agent = PlannerAgent(tracker=await _tracker(manager, request), request=request, state=PlannerState(), deps=deps, settings=settings)

  # The summary arrives before validation, so nothing can be finalized.
  with pytest.raises(PlannerAbort):
    await agent.run()

  tool_message = next(message for message in policy.seen[1] if message["role"] == "tool")
  payload = json.loads(tool_message["content"])
  assert payload["ok"] is True
  assert payload["state"]["phase"] == "draft-ready"
  assert "pre-assignment" in payload["next_step"]


@pytest.mark.anyio
async def test_repeated_failures_of_one_tool_abort_the_run(manager: JobManager, settings) -> None:
  request = build_request()
  policy = ScriptedPolicy([("drop_tables", {}), ("drop_tables", {})])
  tracker = await _tracker(manager, request)
  agent = PlannerAgent(tracker=tracker, request=request, state=PlannerState(), deps=_deps(InMemoryDraftsRepo(), policy=policy), settings=settings)

  with pytest.raises(PlannerAbort) as excinfo:
    await agent.run()

  assert "drop_tables failed 2 times" in excinfo.value.message
  assert len(excinfo.value.faults) == 2
  assert agent.state.phase == "failed"
  assert len(decode_metadata(tracker.job.meta).faults) == 2


@pytest.mark.anyio
async def test_a_single_failure_is_reported_back_and_tolerated(manager: JobManager, settings) -> None:
  request = build_request(end_date="2024-01-01", meals_per_day=1)
  policy = ScriptedPolicy([("validate", {"stage": "whenever"})])
  agent = PlannerAgent(tracker=await _tracker(manager, request), request=request, state=PlannerState(), deps=_deps(InMemoryDraftsRepo(), policy=policy), settings=settings)

  with pytest.raises(PlannerAbort):
    await agent.run()

  tool_message = next(message for message in policy.seen[1] if message["role"] == "tool")
  assert json.loads(tool_message["content"])["ok"] is False
  assert agent.state.consecutive_failures["validate"] == 1


@pytest.mark.anyio
async def test_policy_outage_continues_in_the_fixed_pipeline_order(manager: JobManager, settings) -> None:
  request = build_request(end_date="2024-01-01", meals_per_day=1)
  drafts = InMemoryDraftsRepo()
  policy = ScriptedPolicy([("generate_draft", {}), TransientFailure("policy returned 503")])
  agent = PlannerAgent(tracker=await _tracker(manager, request), request=request, state=PlannerState(), deps=_deps(drafts, policy=policy), settings=settings)

  outcome = await agent.run()

  assert outcome.status == "completed"
  assert len(policy.seen) == 2
  assert agent.state.faults[0].source == "policy"
  assert any(event.kind == "fallback" for event in agent.state.events)
  assert agent.state.phase == "finalized"
  assert all(item.recipe_id for item in drafts.drafts[agent.state.draft_id].items)


@pytest.mark.anyio
async def test_tool_failure_limit_comes_from_settings(manager: JobManager, settings) -> None:
  request = build_request()
  policy = ScriptedPolicy([("drop_tables", {}), ("drop_tables", {}), ("drop_tables", {})])
  tolerant = replace(settings, planner=replace(settings.planner, tool_failure_limit=3))
  agent = PlannerAgent(tracker=await _tracker(manager, request), request=request, state=PlannerState(), deps=_deps(InMemoryDraftsRepo(), policy=policy), settings=tolerant)

  with pytest.raises(PlannerAbort) as excinfo:
    await agent.run()

  assert "drop_tables failed 3 times" in excinfo.value.message
  assert len(policy.seen) == 3


@pytest.mark.anyio
async def test_large_generation_checkpoints_and_requests_a_continuation(manager: JobManager, settings) -> None:
  request = build_request(start_date="2024-01-01", end_date="2024-01-10", meals_per_day=2)
  drafts = InMemoryDraftsRepo()
  enqueuer = RecordingEnqueuer()
  deps = _deps(drafts, policy=DeterministicStepPolicy(), enqueuer=enqueuer)
  tracker = await _tracker(manager, request)
  agent = PlannerAgent(tracker=tracker, request=request, state=PlannerState(), deps=deps, settings=replace(settings, planner=PlannerSettings()))

  outcome = await agent.run()

  assert outcome.status == "checkpointed"
  assert enqueuer.calls == [(tracker.job.job_id, {"resume": True})]
  checkpoint = decode_metadata(tracker.job.meta).checkpoint
  assert checkpoint is not None
  assert checkpoint.reason == "chunked"
  assert checkpoint.remaining_indexes == list(range(7, 20))
  assert "continuation" in checkpoint.resumption_message


@pytest.mark.anyio
async def test_resumed_run_continues_from_the_checkpoint(manager: JobManager, settings) -> None:
  request = build_request(start_date="2024-01-01", end_date="2024-01-10", meals_per_day=2)
  drafts = InMemoryDraftsRepo()
  recipes = FakeRecipeSource()
  deps = _deps(drafts, policy=DeterministicStepPolicy(), recipes=recipes)
  tracker = await _tracker(manager, request)
  first = PlannerAgent(tracker=tracker, request=request, state=PlannerState(), deps=deps, settings=settings)
  await first.run()

  outcome = None
  for _ in range(5):
    checkpoint = decode_metadata(tracker.job.meta).checkpoint
    if checkpoint is None:
      break
    tracker = JobProgressTracker(manager=manager, job=await manager.append_meta(tracker.job, {"checkpoint": None}))
    state = load_state(checkpoint.state)
    state.invocation += 1
    agent = PlannerAgent(tracker=tracker, request=request, state=state, deps=deps, settings=settings)
    outcome = await agent.run(checkpoint=checkpoint)
    if outcome.status == "completed":
      break

  assert outcome is not None and outcome.status == "completed"
  assert outcome.result["generated_recipes"] == 20
  assert len({spec.item_index for spec in recipes.calls}) == 20
  assert drafts.drafts[outcome.result["draft_id"]].status == "converted"


@pytest.mark.anyio
async def test_async_acceptance_waits_for_callbacks_without_enqueueing(manager: JobManager, settings) -> None:
  request = build_request(end_date="2024-01-01", meals_per_day=2)
  enqueuer = RecordingEnqueuer()
  deps = _deps(InMemoryDraftsRepo(), policy=DeterministicStepPolicy(), recipes=FakeRecipeSource(accept_async=True), enqueuer=enqueuer)
  tracker = await _tracker(manager, request)
  agent = PlannerAgent(tracker=tracker, request=request, state=PlannerState(), deps=deps, settings=settings)

  outcome = await agent.run()

  assert outcome.status == "checkpointed"
  assert enqueuer.calls == []
  checkpoint = decode_metadata(tracker.job.meta).checkpoint
  assert checkpoint.reason == "awaiting-callbacks"
  assert agent.state.generation.awaiting_indexes == [0, 1]


@pytest.mark.anyio
async def test_continuations_walk_the_queue_past_a_chunk_that_failed_completely(manager: JobManager, settings) -> None:
  request = build_request(start_date="2024-01-01", end_date="2024-01-10", meals_per_day=2)
  drafts = InMemoryDraftsRepo()
  enqueuer = RecordingEnqueuer()
  rejected = {index: [RecipeGenerationError("constraint-violation", "contains peanut", violations=["peanut"]) for _ in range(5)] for index in range(7)}
  recipes = FakeRecipeSource(rejected)
  deps = _deps(drafts, policy=DeterministicStepPolicy(), recipes=recipes, enqueuer=enqueuer)
  tracker = await _tracker(manager, request)
  agent = PlannerAgent(tracker=tracker, request=request, state=PlannerState(), deps=deps, settings=settings)

  assert (await agent.run()).status == "checkpointed"
  queues = [decode_metadata(tracker.job.meta).checkpoint.remaining_indexes]
  aborted = None
  for _ in range(6):
    checkpoint = decode_metadata(tracker.job.meta).checkpoint
    if checkpoint is None:
      break
    tracker = JobProgressTracker(manager=manager, job=await manager.append_meta(tracker.job, {"checkpoint": None}))
    state = load_state(checkpoint.state)
    state.invocation += 1
    agent = PlannerAgent(tracker=tracker, request=request, state=state, deps=deps, settings=settings)
    try:
      outcome = await agent.run(checkpoint=checkpoint)
    except PlannerAbort as exc:
      aborted = exc
      break
    if outcome.status == "checkpointed":
      queues.append(decode_metadata(tracker.job.meta).checkpoint.remaining_indexes)

  assert queues == [list(range(7, 20)), list(range(14, 20))]
  assert len(enqueuer.calls) == 2
  assert aborted is not None
  assert "generate_missing_recipes failed 2 times" in aborted.message

  attempted = [spec.item_index for spec in recipes.calls]
  assert set(attempted) == set(range(20))
  assert all(attempted.count(index) == 1 for index in range(7, 20))
  # One pass in the first chunk plus two retries once the queue drained.
  assert all(attempted.count(index) == 3 for index in range(7))
  items = drafts.drafts[agent.state.draft_id].items
  assert [item.recipe_id for item in items[7:]] == [f"gen-{index}" for index in range(7, 20)]
  assert all(item.recipe_id is None for item in items[:7])
