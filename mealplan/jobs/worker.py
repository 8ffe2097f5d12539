"""Background processor for meal plan generation jobs."""

from __future__ import annotations

import logging

from mealplan.clients.draft_generator import DraftGeneratorClient
from mealplan.clients.recipe_generator import RecipeGeneratorClient
from mealplan.config import Settings
from mealplan.core.errors import JobStateError, OrchestrationError, PlannerAbort
from mealplan.jobs.manager import JobManager
from mealplan.jobs.metadata import ResumptionCheckpoint, decode_metadata
from mealplan.jobs.models import JobRecord
from mealplan.jobs.progress import PROGRESS_STARTED, JobProgressTracker
from mealplan.planning.agent import PlannerAgent, PlannerDependencies
from mealplan.planning.generation import RecipeBatchGenerator
from mealplan.planning.matcher import RecipeMatcher
from mealplan.planning.policy import build_step_policy
from mealplan.planning.requests import NormalizedPlanRequest
from mealplan.planning.retry import DraftRetryRunner
from mealplan.planning.state import PlannerState, dump_state, load_state
from mealplan.services.tasks.factory import get_task_enqueuer
from mealplan.storage.factory import _get_drafts_repo, _get_household_directory, _get_jobs_repo, _get_recipe_catalog


def build_planner_dependencies(settings: Settings) -> PlannerDependencies:
  """Wire the production collaborators from settings."""
  drafts = _get_drafts_repo(settings)
  return PlannerDependencies(
    drafts=drafts,
    households=_get_household_directory(settings),
    matcher=RecipeMatcher(_get_recipe_catalog(settings), drafts, settings.matcher),
    generator=RecipeBatchGenerator(RecipeGeneratorClient(settings), drafts, settings.planner),
    draft_runner=DraftRetryRunner(DraftGeneratorClient(settings), drafts, settings.planner),
    policy=build_step_policy(settings),
    enqueuer=get_task_enqueuer(settings),
  )


class JobProcessor:
  """Coordinates execution of meal plan jobs, fresh or resumed."""

  def __init__(self, *, manager: JobManager, deps: PlannerDependencies, settings: Settings) -> None:
    self._manager = manager
    self._deps = deps
    self._settings = settings
    self._logger = logging.getLogger(__name__)

  async def process(self, job_id: str, *, resume: bool = False) -> JobRecord | None:
    """Run (or continue) the planner for one job and record the outcome."""
    job = await self._manager.get_job(job_id)
    if job is None:
      self._logger.error("Job %s not found during worker processing.", job_id)
      return None
    if job.is_terminal:
      self._logger.info("Job %s is already %s. Skipping.", job_id, job.status)
      return job

    checkpoint: ResumptionCheckpoint | None = None
    if resume:
      checkpoint = decode_metadata(job.meta).checkpoint
      if job.status != "processing" or checkpoint is None:
        self._logger.info("Ignoring resume for job %s status=%s has_checkpoint=%s", job_id, job.status, checkpoint is not None)
        return job
      # Claim the checkpoint so a duplicate trigger cannot run it twice.
      job = await self._manager.append_meta(job, {"checkpoint": None})
      state = load_state(checkpoint.state)
      state.invocation += 1
    else:
      if job.status == "processing":
        self._logger.info("Job %s is already processing. Skipping duplicate trigger.", job_id)
        return job
      job = await self._manager.mark_processing(job)
      state = PlannerState()

    tracker = JobProgressTracker(manager=self._manager, job=job)
    if checkpoint is None:
      await tracker.event("started", "Planner started")
      await tracker.advance(PROGRESS_STARTED)

    try:
      request = NormalizedPlanRequest.from_payload(job.payload)
      agent = PlannerAgent(tracker=tracker, request=request, state=state, deps=self._deps, settings=self._settings)
      outcome = await agent.run(checkpoint=checkpoint)
    except Exception as exc:  # noqa: BLE001
      return await self._fail(tracker, state, exc)

    if outcome.status == "checkpointed":
      self._logger.info("Job %s paused: %s", job_id, outcome.message)
      return tracker.job

    await tracker.event("completed", outcome.message)
    return await self._manager.mark_completed(tracker.job, {**(outcome.result or {}), "message": outcome.message})

  async def _fail(self, tracker: JobProgressTracker, state: PlannerState, exc: Exception) -> JobRecord | None:
    job_id = tracker.job.job_id
    message = exc.message if isinstance(exc, OrchestrationError) else (str(exc) or type(exc).__name__)
    self._logger.error("Job %s failed: %s", job_id, message, exc_info=not isinstance(exc, PlannerAbort))

    current = await self._manager.get_job(job_id)
    if current is None or current.is_terminal:
      return current

    meta_patch = {"last_state": dump_state(state)}
    try:
      current = await self._manager.record_fault(current, "planner", message, details={"error_type": type(exc).__name__})
      failed = await self._manager.mark_failed(current, message, meta_patch)
    except (JobStateError, OrchestrationError) as update_exc:
      self._logger.error("Failed to update job status after processing error: %s", update_exc)
      return None

    if state.draft_id is not None and state.draft_status != "converted":
      # Keep the partial plan for inspection.
      try:
        await self._deps.drafts.update_status(state.draft_id, "failed", error_message=message)
      except OrchestrationError as update_exc:
        self._logger.error("Failed to mark draft %s failed: %s", state.draft_id, update_exc)
    return failed


async def process_job_sync(job_id: str, settings: Settings, *, resume: bool = False) -> JobRecord | None:
  """Run a job immediately in the current process."""
  logger = logging.getLogger(__name__)
  repo = _get_jobs_repo(settings)
  manager = JobManager(repo, history_limit=settings.planner.history_limit)
  try:
    processor = JobProcessor(manager=manager, deps=build_planner_dependencies(settings), settings=settings)
    return await processor.process(job_id, resume=resume)
  except Exception as exc:
    logger.error("Synchronous job processing failed for job %s: %s", job_id, exc, exc_info=True)
    try:
      record = await manager.get_job(job_id)
      if record is not None and not record.is_terminal:
        await manager.mark_failed(record, f"System error during job processing: {exc}")
    except Exception as update_exc:  # noqa: BLE001
      logger.error("Failed to update job status after processing error: %s", update_exc)
    return None
