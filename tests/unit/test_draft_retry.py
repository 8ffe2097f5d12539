from __future__ import annotations

from dataclasses import replace

import pytest
from conftest import FakeDraftSource, InMemoryDraftsRepo, build_draft, build_request

from mealplan.config import PlannerSettings
from mealplan.core.errors import PermanentFailure, TransientFailure
from mealplan.jobs.manager import JobManager
from mealplan.jobs.metadata import decode_metadata
from mealplan.jobs.progress import JobProgressTracker
from mealplan.planning.retry import DraftRetryRunner, cleanup_duplicate_failed_drafts


class RecordingSleep:
  def __init__(self) -> None:
    self.delays: list[float] = []

  async def __call__(self, delay: float) -> None:
    self.delays.append(delay)


async def _tracker(manager: JobManager) -> JobProgressTracker:
  job = await manager.mark_processing(await manager.create_job("user-1", "meal_plan_generation", {}))
  return JobProgressTracker(manager=manager, job=job)


@pytest.mark.anyio
async def test_transient_failures_back_off_then_succeed(manager: JobManager, drafts_repo: InMemoryDraftsRepo) -> None:
  source = FakeDraftSource(drafts_repo, failures=[TransientFailure("upstream 503"), TransientFailure("upstream 503")])
  sleep = RecordingSleep()
  runner = DraftRetryRunner(source, drafts_repo, PlannerSettings(), sleep=sleep)
  tracker = await _tracker(manager)

  receipt = await runner.run(tracker, build_request())

  assert receipt.draft_id == "draft-3"
  assert sleep.delays == [4.0, 8.0]
  meta = decode_metadata(tracker.job.meta)
  assert meta.retry_count == 3
  assert meta.draft_id == "draft-3"
  assert [attempt.error for attempt in meta.draft_attempts] == ["upstream 503", "upstream 503", None]
  assert tracker.job.progress == 59


@pytest.mark.anyio
async def test_permanent_failure_is_not_retried(manager: JobManager, drafts_repo: InMemoryDraftsRepo) -> None:
  source = FakeDraftSource(drafts_repo, failures=[PermanentFailure("household has no members")])
  sleep = RecordingSleep()
  runner = DraftRetryRunner(source, drafts_repo, PlannerSettings(), sleep=sleep)
  tracker = await _tracker(manager)

  with pytest.raises(PermanentFailure):
    await runner.run(tracker, build_request())

  assert source.calls == 1
  assert sleep.delays == []
  assert decode_metadata(tracker.job.meta).last_error == "household has no members"


@pytest.mark.anyio
async def test_identical_exhausted_failures_clean_up_duplicate_drafts(manager: JobManager, drafts_repo: InMemoryDraftsRepo) -> None:
  tracker = await _tracker(manager)
  job_id = tracker.job.job_id
  request = build_request()
  for index in range(3):
    draft = build_draft(request, draft_id=f"failed-{index}", job_id=job_id)
    drafts_repo.add(replace(draft, status="failed", error_message="model overloaded", created_at=f"2024-01-01T00:00:0{index}Z"))
  source = FakeDraftSource(drafts_repo, failures=[TransientFailure("model overloaded")] * 3)
  runner = DraftRetryRunner(source, drafts_repo, PlannerSettings(), sleep=RecordingSleep())

  with pytest.raises(TransientFailure) as excinfo:
    await runner.run(tracker, request)

  assert "after 3 attempts" in excinfo.value.message
  assert sorted(drafts_repo.drafts) == ["failed-0"]


@pytest.mark.anyio
async def test_cleanup_keeps_drafts_with_other_errors(drafts_repo: InMemoryDraftsRepo) -> None:
  request = build_request()
  for index, message in enumerate(["a", "a", "b"]):
    draft = build_draft(request, draft_id=f"failed-{index}", job_id="job-1")
    drafts_repo.add(replace(draft, status="failed", error_message=message, created_at=f"2024-01-01T00:00:0{index}Z"))

  removed = await cleanup_duplicate_failed_drafts(drafts_repo, "job-1", "a")

  assert removed == 1
  assert sorted(drafts_repo.drafts) == ["failed-0", "failed-2"]
