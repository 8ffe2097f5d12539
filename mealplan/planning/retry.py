"""Outer retry wrapper around remote draft generation."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Protocol

from mealplan.clients.draft_generator import DraftReceipt
from mealplan.config import PlannerSettings
from mealplan.core.errors import PermanentFailure, TransientFailure
from mealplan.jobs.metadata import DraftAttempt, decode_metadata, encode_metadata, with_draft_attempt
from mealplan.jobs.progress import JobProgressTracker, draft_attempt_progress
from mealplan.planning.requests import NormalizedPlanRequest
from mealplan.storage.drafts_repo import DraftsRepository
from mealplan.utils.timeutils import now_iso

logger = logging.getLogger(__name__)


class DraftSource(Protocol):
  async def generate(self, request: NormalizedPlanRequest, job_id: str, attempt: int) -> DraftReceipt: ...


async def cleanup_duplicate_failed_drafts(drafts: DraftsRepository, job_id: str, error_message: str) -> int:
  """Delete failed drafts sharing one error message, keeping the oldest."""
  failed = await drafts.list_failed_drafts(job_id)
  duplicates = [draft.draft_id for draft in failed if draft.error_message == error_message]
  if len(duplicates) <= 1:
    return 0
  removed = await drafts.delete_drafts(duplicates[1:])
  logger.info("Removed duplicate failed drafts job_id=%s removed=%d kept=%s", job_id, removed, duplicates[0])
  return removed


class DraftRetryRunner:
  """Retry draft generation with exponential backoff, for transient errors only.

  Each attempt is recorded in the job metadata (``retry_count``,
  ``last_attempt_at`` and the ``draft_attempts`` ring buffer) and moves the
  progress to 30 + 10 * attempt. Permanent errors propagate immediately.
  When every attempt fails with the same message the duplicate failed drafts
  left behind by the generator are removed.
  """

  def __init__(self, source: DraftSource, drafts: DraftsRepository, settings: PlannerSettings, *, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
    self._source = source
    self._drafts = drafts
    self._settings = settings
    self._sleep = sleep

  def _delay(self, attempt: int) -> float:
    delays = self._settings.backoff_delays
    return delays[min(attempt - 1, len(delays) - 1)]

  async def _record_attempt(self, tracker: JobProgressTracker, attempt: int, *, error: str | None = None, draft_id: str | None = None) -> None:
    timestamp = now_iso()
    metadata = decode_metadata(tracker.job.meta)
    metadata = with_draft_attempt(metadata, DraftAttempt(attempt=attempt, at=timestamp, error=error, draft_id=draft_id), limit=self._settings.history_limit)
    patch = {"retry_count": attempt, "last_attempt_at": timestamp, "draft_attempts": encode_metadata(metadata)["draft_attempts"]}
    if error is not None:
      patch["last_error"] = error
    if draft_id is not None:
      patch["draft_id"] = draft_id
    await tracker.append_meta(patch)

  async def run(self, tracker: JobProgressTracker, request: NormalizedPlanRequest) -> DraftReceipt:
    job_id = tracker.job.job_id
    max_attempts = self._settings.draft_max_attempts
    errors: list[str] = []

    for attempt in range(1, max_attempts + 1):
      await tracker.advance(draft_attempt_progress(attempt))
      logger.info("Generating draft job_id=%s attempt=%d/%d", job_id, attempt, max_attempts)
      try:
        receipt = await self._source.generate(request, job_id, attempt)
      except PermanentFailure as exc:
        await self._record_attempt(tracker, attempt, error=exc.message)
        logger.warning("Draft generation failed permanently job_id=%s attempt=%d error=%s", job_id, attempt, exc.message)
        raise
      except TransientFailure as exc:
        errors.append(exc.message)
        await self._record_attempt(tracker, attempt, error=exc.message)
        if attempt < max_attempts:
          delay = self._delay(attempt)
          logger.warning("Draft generation failed job_id=%s attempt=%d error=%s retrying_in=%.1fs", job_id, attempt, exc.message, delay)
          await self._sleep(delay)
        continue

      await self._record_attempt(tracker, attempt, draft_id=receipt.draft_id)
      return receipt

    counts = Counter(errors)
    last_error = errors[-1] if errors else "unknown error"
    if len(counts) == 1 and counts[last_error] == max_attempts:
      await cleanup_duplicate_failed_drafts(self._drafts, job_id, last_error)
    raise TransientFailure(f"Draft generation failed after {max_attempts} attempts: {last_error}", details={"errors": errors})
