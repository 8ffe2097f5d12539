from __future__ import annotations

import json
import logging
from typing import Any

from google.api_core.exceptions import GoogleAPICallError
from google.cloud import tasks_v2

from mealplan.config import Settings
from mealplan.services.tasks.interface import TaskEnqueuer
from mealplan.services.tasks.local import PROCESS_JOB_PATH, TASK_SECRET_HEADER

logger = logging.getLogger(__name__)


class CloudTasksEnqueuer(TaskEnqueuer):
  """Enqueues tasks to Google Cloud Tasks."""

  def __init__(self, settings: Settings) -> None:
    self.settings = settings
    self.client = tasks_v2.CloudTasksClient()

  def _build_task(self, job_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    if not self.settings.base_url:
      raise RuntimeError("Base URL not configured.")
    headers = {"Content-Type": "application/json"}
    # OIDC owns the Authorization header, so the shared secret travels separately.
    if self.settings.task_secret:
      headers[TASK_SECRET_HEADER] = self.settings.task_secret
    http_request: dict[str, Any] = {
      "http_method": tasks_v2.HttpMethod.POST,
      "url": f"{self.settings.base_url.rstrip('/')}{PROCESS_JOB_PATH}",
      "headers": headers,
      "body": json.dumps({"job_id": job_id, **payload}).encode(),
    }
    if self.settings.cloud_run_invoker_service_account:
      http_request["oidc_token"] = {"service_account_email": self.settings.cloud_run_invoker_service_account}
    return {"http_request": http_request}

  async def enqueue(self, job_id: str, payload: dict[str, Any]) -> None:
    """Enqueue a job to Cloud Tasks."""
    if not self.settings.cloud_tasks_queue_path:
      raise RuntimeError("Cloud Tasks queue path not configured.")

    task = self._build_task(job_id, payload)
    try:
      response = self.client.create_task(request={"parent": self.settings.cloud_tasks_queue_path, "task": task})
    except GoogleAPICallError as exc:
      logger.error("Failed to enqueue task for job %s: %s", job_id, exc, exc_info=True)
      raise
    logger.info("Enqueued task %s for job %s", response.name, job_id)
