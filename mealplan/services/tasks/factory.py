from __future__ import annotations

from mealplan.config import Settings
from mealplan.services.tasks.interface import TaskEnqueuer


def get_task_enqueuer(settings: Settings) -> TaskEnqueuer:
  """Factory to get the configured task enqueuer."""
  if settings.task_service_provider == "gcp":
    from mealplan.services.tasks.gcp import CloudTasksEnqueuer

    return CloudTasksEnqueuer(settings)
  from mealplan.services.tasks.local import LocalHttpEnqueuer

  return LocalHttpEnqueuer(settings)
