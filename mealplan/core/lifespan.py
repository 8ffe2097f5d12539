import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mealplan.config import get_settings
from mealplan.core.database import get_db_engine
from mealplan.core.firebase import initialize_firebase
from mealplan.core.logging import _initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Initialize logging and external clients, then dispose the engine on shutdown."""
  settings = get_settings()
  logger = logging.getLogger("mealplan.core.lifespan")

  _initialize_logging(settings)
  logger.info("Startup complete - logging verified. environment=%s system_user_id=%s", settings.environment, settings.system_user_id)
  initialize_firebase()

  if not settings.draft_generator_url or not settings.recipe_generator_url:
    logger.warning("Collaborator URLs are not fully configured; plan jobs will fail until they are set.")

  try:
    yield
  finally:
    engine = get_db_engine()
    if engine is not None:
      await engine.dispose()
      logger.info("Database engine disposed.")
