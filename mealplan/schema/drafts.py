from __future__ import annotations

from sqlalchemy import ForeignKey, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from mealplan.core.database import Base

_UTC_NOW = text("""to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS.US"Z"')""")


class MealPlanDraft(Base):
  __tablename__ = "meal_plan_drafts"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str | None] = mapped_column(ForeignKey("async_jobs.id", ondelete="SET NULL"), nullable=True, index=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  household_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="generating")
  plan_title: Mapped[str] = mapped_column(String, nullable=False)
  start_date: Mapped[str] = mapped_column(String, nullable=False)
  end_date: Mapped[str] = mapped_column(String, nullable=False)
  meals_per_day: Mapped[int] = mapped_column(Integer, nullable=False)
  timezone: Mapped[str] = mapped_column(String, nullable=False, default="UTC")
  scope: Mapped[str] = mapped_column(String, nullable=False, default="weekly")
  items: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
  user_context: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  meal_plan_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_UTC_NOW)
  updated_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_UTC_NOW)
