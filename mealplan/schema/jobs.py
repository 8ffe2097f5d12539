from __future__ import annotations

from sqlalchemy import Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from mealplan.core.database import Base

_UTC_NOW = text("""to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS"Z"')""")


class AsyncJob(Base):
  __tablename__ = "async_jobs"
  __table_args__ = (
    Index("ix_async_jobs_user_status", "user_id", "status"),
    Index("ix_async_jobs_payload_signature", text("(meta ->> 'payload_signature')")),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  job_type: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
  progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
  result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  meta: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
  created_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_UTC_NOW)
  updated_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_UTC_NOW)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)
