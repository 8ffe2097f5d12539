from __future__ import annotations

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from mealplan.core.database import Base


class HouseholdMember(Base):
  __tablename__ = "household_members"
  __table_args__ = (UniqueConstraint("household_id", "user_id", name="ux_household_members_household_user"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  household_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  role: Mapped[str] = mapped_column(String, nullable=False, default="member")
  status: Mapped[str] = mapped_column(String, nullable=False, default="active")


class Profile(Base):
  __tablename__ = "profiles"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  display_name: Mapped[str | None] = mapped_column(String, nullable=True)
  preferences: Mapped[dict | None] = mapped_column(JSONB, nullable=True)


class UserSettings(Base):
  __tablename__ = "user_settings"

  user_id: Mapped[str] = mapped_column(String, primary_key=True)
  dietary_preferences: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  cooking_preferences: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
