"""SQLAlchemy models for the meal plan tables."""

from mealplan.schema.drafts import MealPlanDraft
from mealplan.schema.households import HouseholdMember, Profile, UserSettings
from mealplan.schema.jobs import AsyncJob
from mealplan.schema.recipes import Recipe, RecipeIngredient, RecipeTag

__all__ = ["AsyncJob", "HouseholdMember", "MealPlanDraft", "Profile", "Recipe", "RecipeIngredient", "RecipeTag", "UserSettings"]
