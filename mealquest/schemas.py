from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# Upper bounds keep values inside SQLite INTEGER and datetime range.
MAX_COUNT = 1_000_000
MAX_POINTS = 1_000_000_000
MAX_SPAN_SECONDS = 366 * 24 * 3600


class ApiModel(BaseModel):
    # Clients send camelCase; snake_case is accepted too.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Quests ----------
class QuestRef(ApiModel):
    quest_id: int


class QuestProgressIn(ApiModel):
    quest_id: int
    increment: int = Field(1, ge=1, le=MAX_COUNT)


class QuestKindProgressIn(ApiModel):
    quest_kind: str = Field(..., min_length=1)
    amount: int = Field(1, ge=1, le=MAX_COUNT)


class QuestCreate(ApiModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    kind: str = "GENERAL"
    score_reward: int = Field(0, ge=0, le=MAX_POINTS)
    requirement: int = Field(1, ge=1, le=MAX_COUNT)
    frequency: Literal["ONCE", "DAILY"] = "ONCE"
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class QuestUpdate(ApiModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    kind: Optional[str] = None
    score_reward: Optional[int] = Field(None, ge=0, le=MAX_POINTS)
    requirement: Optional[int] = Field(None, ge=1, le=MAX_COUNT)
    frequency: Optional[Literal["ONCE", "DAILY"]] = None
    is_active: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


# ---------- Items ----------
class ItemRef(ApiModel):
    item_id: int


class ItemUseIn(ApiModel):
    item_id: int
    target_user_id: Optional[int] = None


class ItemGrantIn(ApiModel):
    item_id: int
    quantity: int = Field(1, ge=1, le=MAX_COUNT)


class ItemCreate(ApiModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: int = Field(0, ge=0, le=MAX_POINTS)
    type: Literal["CONSUMABLE", "EQUIPMENT", "SPECIAL"] = "CONSUMABLE"
    effect: Optional[str] = None
    duration: int = Field(0, ge=0, le=MAX_SPAN_SECONDS, description="Seconds; 0 means instantaneous")
    cooldown: int = Field(0, ge=0, le=MAX_SPAN_SECONDS, description="Seconds between uses")
    magnitude: Optional[float] = Field(None, ge=0, le=1000)
    is_active: bool = True


class ItemUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0, le=MAX_POINTS)
    type: Optional[Literal["CONSUMABLE", "EQUIPMENT", "SPECIAL"]] = None
    effect: Optional[str] = None
    duration: Optional[int] = Field(None, ge=0, le=MAX_SPAN_SECONDS)
    cooldown: Optional[int] = Field(None, ge=0, le=MAX_SPAN_SECONDS)
    magnitude: Optional[float] = Field(None, ge=0, le=1000)
    is_active: Optional[bool] = None


# ---------- Users, meals, streaks ----------
class UserCreate(ApiModel):
    name: str = Field(..., min_length=1)
    role: Literal["USER", "ADMIN"] = "USER"


class MealIn(ApiModel):
    meal_type: Literal["BREAKFAST", "LUNCH", "DINNER", "SNACK"]
    food_name: Optional[str] = None
    image_url: Optional[str] = None


class StreakUpdate(ApiModel):
    current_streak: Optional[int] = Field(None, ge=0, le=MAX_COUNT)
    longest_streak: Optional[int] = Field(None, ge=0, le=MAX_COUNT)


class ClockAdvanceIn(ApiModel):
    seconds: int = Field(..., ge=0, le=MAX_SPAN_SECONDS)
