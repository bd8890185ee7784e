from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import AutopayCadence, FinanceKind
from periods import parse_month_key


class UserIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    username: str = Field(..., min_length=1, max_length=100)
    credential: str = Field(..., min_length=1, max_length=255)


class CredentialIn(BaseModel):
    credential: str = Field(..., min_length=1, max_length=255)


class SignInIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(..., min_length=3, max_length=255)
    credential: str = Field(..., min_length=1, max_length=255)


class FinanceEntryIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    kind: FinanceKind
    title: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0)
    category: str = Field(default="General", max_length=100)
    entry_date: Optional[date] = None
    source_key: Optional[str] = Field(default=None, max_length=120)

    @field_validator("category")
    @classmethod
    def _default_category(cls, value: str) -> str:
        return value or "General"


class AutopayPlanIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0)
    cadence: AutopayCadence = AutopayCadence.monthly
    start_date: date


class GoalIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=120)
    current_amount_cents: int = Field(default=0, ge=0)
    target_amount_cents: int = Field(..., gt=0)
    target_date: Optional[date] = None


class GoalAllocationIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    entry_date: Optional[date] = None


class GoalAdjustIn(BaseModel):
    delta_cents: int


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    month_key: Optional[str] = None

    @field_validator("month_key")
    @classmethod
    def _valid_month_key(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_month_key(value)
        return value


class ActiveGoalsIn(BaseModel):
    goal_ids: list[int] = Field(default_factory=list)
