from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import AccountType, CashFlowType
from periods import parse_year_month


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    type: AccountType = AccountType.cash


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryMergeIn(BaseModel):
    source_ids: list[int] = Field(..., min_length=1)
    target_id: int
    merge_budgets: bool = True


class CashFlowIn(BaseModel):
    account_id: int
    amount_cents: int = Field(..., gt=0)
    occurred_at: datetime
    description: Optional[str] = Field(default=None, max_length=255)
    category_id: Optional[int] = None


class CategoryBudgetIn(BaseModel):
    category_id: int
    year_month: str
    amount_cents: int = Field(..., gt=0)
    custom_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("year_month")
    @classmethod
    def _check_year_month(cls, value: str) -> str:
        parse_year_month(value)
        return value.strip()


class SubscriptionIn(BaseModel):
    merchant: str = Field(..., min_length=1, max_length=60)
    amount_cents: int = Field(..., ge=0)
    frequency: str = Field(..., min_length=1, max_length=20)
    start_date: datetime
    first_post_at: Optional[datetime] = None
    is_active: Optional[bool] = None


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    target_amount_cents: int = Field(..., ge=0)
    due_date: Optional[date] = None


class GoalUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=64)
    target_amount_cents: Optional[int] = Field(default=None, ge=0)
    due_date: Optional[date] = None


class ContributionIn(BaseModel):
    from_account_id: int
    amount_cents: int = Field(..., gt=0)


class CashFlowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: CashFlowType
    amount_cents: int
    occurred_at: datetime
    created_at: datetime
    description: Optional[str]
    account_id: int
    category_id: Optional[int]
    subscription_id: Optional[int]
