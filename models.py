from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda cls: [member.value for member in cls],
    )


class AccountType(str, Enum):
    cash = "CASH"
    goal = "GOAL"


class CashFlowType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class Frequency(str, Enum):
    weekly = "WEEKLY"
    fortnightly = "FORTNIGHTLY"
    monthly = "MONTHLY"
    quarterly = "QUARTERLY"
    yearly = "YEARLY"


class GoalStatus(str, Enum):
    in_progress = "IN_PROGRESS"
    completed = "COMPLETED"


ACCOUNT_TYPE_ENUM = _value_enum(AccountType, "accounttype")
CASH_FLOW_TYPE_ENUM = _value_enum(CashFlowType, "cashflowtype")
GOAL_STATUS_ENUM = _value_enum(GoalStatus, "goalstatus")


def normalize_name(name: str) -> str:
    return " ".join((name or "").split())


def name_key(name: str) -> str:
    return normalize_name(name).lower()


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[AccountType] = mapped_column(ACCOUNT_TYPE_ENUM, nullable=False)

    cash_flows: Mapped[list["CashFlow"]] = relationship(
        "CashFlow", back_populates="account"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_account_user_name"),
        Index("ix_accounts_user_type", "user_id", "type", "id"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # lower-cased, whitespace-collapsed name; backs case-insensitive uniqueness
    name_key: Mapped[str] = mapped_column(String(100), nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    cash_flows: Mapped[list["CashFlow"]] = relationship(
        "CashFlow", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name_key", name="uq_category_user_name"),
    )


class CategoryBudget(Base, TimestampMixin):
    __tablename__ = "category_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    custom_name: Mapped[Optional[str]] = mapped_column(String(100))

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "category_id", "year_month", name="uq_budget_user_category_month"
        ),
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )


class CashFlow(Base, TimestampMixin):
    __tablename__ = "cash_flows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[CashFlowType] = mapped_column(CASH_FLOW_TYPE_ENUM, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    subscription_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL")
    )

    account: Mapped["Account"] = relationship("Account", back_populates="cash_flows")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="cash_flows"
    )
    subscription: Mapped[Optional["Subscription"]] = relationship(
        "Subscription", back_populates="cash_flows"
    )

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "occurred_at", name="uq_cash_flow_subscription_period"
        ),
        Index("ix_cash_flows_user_occurred", "user_id", "occurred_at"),
        Index("ix_cash_flows_user_account", "user_id", "account_id"),
        Index(
            "ix_cash_flows_user_category_occurred",
            "user_id",
            "category_id",
            "occurred_at",
        ),
        CheckConstraint("amount_cents >= 0", name="ck_cash_flow_amount_positive"),
    )


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    merchant: Mapped[str] = mapped_column(String(60), nullable=False)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    # free text so an unrecognised value still posts (monthly fallback)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    next_post_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    cash_flows: Mapped[list["CashFlow"]] = relationship(
        "CashFlow", back_populates="subscription", passive_deletes=True
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_subscriptions_active_next", "is_active", "next_post_at"),
        CheckConstraint(
            "amount_cents IS NULL OR amount_cents >= 0",
            name="ck_subscription_amount_positive",
        ),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    saved_amount_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[GoalStatus] = mapped_column(
        GOAL_STATUS_ENUM, default=GoalStatus.in_progress, nullable=False
    )
    linked_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )

    linked_account: Mapped[Optional["Account"]] = relationship("Account")

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_goal_user_name"),
        CheckConstraint("target_amount_cents >= 0", name="ck_goal_target_positive"),
    )


class Transfer(Base):
    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    from_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL")
    )
    to_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transfer_amount_positive"),
    )
