from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from models import (
    Account,
    AccountType,
    CashFlow,
    CashFlowType,
    Category,
    CategoryBudget,
    Frequency,
    Goal,
    GoalStatus,
    Subscription,
    Transfer,
    name_key,
    normalize_name,
)
from periods import Period, day_period, month_period
from recurrence import local_now, parse_frequency
from schemas import (
    AccountIn,
    CashFlowIn,
    CategoryBudgetIn,
    CategoryIn,
    CategoryMergeIn,
    GoalIn,
    GoalUpdateIn,
    SubscriptionIn,
)

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_CATEGORY = "Subscriptions"
GOAL_TRANSFER_CATEGORY = "Goal Transfer"
UNCATEGORIZED_CATEGORY = "Uncategorized"
DEFAULT_CASH_ACCOUNT = "Cash"
TREND_RANGES = ("WEEK", "MONTH", "YEAR")

SYSTEM_CATEGORY_DEFAULTS = (
    "Uncategorized",
    "Income",
    "Food",
    "Groceries",
    "Transport",
    "Shopping",
    "Entertainment",
    "Education",
    "Health",
    "Fitness",
    "Housing",
    "Utilities",
    "Other",
)


class NotFoundError(ValueError):
    pass


class StateConflictError(ValueError):
    pass


class MissingCashAccount(StateConflictError):
    pass


class InsufficientFunds(StateConflictError):
    pass


def signed_amount():
    return case(
        (CashFlow.type == CashFlowType.income, CashFlow.amount_cents),
        else_=-CashFlow.amount_cents,
    )


def percent_of(part: int, whole: int) -> Optional[Decimal]:
    if whole <= 0:
        return None
    value = Decimal(part) * 100 / Decimal(whole)
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _progress_ratio(saved_cents: int, target_cents: int) -> Decimal:
    if not target_cents:
        return Decimal(0)
    return Decimal(saved_cents or 0) * 100 / Decimal(target_cents)


def progress_percent(saved_cents: int, target_cents: int) -> int:
    value = _progress_ratio(saved_cents, target_cents)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _get_owned(session: Session, model, obj_id: int, user_id: int, label: str):
    obj = session.get(model, obj_id)
    if not obj or obj.user_id != user_id:
        raise NotFoundError(f"{label} not found")
    return obj


@dataclass(frozen=True)
class BudgetSummary:
    category_id: int
    year_month: str
    budget_cents: int
    spent_cents: int
    custom_name: Optional[str] = None

    @property
    def remaining_cents(self) -> int:
        return self.budget_cents - self.spent_cents

    @property
    def expense_vs_budget_pct(self) -> Optional[Decimal]:
        return percent_of(self.spent_cents, self.budget_cents)


@dataclass(frozen=True)
class ContributionResult:
    new_goal_balance_cents: int
    new_cash_balance_cents: int


class CategoryResolver:
    """Idempotent find-or-create for per-user categories.

    Lookup is case-insensitive. Passing ``is_system=True`` promotes an
    existing user category to a system one; a system category is never
    demoted. Nothing is committed here, only flushed.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def find(self, user_id: int, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == user_id, Category.name_key == name_key(name)
            )
        )

    def resolve_or_create(
        self, user_id: int, name: str, is_system: bool = False
    ) -> Category:
        clean_name = normalize_name(name)
        if not clean_name:
            raise ValueError("Category name cannot be empty")

        existing = self.find(user_id, clean_name)
        if existing:
            if is_system and not existing.is_system:
                existing.is_system = True
                self.session.flush()
            return existing

        category = Category(
            user_id=user_id,
            name=clean_name,
            name_key=clean_name.lower(),
            is_system=is_system,
        )
        try:
            with self.session.begin_nested():
                self.session.add(category)
        except IntegrityError:
            # Another writer created the same name after our lookup.
            existing = self.find(user_id, clean_name)
            if existing is None:
                raise
            logger.info(
                f"category_resolve_race: user={user_id} name={clean_name!r} "
                f"category={existing.id}"
            )
            if is_system and not existing.is_system:
                existing.is_system = True
                self.session.flush()
            return existing
        return category


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.type, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        return _get_owned(self.session, Account, account_id, self.user_id, "Account")

    def create(self, data: AccountIn) -> Account:
        name = normalize_name(data.name)
        existing = self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id,
                func.lower(Account.name) == name.lower(),
            )
        )
        if existing:
            raise StateConflictError(f"Account with name '{name}' already exists")
        account = Account(user_id=self.user_id, name=name, type=data.type)
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def canonical_cash_account(self) -> Optional[Account]:
        return self.session.scalar(
            select(Account)
            .where(Account.user_id == self.user_id, Account.type == AccountType.cash)
            .order_by(Account.id)
            .limit(1)
        )

    def require_cash_account(self) -> Account:
        account = self.canonical_cash_account()
        if account is None:
            raise MissingCashAccount(f"No CASH account found for user {self.user_id}")
        return account

    def ensure_cash_account(self) -> Account:
        account = self.canonical_cash_account()
        if account is None:
            account = Account(
                user_id=self.user_id, name=DEFAULT_CASH_ACCOUNT, type=AccountType.cash
            )
            self.session.add(account)
            self.session.flush()
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        in_use = self.session.scalar(
            select(func.count(CashFlow.id)).where(CashFlow.account_id == account.id)
        )
        if in_use:
            raise StateConflictError("Account has ledger entries and cannot be deleted")
        linked = self.session.scalar(
            select(func.count(Goal.id)).where(Goal.linked_account_id == account.id)
        )
        if linked:
            raise StateConflictError("Account is linked to a goal")
        self.session.delete(account)
        self.session.commit()


def provision_user(session: Session, user_id: int) -> None:
    """Create the canonical cash account and default system categories."""
    AccountService(session, user_id).ensure_cash_account()
    CategoryService(session, user_id).ensure_system_categories()
    session.commit()


class BalanceService:
    """Balances derived from the ledger; nothing here writes."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _signed_sum(self, *criteria) -> int:
        stmt = select(func.coalesce(func.sum(signed_amount()), 0)).where(
            CashFlow.user_id == self.user_id, *criteria
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def account_balance(self, account_id: int) -> int:
        _get_owned(self.session, Account, account_id, self.user_id, "Account")
        return self._signed_sum(CashFlow.account_id == account_id)

    def total_balance(self) -> int:
        return self._signed_sum()

    def category_spend(
        self,
        category_id: int,
        start: datetime,
        end: datetime,
        type: CashFlowType = CashFlowType.expense,
    ) -> int:
        _get_owned(self.session, Category, category_id, self.user_id, "Category")
        stmt = select(func.coalesce(func.sum(CashFlow.amount_cents), 0)).where(
            CashFlow.user_id == self.user_id,
            CashFlow.category_id == category_id,
            CashFlow.type == type,
            CashFlow.occurred_at.between(start, end),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)


class CashFlowService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, cash_flow_id: int) -> CashFlow:
        return _get_owned(
            self.session, CashFlow, cash_flow_id, self.user_id, "Cash flow"
        )

    def record_income(self, data: CashFlowIn) -> CashFlow:
        return self._record(CashFlowType.income, data)

    def record_expense(self, data: CashFlowIn) -> CashFlow:
        # balances may go negative; this is a tracker, not a bank
        return self._record(CashFlowType.expense, data)

    def _record(self, type: CashFlowType, data: CashFlowIn) -> CashFlow:
        if data.amount_cents <= 0:
            raise ValueError("Amount must be positive")
        account = _get_owned(
            self.session, Account, data.account_id, self.user_id, "Account"
        )
        if data.category_id is not None:
            _get_owned(
                self.session, Category, data.category_id, self.user_id, "Category"
            )
        cash_flow = CashFlow(
            user_id=self.user_id,
            type=type,
            amount_cents=data.amount_cents,
            occurred_at=data.occurred_at,
            description=data.description,
            account_id=account.id,
            category_id=data.category_id,
        )
        self.session.add(cash_flow)
        self.session.commit()
        self.session.refresh(cash_flow)
        return cash_flow

    def reverse(self, cash_flow_id: int) -> CashFlow:
        original = self.get(cash_flow_id)
        opposite = (
            CashFlowType.expense
            if original.type == CashFlowType.income
            else CashFlowType.income
        )
        reversal = CashFlow(
            user_id=self.user_id,
            type=opposite,
            amount_cents=original.amount_cents,
            occurred_at=local_now(),
            description=f"Reversal: {original.description or original.id}"[:255],
            account_id=original.account_id,
            category_id=original.category_id,
        )
        self.session.add(reversal)
        self.session.commit()
        self.session.refresh(reversal)
        return reversal

    def recent(self, limit: int = 10) -> list[CashFlow]:
        stmt = (
            select(CashFlow)
            .options(joinedload(CashFlow.category))
            .where(CashFlow.user_id == self.user_id)
            .order_by(CashFlow.occurred_at.desc(), CashFlow.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def for_period(
        self, period: Period, type: Optional[CashFlowType] = None
    ) -> list[CashFlow]:
        stmt = (
            select(CashFlow)
            .options(joinedload(CashFlow.category))
            .where(
                CashFlow.user_id == self.user_id,
                CashFlow.occurred_at.between(period.start, period.end),
            )
            .order_by(CashFlow.occurred_at, CashFlow.id)
        )
        if type:
            stmt = stmt.where(CashFlow.type == type)
        return self.session.scalars(stmt).all()


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.resolver = CategoryResolver(session)

    def get(self, category_id: int) -> Category:
        return _get_owned(
            self.session, Category, category_id, self.user_id, "Category"
        )

    def ensure_system_categories(self) -> list[Category]:
        added: list[Category] = []
        for default_name in SYSTEM_CATEGORY_DEFAULTS:
            if self.resolver.find(self.user_id, default_name) is None:
                added.append(
                    self.resolver.resolve_or_create(
                        self.user_id, default_name, is_system=True
                    )
                )
        return added

    def list_all(self) -> list[Category]:
        if self.ensure_system_categories():
            self.session.commit()
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name_key)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> Category:
        clean_name = normalize_name(data.name)
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        if self.resolver.find(self.user_id, clean_name):
            raise StateConflictError("Category already exists for this user")
        category = self.resolver.resolve_or_create(self.user_id, clean_name)
        self.session.commit()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        if category.is_system:
            raise StateConflictError("System category cannot be edited")
        clean_name = normalize_name(name)
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        clash = self.resolver.find(self.user_id, clean_name)
        if clash and clash.id != category.id:
            raise StateConflictError("Category already exists for this user")
        category.name = clean_name
        category.name_key = clean_name.lower()
        self.session.commit()
        return category

    def delete(self, category_id: int) -> int:
        """Delete a user category, moving its ledger rows to Uncategorized."""
        category = self.get(category_id)
        if category.is_system:
            raise StateConflictError("System category cannot be deleted")

        fallback = self.resolver.resolve_or_create(
            self.user_id, UNCATEGORIZED_CATEGORY, is_system=True
        )
        moved = self.session.execute(
            update(CashFlow)
            .where(
                CashFlow.user_id == self.user_id,
                CashFlow.category_id == category.id,
            )
            .values(category_id=fallback.id)
        ).rowcount
        self.session.execute(
            delete(CategoryBudget).where(
                CategoryBudget.user_id == self.user_id,
                CategoryBudget.category_id == category.id,
            )
        )
        self.session.delete(category)
        self.session.commit()
        logger.info(
            f"category_deleted: user={self.user_id} id={category_id} reassigned={moved}"
        )
        return moved

    def merge(self, data: CategoryMergeIn) -> int:
        target = self.get(data.target_id)
        sources: list[Category] = []
        for source_id in data.source_ids:
            if source_id == target.id:
                continue
            source = self.get(source_id)
            if source.is_system:
                logger.info(f"category_merge: skipping system category id={source_id}")
                continue
            sources.append(source)
        if not sources:
            return 0
        source_ids = [s.id for s in sources]

        source_budgets = self.session.scalars(
            select(CategoryBudget).where(
                CategoryBudget.user_id == self.user_id,
                CategoryBudget.category_id.in_(source_ids),
            )
        ).all()
        for budget in source_budgets:
            if not data.merge_budgets:
                self.session.delete(budget)
                continue
            target_budget = self.session.scalar(
                select(CategoryBudget).where(
                    CategoryBudget.user_id == self.user_id,
                    CategoryBudget.category_id == target.id,
                    CategoryBudget.year_month == budget.year_month,
                )
            )
            if target_budget:
                target_budget.amount_cents += budget.amount_cents
                self.session.delete(budget)
            else:
                budget.category_id = target.id
            # flush per row so a moved budget is visible to the next lookup
            self.session.flush()

        affected = self.session.execute(
            update(CashFlow)
            .where(
                CashFlow.user_id == self.user_id,
                CashFlow.category_id.in_(source_ids),
            )
            .values(category_id=target.id)
        ).rowcount
        for source in sources:
            self.session.delete(source)
        self.session.commit()
        logger.info(
            f"category_merge: user={self.user_id} target={target.id} "
            f"sources={source_ids} cash_flows={affected}"
        )
        return affected

    def summary(self, category_id: int, year_month: str) -> dict[str, object]:
        category = self.get(category_id)
        period = month_period(year_month)
        in_month = (
            CashFlow.user_id == self.user_id,
            CashFlow.category_id == category.id,
            CashFlow.occurred_at.between(period.start, period.end),
        )
        budget_q = (
            select(CategoryBudget.amount_cents)
            .where(
                CategoryBudget.user_id == self.user_id,
                CategoryBudget.category_id == category.id,
                CategoryBudget.year_month == period.slug,
            )
            .scalar_subquery()
        )
        row = self.session.execute(
            select(
                func.count(CashFlow.id).label("count"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                CashFlow.type == CashFlowType.expense,
                                CashFlow.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("expense"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                CashFlow.type == CashFlowType.income,
                                CashFlow.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("income"),
                func.coalesce(budget_q, 0).label("budget"),
            ).where(*in_month)
        ).one()
        budget = BudgetSummary(
            category_id=category.id,
            year_month=period.slug,
            budget_cents=int(row.budget or 0),
            spent_cents=int(row.expense or 0),
        )
        return {
            "category": {
                "id": category.id,
                "name": category.name,
                "is_system": category.is_system,
            },
            "year_month": period.slug,
            "count": int(row.count or 0),
            "expense_cents": budget.spent_cents,
            "income_cents": int(row.income or 0),
            "budget_cents": budget.budget_cents,
            "remaining_cents": budget.remaining_cents,
            "expense_vs_budget_pct": budget.expense_vs_budget_pct,
        }

    def records(
        self,
        category_id: int,
        year_month: str,
        type: Optional[CashFlowType] = None,
    ) -> list[CashFlow]:
        category = self.get(category_id)
        period = month_period(year_month)
        stmt = (
            select(CashFlow)
            .where(
                CashFlow.user_id == self.user_id,
                CashFlow.category_id == category.id,
                CashFlow.occurred_at.between(period.start, period.end),
            )
            .order_by(CashFlow.occurred_at.desc(), CashFlow.id.desc())
        )
        if type:
            stmt = stmt.where(CashFlow.type == type)
        return self.session.scalars(stmt).all()


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _find(self, category_id: int, year_month: str) -> Optional[CategoryBudget]:
        return self.session.scalar(
            select(CategoryBudget).where(
                CategoryBudget.user_id == self.user_id,
                CategoryBudget.category_id == category_id,
                CategoryBudget.year_month == year_month,
            )
        )

    def set_budget(self, data: CategoryBudgetIn) -> BudgetSummary:
        if data.amount_cents <= 0:
            raise ValueError("Budget must be > 0")
        _get_owned(self.session, Category, data.category_id, self.user_id, "Category")
        year_month = month_period(data.year_month).slug

        budget = self._find(data.category_id, year_month)
        if budget is None:
            budget = CategoryBudget(
                user_id=self.user_id,
                category_id=data.category_id,
                year_month=year_month,
                amount_cents=data.amount_cents,
            )
            self.session.add(budget)
        budget.amount_cents = data.amount_cents
        budget.custom_name = data.custom_name
        self.session.commit()
        return self.summary(data.category_id, year_month)

    def delete_budget(self, category_id: int, year_month: str) -> bool:
        _get_owned(self.session, Category, category_id, self.user_id, "Category")
        budget = self._find(category_id, month_period(year_month).slug)
        if budget is None:
            return False
        self.session.delete(budget)
        self.session.commit()
        return True

    def summary(self, category_id: int, year_month: str) -> BudgetSummary:
        """Budget, spend and remaining for one category and month.

        Budget and spend are read in a single statement so both figures
        come from the same snapshot of the ledger.
        """
        _get_owned(self.session, Category, category_id, self.user_id, "Category")
        period = month_period(year_month)
        budget_filter = (
            CategoryBudget.user_id == self.user_id,
            CategoryBudget.category_id == category_id,
            CategoryBudget.year_month == period.slug,
        )
        budget_q = (
            select(CategoryBudget.amount_cents).where(*budget_filter).scalar_subquery()
        )
        name_q = (
            select(CategoryBudget.custom_name).where(*budget_filter).scalar_subquery()
        )
        spent_q = (
            select(func.coalesce(func.sum(CashFlow.amount_cents), 0))
            .where(
                CashFlow.user_id == self.user_id,
                CashFlow.category_id == category_id,
                CashFlow.type == CashFlowType.expense,
                CashFlow.occurred_at.between(period.start, period.end),
            )
            .scalar_subquery()
        )
        row = self.session.execute(
            select(
                budget_q.label("budget"),
                spent_q.label("spent"),
                name_q.label("custom_name"),
            )
        ).one()
        return BudgetSummary(
            category_id=category_id,
            year_month=period.slug,
            budget_cents=int(row.budget or 0),
            spent_cents=int(row.spent or 0),
            custom_name=row.custom_name,
        )

    def summaries_for_month(self, year_month: str) -> list[BudgetSummary]:
        period = month_period(year_month)
        spent = (
            select(
                CashFlow.category_id.label("category_id"),
                func.sum(CashFlow.amount_cents).label("spent"),
            )
            .where(
                CashFlow.user_id == self.user_id,
                CashFlow.type == CashFlowType.expense,
                CashFlow.occurred_at.between(period.start, period.end),
            )
            .group_by(CashFlow.category_id)
            .subquery()
        )
        stmt = (
            select(
                CategoryBudget.category_id,
                CategoryBudget.amount_cents,
                CategoryBudget.custom_name,
                func.coalesce(spent.c.spent, 0).label("spent"),
            )
            .outerjoin(spent, spent.c.category_id == CategoryBudget.category_id)
            .where(
                CategoryBudget.user_id == self.user_id,
                CategoryBudget.year_month == period.slug,
            )
            .order_by(CategoryBudget.category_id)
        )
        return [
            BudgetSummary(
                category_id=row.category_id,
                year_month=period.slug,
                budget_cents=int(row.amount_cents),
                spent_cents=int(row.spent or 0),
                custom_name=row.custom_name,
            )
            for row in self.session.execute(stmt)
        ]


class SubscriptionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, subscription_id: int) -> Subscription:
        return _get_owned(
            self.session, Subscription, subscription_id, self.user_id, "Subscription"
        )

    def list(self, active_only: bool = False) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == self.user_id)
            .order_by(Subscription.next_post_at, Subscription.id)
        )
        if active_only:
            stmt = stmt.where(Subscription.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def create(self, data: SubscriptionIn) -> Subscription:
        subscription = Subscription(
            user_id=self.user_id,
            merchant=data.merchant.strip(),
            amount_cents=data.amount_cents,
            frequency=data.frequency.strip().upper(),
            start_date=data.start_date,
            is_active=True if data.is_active is None else data.is_active,
            next_post_at=data.first_post_at or data.start_date,
        )
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        return subscription

    def update(self, subscription_id: int, data: SubscriptionIn) -> Subscription:
        """Edit terms. Already posted ledger rows are left untouched."""
        subscription = self.get(subscription_id)
        subscription.merchant = data.merchant.strip()
        subscription.amount_cents = data.amount_cents
        subscription.frequency = data.frequency.strip().upper()
        subscription.start_date = data.start_date
        if data.first_post_at is not None:
            subscription.next_post_at = data.first_post_at
        if data.is_active is not None:
            subscription.is_active = data.is_active
        self.session.commit()
        self.session.refresh(subscription)
        return subscription

    def pause(self, subscription_id: int) -> Subscription:
        subscription = self.get(subscription_id)
        subscription.is_active = False
        self.session.commit()
        return subscription

    def resume(self, subscription_id: int) -> Subscription:
        subscription = self.get(subscription_id)
        subscription.is_active = True
        if subscription.next_post_at is None:
            subscription.next_post_at = local_now()
        self.session.commit()
        return subscription

    def delete(self, subscription_id: int) -> None:
        subscription = self.get(subscription_id)
        self.session.execute(
            update(CashFlow)
            .where(CashFlow.subscription_id == subscription.id)
            .values(subscription_id=None)
        )
        self.session.delete(subscription)
        self.session.commit()

    @staticmethod
    def monthly_equivalent(amount_cents: Optional[int], frequency: str) -> int:
        amount = Decimal(amount_cents or 0)
        freq = parse_frequency(frequency)
        if freq == Frequency.weekly:
            monthly = amount * 52 / 12
        elif freq == Frequency.fortnightly:
            monthly = amount * 26 / 12
        elif freq == Frequency.quarterly:
            monthly = amount / 3
        elif freq == Frequency.yearly:
            monthly = amount / 12
        else:
            monthly = amount
        return int(monthly.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, goal_id: int) -> Goal:
        return _get_owned(self.session, Goal, goal_id, self.user_id, "Goal")

    def list_all(self) -> list[Goal]:
        stmt = (
            select(Goal).where(Goal.user_id == self.user_id).order_by(Goal.id.desc())
        )
        return self.session.scalars(stmt).all()

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Goal.id).where(
            Goal.user_id == self.user_id, func.lower(Goal.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Goal.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: GoalIn) -> Goal:
        name = normalize_name(data.name)
        if not name:
            raise ValueError("Goal name cannot be empty")
        if self._name_taken(name):
            raise StateConflictError(f"Goal with name '{name}' already exists")
        account_clash = self.session.scalar(
            select(Account.id).where(
                Account.user_id == self.user_id,
                func.lower(Account.name) == name.lower(),
            )
        )
        if account_clash:
            raise StateConflictError(f"Account with name '{name}' already exists")

        goal_account = Account(user_id=self.user_id, name=name, type=AccountType.goal)
        self.session.add(goal_account)
        self.session.flush()
        goal = Goal(
            user_id=self.user_id,
            name=name,
            target_amount_cents=data.target_amount_cents,
            saved_amount_cents=0,
            due_date=data.due_date,
            status=GoalStatus.in_progress,
            linked_account_id=goal_account.id,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalUpdateIn) -> Goal:
        goal = self.get(goal_id)
        if data.name is not None and data.name.strip():
            name = normalize_name(data.name)
            if self._name_taken(name, exclude_id=goal.id):
                raise StateConflictError(f"Goal with name '{name}' already exists")
            goal.name = name
        if data.target_amount_cents is not None:
            goal.target_amount_cents = data.target_amount_cents
        if data.due_date is not None:
            goal.due_date = data.due_date
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def _lock_goal(self, goal_id: int) -> Goal:
        goal = self.session.scalar(
            select(Goal)
            .where(Goal.id == goal_id, Goal.user_id == self.user_id)
            .with_for_update()
        )
        if goal is None:
            raise NotFoundError("Goal not found")
        return goal

    def _transfer(
        self,
        source: Account,
        destination: Account,
        amount_cents: int,
        *,
        outflow_note: str,
        inflow_note: str,
    ) -> None:
        category = CategoryResolver(self.session).resolve_or_create(
            self.user_id, GOAL_TRANSFER_CATEGORY, is_system=True
        )
        now = local_now()
        self.session.add_all(
            [
                CashFlow(
                    user_id=self.user_id,
                    type=CashFlowType.expense,
                    amount_cents=amount_cents,
                    occurred_at=now,
                    description=outflow_note[:255],
                    account_id=source.id,
                    category_id=category.id,
                ),
                CashFlow(
                    user_id=self.user_id,
                    type=CashFlowType.income,
                    amount_cents=amount_cents,
                    occurred_at=now,
                    description=inflow_note[:255],
                    account_id=destination.id,
                    category_id=category.id,
                ),
                Transfer(
                    user_id=self.user_id,
                    from_account_id=source.id,
                    to_account_id=destination.id,
                    amount_cents=amount_cents,
                    created_at=now,
                ),
            ]
        )

    def contribute(
        self, goal_id: int, from_account_id: int, amount_cents: int
    ) -> ContributionResult:
        """Move ``amount_cents`` from a cash account into a goal.

        The outgoing and incoming ledger rows, the transfer record and the
        goal's saved amount are committed together.
        """
        if amount_cents is None or amount_cents <= 0:
            raise ValueError("Contribution amount must be positive")

        try:
            source = self.session.scalar(
                select(Account)
                .where(
                    Account.id == from_account_id, Account.user_id == self.user_id
                )
                .with_for_update()
            )
            if source is None:
                raise NotFoundError("Source account not found")
            goal = self._lock_goal(goal_id)
            goal_account = goal.linked_account
            if goal_account is None:
                raise StateConflictError("Goal has no linked account")
            if goal_account.id == source.id:
                raise ValueError("Cannot contribute from the goal's own account")

            balances = BalanceService(self.session, self.user_id)
            available = balances.account_balance(source.id)
            if available < amount_cents:
                raise InsufficientFunds("Insufficient funds in cash account")

            self._transfer(
                source,
                goal_account,
                amount_cents,
                outflow_note=f"Goal contribution to {goal.name}",
                inflow_note=f"Goal contribution from {source.name}",
            )
            goal.saved_amount_cents = (goal.saved_amount_cents or 0) + amount_cents
            if goal.saved_amount_cents >= goal.target_amount_cents:
                goal.status = GoalStatus.completed
            self.session.flush()
            result = ContributionResult(
                new_goal_balance_cents=balances.account_balance(goal_account.id),
                new_cash_balance_cents=balances.account_balance(source.id),
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"goal_contribution: user={self.user_id} goal={goal.id} "
            f"amount_cents={amount_cents} status={goal.status.value}"
        )
        return result

    def delete(self, goal_id: int) -> None:
        """Delete a goal, refunding its saved amount to the cash account."""
        try:
            goal = self._lock_goal(goal_id)
            remaining = goal.saved_amount_cents or 0
            if remaining > 0 and goal.linked_account is not None:
                cash = AccountService(self.session, self.user_id).ensure_cash_account()
                self._transfer(
                    goal.linked_account,
                    cash,
                    remaining,
                    outflow_note=f"Goal refund to cash from {goal.name}",
                    inflow_note=f"Goal refund received from {goal.name}",
                )
                goal.saved_amount_cents = 0
            self.session.delete(goal)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def contributions(
        self,
        goal_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[CashFlow]:
        goal = self.get(goal_id)
        if goal.linked_account_id is None:
            return []
        period = day_period(
            start.date() if start else None, end.date() if end else None
        )
        stmt = (
            select(CashFlow)
            .where(
                CashFlow.user_id == self.user_id,
                CashFlow.account_id == goal.linked_account_id,
                CashFlow.type == CashFlowType.income,
                CashFlow.occurred_at.between(period.start, period.end),
            )
            .order_by(CashFlow.occurred_at, CashFlow.id)
        )
        return self.session.scalars(stmt).all()


class MetricsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def financial_aggregates(self) -> dict[str, object]:
        row = self.session.execute(
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (
                                CashFlow.type == CashFlowType.income,
                                CashFlow.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("income"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                CashFlow.type == CashFlowType.expense,
                                CashFlow.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("expenses"),
            ).where(CashFlow.user_id == self.user_id)
        ).one()
        income = int(row.income or 0)
        expenses = int(row.expenses or 0)

        goals = GoalService(self.session, self.user_id).list_all()
        total_savings = sum(goal.saved_amount_cents or 0 for goal in goals)
        if goals:
            progress = sum(
                _progress_ratio(g.saved_amount_cents, g.target_amount_cents)
                for g in goals
            ) / len(goals)
            goals_progress = progress.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        else:
            goals_progress = Decimal("0.00")

        return {
            "income_cents": income,
            "expenses_cents": expenses,
            "balance_cents": income - expenses,
            "savings_rate_pct": percent_of(income - expenses, income),
            "total_savings_cents": total_savings,
            "goals_progress_pct": goals_progress,
        }

    def spending_trend(
        self, range_name: str = "WEEK", today: Optional[date] = None
    ) -> dict[str, object]:
        """Expense totals bucketed for charting.

        ``WEEK`` covers the last seven days and ``MONTH`` the current month,
        both one point per day. ``YEAR`` is one point per month from January
        through the current month. Days or months without expenses are zero.
        """
        range_name = (range_name or "").strip().upper()
        if range_name not in TREND_RANGES:
            raise ValueError(f"Unknown trend range '{range_name}'")
        today = today or local_now().date()
        if range_name == "WEEK":
            start = today - timedelta(days=6)
        elif range_name == "MONTH":
            start = today.replace(day=1)
        else:
            start = today.replace(month=1, day=1)
        period = day_period(start, today)

        fmt = "%Y-%m" if range_name == "YEAR" else "%Y-%m-%d"
        bucket = func.strftime(fmt, CashFlow.occurred_at).label("bucket")
        stmt = (
            select(bucket, func.sum(CashFlow.amount_cents).label("spent"))
            .where(
                CashFlow.user_id == self.user_id,
                CashFlow.type == CashFlowType.expense,
                CashFlow.occurred_at.between(period.start, period.end),
            )
            .group_by(bucket)
        )
        spent = {row.bucket: int(row.spent or 0) for row in self.session.execute(stmt)}

        points = []
        if range_name == "YEAR":
            for month in range(1, today.month + 1):
                day = date(today.year, month, 1)
                points.append(
                    {
                        "label": day.strftime("%b"),
                        "date": day.isoformat(),
                        "amount_cents": spent.get(day.strftime(fmt), 0),
                        "is_current": month == today.month,
                    }
                )
        else:
            day = start
            while day <= today:
                label = day.strftime("%a") if range_name == "WEEK" else str(day.day)
                points.append(
                    {
                        "label": label,
                        "date": day.isoformat(),
                        "amount_cents": spent.get(day.strftime(fmt), 0),
                        "is_current": day == today,
                    }
                )
                day += timedelta(days=1)
        return {"range": range_name, "points": points}


class ReportService:
    """Income, expense and transfer totals over an inclusive date range."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def generate(self, period: Period) -> dict[str, object]:
        category_name = func.coalesce(Category.name, UNCATEGORIZED_CATEGORY).label(
            "category"
        )
        stmt = (
            select(
                category_name,
                func.sum(
                    case(
                        (CashFlow.type == CashFlowType.income, CashFlow.amount_cents),
                        else_=0,
                    )
                ).label("income"),
                func.sum(
                    case(
                        (CashFlow.type == CashFlowType.expense, CashFlow.amount_cents),
                        else_=0,
                    )
                ).label("expense"),
            )
            .select_from(CashFlow)
            .outerjoin(Category, Category.id == CashFlow.category_id)
            .where(
                CashFlow.user_id == self.user_id,
                CashFlow.occurred_at.between(period.start, period.end),
            )
            .group_by(category_name)
            .order_by(category_name)
        )
        income = 0
        expense = 0
        by_category: dict[str, int] = {}
        for row in self.session.execute(stmt):
            income += int(row.income or 0)
            expense += int(row.expense or 0)
            if row.expense:
                # Rows without a category share the system category's name.
                by_category[row.category] = by_category.get(row.category, 0) + int(
                    row.expense
                )

        transfer_total = self.session.scalar(
            select(func.coalesce(func.sum(Transfer.amount_cents), 0)).where(
                Transfer.user_id == self.user_id,
                Transfer.created_at.between(period.start, period.end),
            )
        )
        logger.info(
            f"report_generated: user={self.user_id} start={period.start.date()} "
            f"end={period.end.date()} income_cents={income} expense_cents={expense}"
        )
        return {
            "start": period.start.date().isoformat(),
            "end": period.end.date().isoformat(),
            "income_cents": income,
            "expense_cents": expense,
            "balance_cents": income - expense,
            "expense_by_category": by_category,
            "transfer_cents": int(transfer_total or 0),
        }
