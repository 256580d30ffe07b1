from datetime import datetime
from decimal import Decimal

import pytest

from database import Base, build_engine, make_session_factory
from models import AccountType, CashFlowType
from schemas import AccountIn, CashFlowIn, CategoryBudgetIn, CategoryIn, GoalIn
from services import (
    AccountService,
    BalanceService,
    BudgetService,
    CashFlowService,
    CategoryService,
    GoalService,
    MetricsService,
    NotFoundError,
)


def make_session():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_session_factory(engine)()


def _entry(account_id, amount_cents, occurred_at, category_id=None):
    return CashFlowIn(
        account_id=account_id,
        amount_cents=amount_cents,
        occurred_at=occurred_at,
        category_id=category_id,
    )


def test_account_balance_is_independent_of_insert_order() -> None:
    entries = [
        (CashFlowType.income, 100_000, datetime(2024, 3, 1)),
        (CashFlowType.expense, 2_550, datetime(2024, 1, 5)),
        (CashFlowType.expense, 12_000, datetime(2024, 2, 9)),
        (CashFlowType.income, 4_005, datetime(2023, 12, 31)),
    ]
    balances = []
    for ordering in (entries, list(reversed(entries))):
        session = make_session()
        account = AccountService(session, 1).create(AccountIn(name="Cash"))
        service = CashFlowService(session, 1)
        for type, amount, when in ordering:
            payload = _entry(account.id, amount, when)
            if type == CashFlowType.income:
                service.record_income(payload)
            else:
                service.record_expense(payload)
        balances.append(BalanceService(session, 1).account_balance(account.id))

    assert balances[0] == balances[1] == 100_000 + 4_005 - 2_550 - 12_000


def test_expense_may_drive_cash_negative() -> None:
    session = make_session()
    account = AccountService(session, 1).create(AccountIn(name="Cash"))

    CashFlowService(session, 1).record_expense(
        _entry(account.id, 5_000, datetime(2024, 5, 1))
    )

    assert BalanceService(session, 1).account_balance(account.id) == -5_000


def test_balances_are_scoped_per_user() -> None:
    session = make_session()
    mine = AccountService(session, 1).create(AccountIn(name="Cash"))
    theirs = AccountService(session, 2).create(AccountIn(name="Cash"))
    jan_first = datetime(2024, 1, 1)
    CashFlowService(session, 1).record_income(_entry(mine.id, 1_000, jan_first))
    CashFlowService(session, 2).record_income(_entry(theirs.id, 7_000, jan_first))

    assert BalanceService(session, 1).total_balance() == 1_000
    with pytest.raises(NotFoundError):
        BalanceService(session, 1).account_balance(theirs.id)


def test_category_spend_includes_both_period_ends() -> None:
    session = make_session()
    account = AccountService(session, 1).create(AccountIn(name="Cash"))
    food = CategoryService(session, 1).create(CategoryIn(name="Dining"))
    service = CashFlowService(session, 1)
    start = datetime(2024, 2, 1, 0, 0, 0)
    end = datetime(2024, 2, 29, 23, 59, 59, 999999)
    for when in (start, datetime(2024, 2, 14), end, datetime(2024, 3, 1)):
        service.record_expense(_entry(account.id, 1_000, when, food.id))

    spent = BalanceService(session, 1).category_spend(food.id, start, end)

    assert spent == 3_000


def test_budget_summary_allows_negative_remaining() -> None:
    session = make_session()
    account = AccountService(session, 1).create(AccountIn(name="Cash"))
    groceries = CategoryService(session, 1).create(CategoryIn(name="Weekly shop"))
    BudgetService(session, 1).set_budget(
        CategoryBudgetIn(
            category_id=groceries.id, year_month="2024-03", amount_cents=20_000
        )
    )
    service = CashFlowService(session, 1)
    for amount, when in (
        (15_000, datetime(2024, 3, 2)),
        (9_500, datetime(2024, 3, 31, 23, 59)),
    ):
        service.record_expense(_entry(account.id, amount, when, groceries.id))

    summary = BudgetService(session, 1).summary(groceries.id, "2024-03")

    assert summary.budget_cents == 20_000
    assert summary.spent_cents == 24_500
    assert summary.remaining_cents == -4_500
    assert summary.expense_vs_budget_pct == Decimal("122.50")


def test_budget_summary_without_budget_has_no_percentage() -> None:
    session = make_session()
    account = AccountService(session, 1).create(AccountIn(name="Cash"))
    misc = CategoryService(session, 1).create(CategoryIn(name="Misc"))
    CashFlowService(session, 1).record_expense(
        _entry(account.id, 1_234, datetime(2024, 7, 4), misc.id)
    )

    summary = BudgetService(session, 1).summary(misc.id, "2024-07")

    assert summary.budget_cents == 0
    assert summary.spent_cents == 1_234
    assert summary.remaining_cents == -1_234
    assert summary.expense_vs_budget_pct is None


def test_set_budget_upserts_and_delete_reports_result() -> None:
    session = make_session()
    category = CategoryService(session, 1).create(CategoryIn(name="Fuel"))
    budgets = BudgetService(session, 1)

    budgets.set_budget(
        CategoryBudgetIn(
            category_id=category.id, year_month="2024-05", amount_cents=5_000
        )
    )
    updated = budgets.set_budget(
        CategoryBudgetIn(
            category_id=category.id,
            year_month="2024-05",
            amount_cents=7_500,
            custom_name="Road trip",
        )
    )

    assert updated.budget_cents == 7_500
    assert updated.custom_name == "Road trip"
    assert len(budgets.summaries_for_month("2024-05")) == 1
    assert budgets.delete_budget(category.id, "2024-05") is True
    assert budgets.delete_budget(category.id, "2024-05") is False


def test_budget_rejects_bad_month() -> None:
    session = make_session()
    category = CategoryService(session, 1).create(CategoryIn(name="Fuel"))

    with pytest.raises(ValueError):
        BudgetService(session, 1).summary(category.id, "2024-13")


def test_summaries_for_month_pairs_budgets_with_spend() -> None:
    session = make_session()
    account = AccountService(session, 1).create(AccountIn(name="Cash"))
    categories = CategoryService(session, 1)
    rent = categories.create(CategoryIn(name="Rent"))
    fun = categories.create(CategoryIn(name="Fun"))
    budgets = BudgetService(session, 1)
    for category, amount in ((rent, 200_000), (fun, 10_000)):
        budgets.set_budget(
            CategoryBudgetIn(
                category_id=category.id, year_month="2024-06", amount_cents=amount
            )
        )
    CashFlowService(session, 1).record_expense(
        _entry(account.id, 200_000, datetime(2024, 6, 1), rent.id)
    )

    summaries = {s.category_id: s for s in budgets.summaries_for_month("2024-06")}

    assert summaries[rent.id].remaining_cents == 0
    assert summaries[fun.id].spent_cents == 0
    assert summaries[fun.id].expense_vs_budget_pct == Decimal("0.00")


def test_financial_aggregates() -> None:
    session = make_session()
    account = AccountService(session, 1).create(AccountIn(name="Cash"))
    service = CashFlowService(session, 1)
    service.record_income(_entry(account.id, 300_000, datetime(2024, 1, 1)))
    service.record_expense(_entry(account.id, 100_000, datetime(2024, 1, 2)))

    data = MetricsService(session, 1).financial_aggregates()

    assert data["income_cents"] == 300_000
    assert data["expenses_cents"] == 100_000
    assert data["balance_cents"] == 200_000
    assert data["savings_rate_pct"] == Decimal("66.67")
    assert data["total_savings_cents"] == 0
    assert data["goals_progress_pct"] == Decimal("0.00")


def test_goals_progress_averages_unrounded_ratios() -> None:
    session = make_session()
    account = AccountService(session, 1).create(AccountIn(name="Cash"))
    CashFlowService(session, 1).record_income(
        _entry(account.id, 50_000, datetime(2024, 1, 1))
    )
    goals = GoalService(session, 1)
    third = goals.create(GoalIn(name="Kayak", target_amount_cents=30_000))
    goals.create(GoalIn(name="Piano", target_amount_cents=30_000))
    goals.contribute(third.id, account.id, 10_000)

    data = MetricsService(session, 1).financial_aggregates()

    assert data["total_savings_cents"] == 10_000
    assert data["goals_progress_pct"] == Decimal("16.67")


def test_financial_aggregates_without_income() -> None:
    session = make_session()

    data = MetricsService(session, 1).financial_aggregates()

    assert data["balance_cents"] == 0
    assert data["savings_rate_pct"] is None


def test_reverse_offsets_original_entry() -> None:
    session = make_session()
    account = AccountService(session, 1).create(
        AccountIn(name="Cash", type=AccountType.cash)
    )
    service = CashFlowService(session, 1)
    original = service.record_expense(_entry(account.id, 4_200, datetime(2024, 8, 1)))

    reversal = service.reverse(original.id)

    assert reversal.type == CashFlowType.income
    assert reversal.amount_cents == 4_200
    assert BalanceService(session, 1).account_balance(account.id) == 0


def test_record_rejects_foreign_category() -> None:
    session = make_session()
    account = AccountService(session, 1).create(AccountIn(name="Cash"))
    foreign = CategoryService(session, 2).create(CategoryIn(name="Theirs"))

    with pytest.raises(NotFoundError):
        CashFlowService(session, 1).record_expense(
            _entry(account.id, 100, datetime(2024, 1, 1), foreign.id)
        )
