import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_cash_flows
from database import SessionLocal
from models import Account, CashFlow, CashFlowType, Category, Goal, Subscription
from periods import day_period, format_year_month
from recurrence import SubscriptionPostingEngine, local_now
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    CashFlowIn,
    CashFlowOut,
    CategoryBudgetIn,
    CategoryIn,
    CategoryMergeIn,
    ContributionIn,
    GoalIn,
    GoalUpdateIn,
    SubscriptionIn,
)
from services import (
    AccountService,
    BalanceService,
    BudgetService,
    BudgetSummary,
    CashFlowService,
    CategoryService,
    GoalService,
    MetricsService,
    NotFoundError,
    ReportService,
    StateConflictError,
    SubscriptionService,
    progress_percent,
    provision_user,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Personal Ledger")

DASHBOARD_LIMIT = 5


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, ValueError):
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    return SessionLocal


def current_user_id(x_user_id: int = Header(...)) -> int:
    return x_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StateConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _current_month() -> str:
    now = local_now()
    return format_year_month(now.year, now.month)


def _account_out(account: Account, balance_cents: Optional[int] = None) -> dict:
    data = {"id": account.id, "name": account.name, "type": account.type.value}
    if balance_cents is not None:
        data["balance_cents"] = balance_cents
    return data


def _category_out(category: Category) -> dict:
    return {"id": category.id, "name": category.name, "is_system": category.is_system}


def _budget_out(summary: BudgetSummary) -> dict:
    return {
        "category_id": summary.category_id,
        "year_month": summary.year_month,
        "custom_name": summary.custom_name,
        "budget_cents": summary.budget_cents,
        "spent_cents": summary.spent_cents,
        "remaining_cents": summary.remaining_cents,
        "expense_vs_budget_pct": summary.expense_vs_budget_pct,
    }


def _subscription_out(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "merchant": subscription.merchant,
        "amount_cents": subscription.amount_cents,
        "frequency": subscription.frequency,
        "start_date": subscription.start_date.isoformat(),
        "next_post_at": subscription.next_post_at.isoformat(),
        "is_active": subscription.is_active,
        "monthly_equivalent_cents": SubscriptionService.monthly_equivalent(
            subscription.amount_cents, subscription.frequency
        ),
    }


def _goal_out(goal: Goal) -> dict:
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount_cents": goal.target_amount_cents,
        "saved_amount_cents": goal.saved_amount_cents,
        "due_date": goal.due_date.isoformat() if goal.due_date else None,
        "status": goal.status.value,
        "linked_account_id": goal.linked_account_id,
        "progress_pct": progress_percent(
            goal.saved_amount_cents, goal.target_amount_cents
        ),
    }


def _cash_flow_out(cash_flow: CashFlow) -> dict:
    return CashFlowOut.model_validate(cash_flow).model_dump(mode="json")


@app.get("/api/version")
def api_version():
    return {"version": APP_VERSION}


@app.post("/api/provision")
def api_provision(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    provision_user(db, user_id)
    return {"ok": True}


@app.get("/api/accounts")
def api_accounts(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    balances = BalanceService(db, user_id)
    return [
        _account_out(account, balances.account_balance(account.id))
        for account in AccountService(db, user_id).list_all()
    ]


@app.post("/api/accounts", status_code=201)
def api_create_account(
    payload: AccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _account_out(account, 0)


@app.get("/api/accounts/{account_id}")
def api_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, user_id).get(account_id)
        balance = BalanceService(db, user_id).account_balance(account.id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _account_out(account, balance)


@app.delete("/api/accounts/{account_id}", status_code=204)
def api_delete_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        AccountService(db, user_id).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/balance")
def api_total_balance(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return {"balance_cents": BalanceService(db, user_id).total_balance()}


@app.get("/api/categories")
def api_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return [_category_out(c) for c in CategoryService(db, user_id).list_all()]


@app.post("/api/categories", status_code=201)
def api_create_category(
    payload: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _category_out(category)


@app.patch("/api/categories/{category_id}")
def api_rename_category(
    category_id: int,
    payload: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user_id).rename(category_id, payload.name)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _category_out(category)


@app.delete("/api/categories/{category_id}")
def api_delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        reassigned = CategoryService(db, user_id).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"reassigned": reassigned}


@app.post("/api/categories/merge")
def api_merge_categories(
    payload: CategoryMergeIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        affected = CategoryService(db, user_id).merge(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"cash_flows_moved": affected}


@app.get("/api/categories/{category_id}/summary")
def api_category_summary(
    category_id: int,
    month: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user_id).summary(
            category_id, month or _current_month()
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/categories/{category_id}/records")
def api_category_records(
    category_id: int,
    month: Optional[str] = None,
    type: Optional[CashFlowType] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        records = CategoryService(db, user_id).records(
            category_id, month or _current_month(), type
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return [_cash_flow_out(cf) for cf in records]


def _record_cash_flow(
    type: CashFlowType, payload: CashFlowIn, user_id: int, db: Session
) -> dict:
    service = CashFlowService(db, user_id)
    try:
        if type == CashFlowType.income:
            cash_flow = service.record_income(payload)
        else:
            cash_flow = service.record_expense(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    data = _cash_flow_out(cash_flow)
    data["account_balance_cents"] = BalanceService(db, user_id).account_balance(
        cash_flow.account_id
    )
    return data


@app.post("/api/incomes", status_code=201)
def api_record_income(
    payload: CashFlowIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return _record_cash_flow(CashFlowType.income, payload, user_id, db)


@app.post("/api/expenses", status_code=201)
def api_record_expense(
    payload: CashFlowIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return _record_cash_flow(CashFlowType.expense, payload, user_id, db)


@app.get("/api/cash-flows")
def api_recent_cash_flows(
    limit: int = 10,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    limit = min(max(limit, 1), 100)
    return [_cash_flow_out(cf) for cf in CashFlowService(db, user_id).recent(limit)]


@app.post("/api/cash-flows/{cash_flow_id}/reverse", status_code=201)
def api_reverse_cash_flow(
    cash_flow_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        reversal = CashFlowService(db, user_id).reverse(cash_flow_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _cash_flow_out(reversal)


@app.get("/api/cash-flows/export.csv")
def api_export_cash_flows(
    start: Optional[date] = None,
    end: Optional[date] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        period = day_period(start, end)
    except ValueError as exc:
        raise http_error(exc) from exc
    cash_flows = CashFlowService(db, user_id).for_period(period)
    csv_text = export_cash_flows(cash_flows)
    filename = f"cash_flows_{period.start.date()}_{period.end.date()}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/budgets")
def api_budgets(
    month: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        summaries = BudgetService(db, user_id).summaries_for_month(
            month or _current_month()
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return [_budget_out(s) for s in summaries]


@app.put("/api/budgets")
def api_set_budget(
    payload: CategoryBudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        summary = BudgetService(db, user_id).set_budget(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _budget_out(summary)


@app.get("/api/budgets/{category_id}")
def api_budget_summary(
    category_id: int,
    month: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        summary = BudgetService(db, user_id).summary(
            category_id, month or _current_month()
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return _budget_out(summary)


@app.delete("/api/budgets/{category_id}")
def api_delete_budget(
    category_id: int,
    month: str,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        deleted = BudgetService(db, user_id).delete_budget(category_id, month)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": deleted}


@app.get("/api/subscriptions")
def api_subscriptions(
    active_only: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return [
        _subscription_out(s)
        for s in SubscriptionService(db, user_id).list(active_only=active_only)
    ]


@app.post("/api/subscriptions", status_code=201)
def api_create_subscription(
    payload: SubscriptionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    subscription = SubscriptionService(db, user_id).create(payload)
    return _subscription_out(subscription)


@app.get("/api/subscriptions/{subscription_id}")
def api_subscription(
    subscription_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        subscription = SubscriptionService(db, user_id).get(subscription_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _subscription_out(subscription)


@app.put("/api/subscriptions/{subscription_id}")
def api_update_subscription(
    subscription_id: int,
    payload: SubscriptionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        subscription = SubscriptionService(db, user_id).update(
            subscription_id, payload
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return _subscription_out(subscription)


@app.post("/api/subscriptions/{subscription_id}/pause")
def api_pause_subscription(
    subscription_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        subscription = SubscriptionService(db, user_id).pause(subscription_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _subscription_out(subscription)


@app.post("/api/subscriptions/{subscription_id}/resume")
def api_resume_subscription(
    subscription_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        subscription = SubscriptionService(db, user_id).resume(subscription_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _subscription_out(subscription)


@app.delete("/api/subscriptions/{subscription_id}", status_code=204)
def api_delete_subscription(
    subscription_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        SubscriptionService(db, user_id).delete(subscription_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/goals")
def api_goals(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return [_goal_out(goal) for goal in GoalService(db, user_id).list_all()]


@app.post("/api/goals", status_code=201)
def api_create_goal(
    payload: GoalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        goal = GoalService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _goal_out(goal)


@app.get("/api/goals/{goal_id}")
def api_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        goal = GoalService(db, user_id).get(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _goal_out(goal)


@app.patch("/api/goals/{goal_id}")
def api_update_goal(
    goal_id: int,
    payload: GoalUpdateIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        goal = GoalService(db, user_id).update(goal_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _goal_out(goal)


@app.delete("/api/goals/{goal_id}", status_code=204)
def api_delete_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        GoalService(db, user_id).delete(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/goals/{goal_id}/contributions")
def api_contribute(
    goal_id: int,
    payload: ContributionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        result = GoalService(db, user_id).contribute(
            goal_id, payload.from_account_id, payload.amount_cents
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "new_goal_balance_cents": result.new_goal_balance_cents,
        "new_cash_balance_cents": result.new_cash_balance_cents,
    }


@app.get("/api/goals/{goal_id}/contributions")
def api_goal_contributions(
    goal_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        period = day_period(start, end)
        contributions = GoalService(db, user_id).contributions(
            goal_id, period.start, period.end
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return [_cash_flow_out(cf) for cf in contributions]


@app.get("/api/reports")
def api_report(
    start: Optional[date] = None,
    end: Optional[date] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        period = day_period(start, end)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ReportService(db, user_id).generate(period)


@app.get("/api/dashboard/trend")
def api_spending_trend(
    period: str = "WEEK",
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return MetricsService(db, user_id).spending_trend(period)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/dashboard")
def api_dashboard(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    metrics = MetricsService(db, user_id)
    data = metrics.financial_aggregates()
    budgets = BudgetService(db, user_id).summaries_for_month(_current_month())
    data["budgets"] = [
        _budget_out(summary) for summary in budgets if summary.budget_cents > 0
    ][:DASHBOARD_LIMIT]
    data["subscriptions"] = [
        _subscription_out(sub)
        for sub in SubscriptionService(db, user_id).list(active_only=True)
    ][:DASHBOARD_LIMIT]
    data["recent"] = [
        _cash_flow_out(cf)
        for cf in CashFlowService(db, user_id).recent(DASHBOARD_LIMIT)
    ]
    data["spending_trend"] = metrics.spending_trend("WEEK")
    return data


@app.post("/admin/post-subscriptions")
def admin_post_subscriptions(session_factory=Depends(get_session_factory)):
    run = SubscriptionPostingEngine(session_factory).post_due_subscriptions()
    return {
        "due": run.due,
        "processed": run.processed,
        "failed": run.failed,
        "events_posted": run.events_posted,
        "skipped": run.skipped,
    }
