from datetime import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

import recurrence
from database import Base, build_engine, make_session_factory
from models import Account, AccountType, CashFlow, CashFlowType, Category, Subscription
from recurrence import SubscriptionPostingEngine, increment
from services import SUBSCRIPTIONS_CATEGORY, CategoryResolver


def make_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    return make_session_factory(engine)


def seed_user(factory, user_id: int, with_cash: bool = True) -> None:
    with factory() as session:
        if with_cash:
            session.add(Account(user_id=user_id, name="Cash", type=AccountType.cash))
        session.commit()


def add_subscription(factory, user_id: int = 1, **overrides) -> int:
    values = dict(
        user_id=user_id,
        merchant="Netflix",
        amount_cents=1599,
        frequency="MONTHLY",
        start_date=datetime(2024, 1, 15, 9, 0),
        next_post_at=datetime(2024, 1, 15, 9, 0),
        is_active=True,
    )
    values.update(overrides)
    with factory() as session:
        subscription = Subscription(**values)
        session.add(subscription)
        session.commit()
        return subscription.id


def count_events(factory, subscription_id: int) -> int:
    with factory() as session:
        return session.scalar(
            select(func.count(CashFlow.id)).where(
                CashFlow.subscription_id == subscription_id
            )
        )


def test_increment_monthly_clamps_to_leap_day():
    assert increment(datetime(2024, 1, 31, 8, 30), "MONTHLY") == datetime(
        2024, 2, 29, 8, 30
    )
    assert increment(datetime(2023, 1, 31), "MONTHLY") == datetime(2023, 2, 28)


def test_increment_fixed_and_calendar_periods():
    start = datetime(2024, 3, 10, 7, 0)
    assert increment(start, "WEEKLY") == datetime(2024, 3, 17, 7, 0)
    assert increment(start, "FORTNIGHTLY") == datetime(2024, 3, 24, 7, 0)
    assert increment(start, "QUARTERLY") == datetime(2024, 6, 10, 7, 0)
    assert increment(start, "YEARLY") == datetime(2025, 3, 10, 7, 0)
    assert increment(datetime(2024, 2, 29), "annually") == datetime(2025, 2, 28)


def test_increment_is_case_and_whitespace_insensitive():
    assert increment(datetime(2024, 1, 1), "  weekly ") == datetime(2024, 1, 8)
    assert increment(datetime(2024, 1, 1), "Annual") == datetime(2025, 1, 1)


def test_increment_unknown_frequency_falls_back_to_monthly():
    assert increment(datetime(2024, 1, 15), "biweekly-typo") == datetime(2024, 2, 15)
    assert increment(datetime(2024, 1, 15), None) == datetime(2024, 2, 15)


def test_catch_up_posts_every_missed_period(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    sub_id = add_subscription(factory)

    run = SubscriptionPostingEngine(factory).post_due_subscriptions(
        now=datetime(2024, 4, 10, 2, 15)
    )

    assert run.due == 1
    assert run.processed == 1
    assert run.failed == 0
    assert run.events_posted == 3
    with factory() as session:
        events = session.scalars(
            select(CashFlow)
            .where(CashFlow.subscription_id == sub_id)
            .order_by(CashFlow.occurred_at)
        ).all()
        assert [e.occurred_at for e in events] == [
            datetime(2024, 1, 15, 9, 0),
            datetime(2024, 2, 15, 9, 0),
            datetime(2024, 3, 15, 9, 0),
        ]
        assert all(e.type == CashFlowType.expense for e in events)
        assert all(e.amount_cents == 1599 for e in events)
        assert events[0].description == "Subscription: Netflix"
        assert events[0].category.name == SUBSCRIPTIONS_CATEGORY
        assert events[0].category.is_system is True
        subscription = session.get(Subscription, sub_id)
        assert subscription.next_post_at == datetime(2024, 4, 15, 9, 0)


def test_rerun_with_same_now_is_a_no_op(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    sub_id = add_subscription(factory)
    engine = SubscriptionPostingEngine(factory)
    now = datetime(2024, 2, 20)

    first = engine.post_due_subscriptions(now=now)
    second = engine.post_due_subscriptions(now=now)

    assert first.events_posted == 2
    assert second.due == 0
    assert second.events_posted == 0
    assert count_events(factory, sub_id) == 2


def test_catch_up_skips_subscription_already_advanced(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    sub_id = add_subscription(factory)
    engine = SubscriptionPostingEngine(factory)
    now = datetime(2024, 3, 20)

    first = engine.catch_up(sub_id, now)
    # A second run that selected the same id before the first committed.
    second = engine.catch_up(sub_id, now)

    assert first == 3
    assert second is None
    assert count_events(factory, sub_id) == 3


def test_stale_cursor_write_is_rejected(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    sub_id = add_subscription(factory)
    with factory() as session:
        stale = session.get(Subscription, sub_id)

        SubscriptionPostingEngine(factory).catch_up(sub_id, datetime(2024, 3, 20))
        stale.next_post_at = datetime(2024, 2, 15, 9, 0)

        with pytest.raises(StaleDataError):
            session.commit()

    with factory() as session:
        assert session.get(Subscription, sub_id).next_post_at == datetime(
            2024, 4, 15, 9, 0
        )
    assert count_events(factory, sub_id) == 3


def test_existing_period_event_is_not_duplicated(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    sub_id = add_subscription(factory)
    with factory() as session:
        cash = session.scalar(select(Account).where(Account.user_id == 1))
        # cursor was never advanced after this event was written
        session.add(
            CashFlow(
                user_id=1,
                type=CashFlowType.expense,
                amount_cents=1599,
                occurred_at=datetime(2024, 1, 15, 9, 0),
                account_id=cash.id,
                subscription_id=sub_id,
            )
        )
        session.commit()

    run = SubscriptionPostingEngine(factory).post_due_subscriptions(
        now=datetime(2024, 2, 20)
    )

    assert run.events_posted == 1
    assert count_events(factory, sub_id) == 2


def test_missing_cash_account_fails_only_that_subscription(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1, with_cash=False)
    seed_user(factory, 2)
    orphan_id = add_subscription(factory, user_id=1)
    healthy_id = add_subscription(factory, user_id=2, merchant="Spotify")

    run = SubscriptionPostingEngine(factory).post_due_subscriptions(
        now=datetime(2024, 1, 20)
    )

    assert run.due == 2
    assert run.failed == 1
    assert run.processed == 1
    assert orphan_id in run.failures
    assert count_events(factory, orphan_id) == 0
    assert count_events(factory, healthy_id) == 1
    with factory() as session:
        orphan = session.get(Subscription, orphan_id)
        assert orphan.next_post_at == datetime(2024, 1, 15, 9, 0)


def test_store_failure_rolls_back_only_the_failing_subscription(tmp_path, monkeypatch):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    seed_user(factory, 2)
    failing_id = add_subscription(factory, user_id=1)
    healthy_id = add_subscription(factory, user_id=2)

    original = CategoryResolver.resolve_or_create

    def flaky_resolve(self, user_id, name, is_system=False):
        if user_id == 1:
            raise RuntimeError("database is locked")
        return original(self, user_id, name, is_system=is_system)

    monkeypatch.setattr(CategoryResolver, "resolve_or_create", flaky_resolve)

    run = SubscriptionPostingEngine(factory).post_due_subscriptions(
        now=datetime(2024, 1, 20)
    )

    assert run.failed == 1
    assert run.processed == 1
    assert count_events(factory, failing_id) == 0
    assert count_events(factory, healthy_id) == 1
    with factory() as session:
        assert session.get(Subscription, failing_id).next_post_at == datetime(
            2024, 1, 15, 9, 0
        )


def test_zero_and_missing_amounts_post_zero_value_events(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    zero_id = add_subscription(factory, amount_cents=0)
    null_id = add_subscription(factory, amount_cents=None, merchant="Trial")

    SubscriptionPostingEngine(factory).post_due_subscriptions(
        now=datetime(2024, 1, 20)
    )

    with factory() as session:
        amounts = session.scalars(
            select(CashFlow.amount_cents).where(
                CashFlow.subscription_id.in_([zero_id, null_id])
            )
        ).all()
    assert amounts == [0, 0]


def test_paused_and_future_subscriptions_are_ignored(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    paused_id = add_subscription(factory, is_active=False)
    future_id = add_subscription(factory, next_post_at=datetime(2024, 6, 1))

    run = SubscriptionPostingEngine(factory).post_due_subscriptions(
        now=datetime(2024, 3, 1)
    )

    assert run.due == 0
    assert count_events(factory, paused_id) == 0
    assert count_events(factory, future_id) == 0


def test_subscriptions_category_promotes_existing_user_category(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    with factory() as session:
        session.add(
            Category(user_id=1, name="subscriptions", name_key="subscriptions")
        )
        session.commit()
    add_subscription(factory)

    SubscriptionPostingEngine(factory).post_due_subscriptions(
        now=datetime(2024, 1, 20)
    )

    with factory() as session:
        categories = session.scalars(
            select(Category).where(Category.name_key == "subscriptions")
        ).all()
    assert len(categories) == 1
    assert categories[0].is_system is True


def test_overlapping_run_is_skipped(tmp_path):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    sub_id = add_subscription(factory)

    assert recurrence._run_lock.acquire(blocking=False)
    try:
        run = SubscriptionPostingEngine(factory).post_due_subscriptions(
            now=datetime(2024, 1, 20)
        )
    finally:
        recurrence._run_lock.release()

    assert run.skipped is True
    assert count_events(factory, sub_id) == 0


def test_run_never_raises(tmp_path, monkeypatch):
    factory = make_factory(tmp_path)

    def broken(self, now):
        raise RuntimeError("connection refused")

    monkeypatch.setattr(SubscriptionPostingEngine, "_due_subscription_ids", broken)

    run = SubscriptionPostingEngine(factory).post_due_subscriptions(
        now=datetime(2024, 1, 20)
    )

    assert run.due == 0
    assert run.events_posted == 0


@pytest.mark.parametrize(
    "frequency, expected_events",
    [("WEEKLY", 5), ("FORTNIGHTLY", 3), ("QUARTERLY", 1), ("bogus", 2)],
)
def test_catch_up_count_follows_frequency(tmp_path, frequency, expected_events):
    factory = make_factory(tmp_path)
    seed_user(factory, 1)
    sub_id = add_subscription(
        factory,
        frequency=frequency,
        next_post_at=datetime(2024, 1, 1),
        start_date=datetime(2024, 1, 1),
    )

    SubscriptionPostingEngine(factory).post_due_subscriptions(
        now=datetime(2024, 2, 1)
    )

    assert count_events(factory, sub_id) == expected_events
