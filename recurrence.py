import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import CashFlow, CashFlowType, Frequency, Subscription

logger = logging.getLogger(__name__)

_YEARLY_ALIASES = {"ANNUAL", "ANNUALLY"}

# one posting run per process at a time
_run_lock = threading.Lock()


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def parse_frequency(raw: Optional[str]) -> Optional[Frequency]:
    value = (raw or "").strip().upper()
    if value in _YEARLY_ALIASES:
        return Frequency.yearly
    try:
        return Frequency(value)
    except ValueError:
        return None


def increment(cursor: datetime, frequency: Optional[str]) -> datetime:
    """Advance a posting cursor by one period.

    Unrecognised frequencies advance monthly. Month steps keep the day of
    month, clamped to the length of the target month.
    """
    freq = parse_frequency(frequency)
    if freq == Frequency.weekly:
        return cursor + timedelta(weeks=1)
    if freq == Frequency.fortnightly:
        return cursor + timedelta(weeks=2)
    if freq == Frequency.quarterly:
        return _add_months(cursor, 3)
    if freq == Frequency.yearly:
        return _add_months(cursor, 12)
    return _add_months(cursor, 1)


@dataclass
class PostingRun:
    due: int = 0
    processed: int = 0
    failed: int = 0
    events_posted: int = 0
    skipped: bool = False
    failures: dict[int, str] = field(default_factory=dict)


class SubscriptionPostingEngine:
    """Posts every elapsed subscription period as an expense.

    Each subscription is handled in its own session and transaction, so a
    failure rolls back only that subscription and leaves its cursor where
    it was for the next run.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def post_due_subscriptions(self, now: Optional[datetime] = None) -> PostingRun:
        run = PostingRun()
        if not _run_lock.acquire(blocking=False):
            logger.warning("subscription_posting: run already in progress, skipping")
            run.skipped = True
            return run
        try:
            self._run(run, now or local_now())
        except Exception:
            logger.exception("subscription_posting: run aborted")
        finally:
            _run_lock.release()
        return run

    def _run(self, run: PostingRun, now: datetime) -> None:
        due_ids = self._due_subscription_ids(now)
        run.due = len(due_ids)
        if not due_ids:
            return
        logger.info(f"subscription_posting: due={run.due} now={now.isoformat()}")

        for subscription_id in due_ids:
            try:
                posted = self.catch_up(subscription_id, now)
            except Exception as exc:
                run.failed += 1
                run.failures[subscription_id] = str(exc)
                logger.exception(f"subscription_post_failed: id={subscription_id}")
                continue
            if posted is None:
                continue
            run.processed += 1
            run.events_posted += posted

        logger.info(
            f"subscription_posting: processed={run.processed} failed={run.failed} "
            f"events_posted={run.events_posted}"
        )

    def _due_subscription_ids(self, now: datetime) -> list[int]:
        with self.session_factory() as session:
            stmt = (
                select(Subscription.id)
                .where(
                    Subscription.is_active.is_(True),
                    Subscription.next_post_at <= now,
                )
                .order_by(Subscription.next_post_at, Subscription.id)
            )
            return list(session.scalars(stmt).all())

    def catch_up(self, subscription_id: int, now: datetime) -> Optional[int]:
        """Post all elapsed periods of one subscription.

        Returns the number of events written, or ``None`` when the
        subscription is no longer active or due once its row is locked.
        """
        session = self.session_factory()
        try:
            with session.begin():
                subscription = session.scalar(
                    select(Subscription)
                    .where(Subscription.id == subscription_id)
                    .with_for_update()
                )
                if (
                    subscription is None
                    or not subscription.is_active
                    or subscription.next_post_at > now
                ):
                    return None
                posted = self._catch_up_locked(session, subscription, now)
                merchant = subscription.merchant
                next_post_at = subscription.next_post_at
        finally:
            session.close()

        logger.info(
            f"subscription_posted: id={subscription_id} merchant={merchant} "
            f"posted={posted} next_post_at={next_post_at.isoformat()}"
        )
        return posted

    def _catch_up_locked(
        self, session: Session, subscription: Subscription, now: datetime
    ) -> int:
        from services import SUBSCRIPTIONS_CATEGORY, AccountService, CategoryResolver

        cash_account = AccountService(
            session, subscription.user_id
        ).require_cash_account()
        category = CategoryResolver(session).resolve_or_create(
            subscription.user_id, SUBSCRIPTIONS_CATEGORY, is_system=True
        )

        cursor = subscription.next_post_at
        posted = 0
        while cursor <= now:
            if self._post_period(
                session, subscription, cursor, cash_account.id, category.id
            ):
                posted += 1
            cursor = increment(cursor, subscription.frequency)

        subscription.next_post_at = cursor
        session.flush()
        return posted

    def _post_period(
        self,
        session: Session,
        subscription: Subscription,
        occurred_at: datetime,
        account_id: int,
        category_id: int,
    ) -> bool:
        exists_stmt = (
            select(CashFlow.id)
            .where(
                CashFlow.subscription_id == subscription.id,
                CashFlow.occurred_at == occurred_at,
            )
            .limit(1)
        )
        if session.execute(exists_stmt).scalar_one_or_none():
            return False

        session.add(
            CashFlow(
                user_id=subscription.user_id,
                type=CashFlowType.expense,
                amount_cents=subscription.amount_cents or 0,
                occurred_at=occurred_at,
                description=f"Subscription: {subscription.merchant}",
                account_id=account_id,
                category_id=category_id,
                subscription_id=subscription.id,
            )
        )
        return True
