import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from models import AutopayPlan, FinanceEntry, FinanceKind

logger = logging.getLogger(__name__)

AUTOPAY_CATEGORY = "autopay"
# Ten years of a daily plan; anything left over is picked up on the next run.
MAX_OCCURRENCES_PER_RUN = 3660


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def calculate_next_date(plan: AutopayPlan, from_date: date) -> date:
    """Advance ``from_date`` by one step of the plan's cadence.

    Monthly plans keep the start date's day of month, snapped to the last
    day of shorter months (Jan 31 -> Feb 29 -> Mar 31).
    """
    step = plan.cadence.days
    if step is not None:
        return from_date + timedelta(days=step)
    return _add_months(from_date, 1, desired_day=plan.start_date.day)


def autopay_source_key(plan_id: int, due_date: date) -> str:
    return f"autopay:{plan_id}:{due_date.isoformat()}"


@dataclass
class CatchUpResult:
    posted: int = 0
    plans_advanced: int = 0
    failed_plan_ids: list[int] = field(default_factory=list)

    def merge(self, other: "CatchUpResult") -> None:
        self.posted += other.posted
        self.plans_advanced += other.plans_advanced
        self.failed_plan_ids.extend(other.failed_plan_ids)


class AutopayEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def catch_up_plan(self, plan: AutopayPlan, today: Optional[date] = None) -> int:
        """Materialize every occurrence due on or before ``today``.

        Does not commit. Returns the number of entries created.
        """
        today = today or local_today()
        due = plan.next_payment_date
        posted = 0
        iterations = 0
        while due <= today and iterations < MAX_OCCURRENCES_PER_RUN:
            if self._post_occurrence(plan, due):
                posted += 1
            due = calculate_next_date(plan, due)
            iterations += 1
        if due <= today:
            logger.warning(
                f"autopay_catch_up_capped: plan_id={plan.id} next={due.isoformat()}"
            )
        if due != plan.next_payment_date:
            plan.next_payment_date = due
        return posted

    def process_due_plans(
        self, owner: str, today: Optional[date] = None
    ) -> CatchUpResult:
        today = today or local_today()
        stmt = (
            select(AutopayPlan.id)
            .where(
                AutopayPlan.user_email == owner,
                AutopayPlan.active.is_(True),
                AutopayPlan.next_payment_date <= today,
            )
            .order_by(AutopayPlan.next_payment_date, AutopayPlan.id)
        )
        plan_ids = list(self.session.scalars(stmt))
        result = CatchUpResult()
        for plan_id in plan_ids:
            try:
                plan = self.session.get(AutopayPlan, plan_id)
                if plan is None:
                    continue
                prev = plan.next_payment_date
                posted = self.catch_up_plan(plan, today)
                self.session.commit()
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception(
                    f"autopay_catch_up_failed: owner={owner} plan_id={plan_id}"
                )
                result.failed_plan_ids.append(plan_id)
                continue
            result.posted += posted
            if plan.next_payment_date != prev:
                result.plans_advanced += 1
            logger.info(
                f"autopay_catch_up: owner={owner} plan_id={plan_id} posted={posted} "
                f"next={plan.next_payment_date.isoformat()}"
            )
        return result

    def process_all_due(self, today: Optional[date] = None) -> CatchUpResult:
        today = today or local_today()
        stmt = (
            select(AutopayPlan.user_email)
            .where(
                AutopayPlan.active.is_(True),
                AutopayPlan.next_payment_date <= today,
            )
            .distinct()
            .order_by(AutopayPlan.user_email)
        )
        owners = list(self.session.scalars(stmt))
        result = CatchUpResult()
        for owner in owners:
            result.merge(self.process_due_plans(owner, today))
        return result

    def _post_occurrence(self, plan: AutopayPlan, due_date: date) -> bool:
        source_key = autopay_source_key(plan.id, due_date)
        exists_stmt = (
            select(FinanceEntry.id)
            .where(
                FinanceEntry.user_email == plan.user_email,
                FinanceEntry.source_key == source_key,
            )
            .limit(1)
        )
        existing = self.session.execute(exists_stmt).scalar_one_or_none()
        if existing:
            return False

        entry = FinanceEntry(
            user_email=plan.user_email,
            kind=FinanceKind.expense,
            title=plan.title,
            amount_cents=plan.amount_cents,
            category=AUTOPAY_CATEGORY,
            entry_date=due_date,
            source_key=source_key,
        )
        self.session.add(entry)
        self.session.flush()
        return True
