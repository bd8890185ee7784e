import math
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from config import get_settings
from models import Budget, FinanceEntry, FinanceKind
from periods import (
    current_month,
    long_month_label,
    month_key,
    short_month_label,
    trailing_months,
)
from recurrence import local_today

NEUTRAL_SCORE = 500
MIN_SCORE = 300
MAX_SCORE = 850


@dataclass
class MonthSummary:
    month: str
    month_key: str
    income_cents: int
    expense_cents: int
    autopay_cents: int
    savings_cents: int


@dataclass
class MonthlyTotal:
    month_key: str
    month: str
    total_cents: int


@dataclass
class BudgetOverview:
    current_month_key: str
    current_budget_cents: int
    total_budget_cents: int
    savings_to_date_cents: int


def compute_dynamic_score(
    income: list[int], expense: list[int], autopay: list[int]
) -> int:
    """Score a run of monthly totals on a 300-850 scale.

    The three series must be aligned month by month. With no income the
    score stays at the neutral 500.
    """
    total_income = sum(income)
    outflow = sum(expense) + sum(autopay)
    if total_income <= 0 or not income:
        return NEUTRAL_SCORE

    savings_rate = max(0.0, (total_income - outflow) / total_income)
    expense_ratio = outflow / total_income
    positive_months = sum(
        1
        for month_income, month_expense, month_autopay in zip(income, expense, autopay)
        if month_income - (month_expense + month_autopay) >= 0
    )
    consistency = positive_months / len(income)

    raw = 540 + savings_rate * 180 + consistency * 100 - expense_ratio * 70
    # Half-up, not banker's rounding.
    return max(MIN_SCORE, min(MAX_SCORE, math.floor(raw + 0.5)))


class MetricsService:
    def __init__(
        self, session: Session, owner: str, *, score_months: Optional[int] = None
    ) -> None:
        self.session = session
        self.owner = owner
        self.score_months = score_months or get_settings().score_months

    def current_month_summary(self, today: Optional[date] = None) -> MonthSummary:
        today = today or local_today()
        period = current_month(today)
        stmt = (
            select(
                FinanceEntry.kind,
                func.coalesce(func.sum(FinanceEntry.amount_cents), 0).label("total"),
            )
            .where(
                FinanceEntry.user_email == self.owner,
                FinanceEntry.entry_date >= period.start,
                FinanceEntry.entry_date < period.end,
            )
            .group_by(FinanceEntry.kind)
        )
        totals = {kind: 0 for kind in FinanceKind}
        for row in self.session.execute(stmt):
            totals[FinanceKind(row.kind)] = int(row.total or 0)

        income = totals[FinanceKind.income]
        expense = totals[FinanceKind.expense]
        autopay = totals[FinanceKind.autopay]
        return MonthSummary(
            month=long_month_label(period),
            month_key=month_key(today),
            income_cents=income,
            expense_cents=expense,
            autopay_cents=autopay,
            savings_cents=max(0, income - expense - autopay),
        )

    def monthly_totals(
        self, kind: FinanceKind, months: int = 6, today: Optional[date] = None
    ) -> list[MonthlyTotal]:
        if months <= 0:
            return []
        today = today or local_today()
        window = trailing_months(today, months)
        stmt = (
            select(
                func.strftime("%Y-%m", FinanceEntry.entry_date).label("ym"),
                func.coalesce(func.sum(FinanceEntry.amount_cents), 0).label("total"),
            )
            .where(
                FinanceEntry.user_email == self.owner,
                FinanceEntry.kind == kind,
                FinanceEntry.entry_date >= window[0].start,
                FinanceEntry.entry_date < window[-1].end,
            )
            .group_by("ym")
        )
        by_month = {row.ym: int(row.total or 0) for row in self.session.execute(stmt)}
        return [
            MonthlyTotal(
                month_key=period.slug,
                month=short_month_label(period),
                total_cents=by_month.get(period.slug, 0),
            )
            for period in window
        ]

    def budget_overview(self, today: Optional[date] = None) -> BudgetOverview:
        today = today or local_today()
        current_key = month_key(today)

        current_budget = self.session.scalar(
            select(Budget.amount_cents)
            .where(Budget.user_email == self.owner, Budget.month_key == current_key)
            .limit(1)
        )
        total_budget = self.session.execute(
            select(func.coalesce(func.sum(Budget.amount_cents), 0)).where(
                Budget.user_email == self.owner
            )
        ).scalar_one()

        # Only months that carry a budget count; unbudgeted spend contributes nothing.
        expense_by_month = (
            select(
                func.strftime("%Y-%m", FinanceEntry.entry_date).label("ym"),
                func.sum(FinanceEntry.amount_cents).label("total"),
            )
            .where(
                FinanceEntry.user_email == self.owner,
                FinanceEntry.kind == FinanceKind.expense,
            )
            .group_by("ym")
            .subquery()
        )
        savings = self.session.execute(
            select(
                func.coalesce(
                    func.sum(
                        Budget.amount_cents
                        - func.coalesce(expense_by_month.c.total, 0)
                    ),
                    0,
                )
            )
            .select_from(Budget)
            .outerjoin(expense_by_month, expense_by_month.c.ym == Budget.month_key)
            .where(Budget.user_email == self.owner)
        ).scalar_one()

        return BudgetOverview(
            current_month_key=current_key,
            current_budget_cents=int(current_budget or 0),
            total_budget_cents=int(total_budget or 0),
            savings_to_date_cents=int(savings or 0),
        )

    def available_balance(self) -> int:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            FinanceEntry.kind == FinanceKind.income,
                            FinanceEntry.amount_cents,
                        ),
                        else_=-FinanceEntry.amount_cents,
                    )
                ),
                0,
            )
        ).where(FinanceEntry.user_email == self.owner)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def dynamic_score(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        series = {
            kind: [
                row.total_cents
                for row in self.monthly_totals(kind, self.score_months, today)
            ]
            for kind in FinanceKind
        }
        return compute_dynamic_score(
            series[FinanceKind.income],
            series[FinanceKind.expense],
            series[FinanceKind.autopay],
        )
