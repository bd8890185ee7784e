from __future__ import annotations

import hmac
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Iterator, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from metrics import BudgetOverview, MetricsService, MonthlyTotal, MonthSummary
from models import (
    AutopayPlan,
    Budget,
    FinanceEntry,
    FinanceKind,
    Goal,
    Setting,
    User,
)
from periods import month_key
from recurrence import AutopayEngine, CatchUpResult, local_today
from schemas import (
    AutopayPlanIn,
    BudgetIn,
    FinanceEntryIn,
    GoalAllocationIn,
    GoalIn,
    UserIn,
)

logger = logging.getLogger(__name__)

GOAL_CATEGORY = "goal"
GOAL_TITLE_RE = re.compile(r"^Goal:\s*(.+)$", re.IGNORECASE)

DEMO_ENTRY_TITLES = frozenset({"Salary", "Groceries", "Utilities", "Subscriptions"})
DEMO_GOAL_NAME = "Trip to Japan"
DEMO_GOAL_TARGET_CENTS = 500_000


class NotFound(ValueError):
    pass


class Conflict(ValueError):
    pass


class StorageFailure(RuntimeError):
    pass


@contextmanager
def unit_of_work(session: Session) -> Iterator[None]:
    """Commit the enclosed writes together, or roll all of them back."""
    try:
        yield
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageFailure(f"Storage write failed: {exc}") from exc


def goal_source_key(goal_id: int) -> str:
    return f"goal:{goal_id}"


def goal_id_from_source_key(source_key: Optional[str]) -> Optional[int]:
    if not source_key or not source_key.startswith("goal:"):
        return None
    try:
        goal_id = int(source_key[len("goal:") :])
    except ValueError:
        return None
    return goal_id if goal_id > 0 else None


def active_goals_key(owner: str) -> str:
    return f"active_goals_{owner}"


def parse_goal_ids(raw: Optional[str]) -> set[int]:
    ids: set[int] = set()
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if chunk.isdigit() and int(chunk) > 0:
            ids.add(int(chunk))
    return ids


def serialize_goal_ids(ids: set[int]) -> str:
    return ",".join(str(goal_id) for goal_id in sorted(ids))


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.email == email))

    def get_by_username(self, username: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.username == username))

    def create(self, data: UserIn) -> User:
        if self.get_by_email(data.email):
            raise Conflict("Email already exists")
        if self.get_by_username(data.username):
            raise Conflict("Username already taken")
        user = User(
            email=data.email, username=data.username, credential=data.credential
        )
        with unit_of_work(self.session):
            self.session.add(user)
        self.session.refresh(user)
        logger.info(f"user_created: email={user.email}")
        return user

    def verify_credential(self, email: str, credential: str) -> bool:
        user = self.get_by_email(email)
        if not user:
            return False
        return hmac.compare_digest(user.credential.encode(), credential.encode())

    def update_credential(self, email: str, credential: str) -> None:
        user = self.get_by_email(email)
        if not user:
            raise NotFound("No account found with this email")
        with unit_of_work(self.session):
            user.credential = credential


class SettingsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, key: str) -> Optional[str]:
        setting = self.session.get(Setting, key)
        return setting.value if setting else None

    def set(self, key: str, value: str) -> None:
        with unit_of_work(self.session):
            self.session.merge(Setting(key=key, value=value))

    def delete(self, key: str) -> None:
        with unit_of_work(self.session):
            self.session.execute(
                delete(Setting)
                .where(Setting.key == key)
                .execution_options(synchronize_session="fetch")
            )

    def active_goal_ids(self, owner: str) -> set[int]:
        stored = parse_goal_ids(self.get(active_goals_key(owner)))
        if not stored:
            return set()
        existing = set(
            self.session.scalars(
                select(Goal.id).where(Goal.user_email == owner, Goal.id.in_(stored))
            )
        )
        return stored & existing

    def set_active_goal_ids(self, owner: str, goal_ids: set[int]) -> set[int]:
        ids = {goal_id for goal_id in goal_ids if goal_id > 0}
        self.set(active_goals_key(owner), serialize_goal_ids(ids))
        return self.active_goal_ids(owner)

    def toggle_active_goal(self, owner: str, goal_id: int) -> set[int]:
        ids = self.active_goal_ids(owner)
        if goal_id in ids:
            ids.discard(goal_id)
        else:
            ids.add(goal_id)
        return self.set_active_goal_ids(owner, ids)


class EntryService:
    def __init__(self, session: Session, owner: str) -> None:
        self.session = session
        self.owner = owner

    def add(self, data: FinanceEntryIn, today: Optional[date] = None) -> FinanceEntry:
        entry = FinanceEntry(
            user_email=self.owner,
            kind=data.kind,
            title=data.title,
            amount_cents=data.amount_cents,
            category=data.category,
            entry_date=data.entry_date or today or local_today(),
            source_key=data.source_key,
        )
        with unit_of_work(self.session):
            self.session.add(entry)
        self.session.refresh(entry)
        return entry

    def get(self, entry_id: int) -> FinanceEntry:
        entry = self.session.get(FinanceEntry, entry_id)
        if not entry or entry.user_email != self.owner:
            raise NotFound("Entry not found")
        return entry

    def list_by_kind(self, kind: FinanceKind, limit: int = 12) -> list[FinanceEntry]:
        stmt = (
            select(FinanceEntry)
            .where(FinanceEntry.user_email == self.owner, FinanceEntry.kind == kind)
            .order_by(FinanceEntry.entry_date.desc(), FinanceEntry.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def delete(self, entry_id: int) -> None:
        entry = self.session.get(FinanceEntry, entry_id)
        if not entry or entry.user_email != self.owner:
            return
        goals = GoalService(self.session, self.owner)
        goal_id = goals.goal_id_for_entry(entry)
        amount = entry.amount_cents
        with unit_of_work(self.session):
            self.session.delete(entry)
            self.session.flush()
            if goal_id is not None:
                goals.apply_delta(goal_id, -abs(amount))
        if goal_id is not None:
            logger.info(
                f"goal_allocation_reversed: owner={self.owner} goal_id={goal_id} "
                f"amount_cents={amount}"
            )


class AutopayPlanService:
    def __init__(self, session: Session, owner: str) -> None:
        self.session = session
        self.owner = owner

    def get(self, plan_id: int) -> AutopayPlan:
        plan = self.session.get(AutopayPlan, plan_id)
        if not plan or plan.user_email != self.owner:
            raise NotFound("Autopay plan not found")
        return plan

    def list_active(self) -> list[AutopayPlan]:
        stmt = (
            select(AutopayPlan)
            .where(AutopayPlan.user_email == self.owner, AutopayPlan.active.is_(True))
            .order_by(
                AutopayPlan.next_payment_date.asc(),
                AutopayPlan.created_at.desc(),
                AutopayPlan.id.desc(),
            )
        )
        return list(self.session.scalars(stmt))

    def create(self, data: AutopayPlanIn, today: Optional[date] = None) -> AutopayPlan:
        plan = AutopayPlan(
            user_email=self.owner,
            title=data.title,
            amount_cents=data.amount_cents,
            cadence=data.cadence,
            start_date=data.start_date,
            next_payment_date=data.start_date,
            active=True,
        )
        # Plan row and its already-due occurrences land in the same commit.
        with unit_of_work(self.session):
            self.session.add(plan)
            self.session.flush()
            posted = AutopayEngine(self.session).catch_up_plan(plan, today)
        self.session.refresh(plan)
        logger.info(
            f"autopay_plan_created: owner={self.owner} plan_id={plan.id} "
            f"posted={posted} next={plan.next_payment_date.isoformat()}"
        )
        return plan

    def deactivate(self, plan_id: int) -> None:
        with unit_of_work(self.session):
            self.session.execute(
                update(AutopayPlan)
                .where(AutopayPlan.id == plan_id, AutopayPlan.user_email == self.owner)
                .values(active=False)
                .execution_options(synchronize_session="fetch")
            )

    def process_due(self, today: Optional[date] = None) -> CatchUpResult:
        return AutopayEngine(self.session).process_due_plans(self.owner, today)


class GoalService:
    def __init__(self, session: Session, owner: str) -> None:
        self.session = session
        self.owner = owner

    def list(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_email == self.owner)
            .order_by(Goal.created_at.desc(), Goal.id.desc())
        )
        return list(self.session.scalars(stmt))

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_email != self.owner:
            raise NotFound("Goal not found")
        return goal

    def add(self, data: GoalIn) -> Goal:
        goal = Goal(
            user_email=self.owner,
            name=data.name,
            current_amount_cents=data.current_amount_cents,
            target_amount_cents=data.target_amount_cents,
            target_date=data.target_date,
        )
        with unit_of_work(self.session):
            self.session.add(goal)
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        with unit_of_work(self.session):
            self.session.execute(
                delete(Goal)
                .where(Goal.id == goal_id, Goal.user_email == self.owner)
                .execution_options(synchronize_session="fetch")
            )

    def apply_delta(self, goal_id: int, delta_cents: int) -> None:
        """Move a goal's progress by ``delta_cents``, never below zero. No commit."""
        new_amount = Goal.current_amount_cents + delta_cents
        self.session.execute(
            update(Goal)
            .where(Goal.id == goal_id, Goal.user_email == self.owner)
            .values(current_amount_cents=case((new_amount < 0, 0), else_=new_amount))
            .execution_options(synchronize_session="fetch")
        )

    def adjust(self, goal_id: int, delta_cents: int) -> None:
        with unit_of_work(self.session):
            self.apply_delta(goal_id, delta_cents)

    def allocate(
        self, goal_id: int, data: GoalAllocationIn, today: Optional[date] = None
    ) -> FinanceEntry:
        """Book an expense toward a goal and credit the goal in one commit.

        Retrying after a failure that happened past the commit books the
        allocation twice; callers are expected to deduplicate.
        """
        goal = self.get(goal_id)
        entry = FinanceEntry(
            user_email=self.owner,
            kind=FinanceKind.expense,
            title=f"Goal: {goal.name}",
            amount_cents=data.amount_cents,
            category=GOAL_CATEGORY,
            entry_date=data.entry_date or today or local_today(),
            source_key=goal_source_key(goal.id),
        )
        with unit_of_work(self.session):
            self.session.add(entry)
            self.session.flush()
            self.apply_delta(goal.id, data.amount_cents)
        self.session.refresh(entry)
        logger.info(
            f"goal_allocated: owner={self.owner} goal_id={goal.id} "
            f"amount_cents={data.amount_cents}"
        )
        return entry

    def goal_id_for_entry(self, entry: FinanceEntry) -> Optional[int]:
        if entry.kind != FinanceKind.expense:
            return None
        if entry.category.strip().lower() != GOAL_CATEGORY:
            return None
        goal_id = goal_id_from_source_key(entry.source_key)
        if goal_id is not None:
            return goal_id
        match = GOAL_TITLE_RE.match(entry.title)
        if not match:
            return None
        wanted = match.group(1).strip().lower()
        for goal in self.list():
            if goal.name.strip().lower() == wanted:
                return goal.id
        return None


class BudgetService:
    def __init__(self, session: Session, owner: str) -> None:
        self.session = session
        self.owner = owner

    def get(self, key: str) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget).where(Budget.user_email == self.owner, Budget.month_key == key)
        )

    def upsert(self, data: BudgetIn, today: Optional[date] = None) -> Budget:
        key = data.month_key or month_key(today or local_today())
        existing = self.get(key)
        if existing:
            with unit_of_work(self.session):
                existing.amount_cents = data.amount_cents
            self.session.refresh(existing)
            return existing

        budget = Budget(
            user_email=self.owner, month_key=key, amount_cents=data.amount_cents
        )
        with unit_of_work(self.session):
            self.session.add(budget)
        self.session.refresh(budget)
        return budget


@dataclass
class DemoPurgeResult:
    entries_deleted: int = 0
    goals_deleted: int = 0


class DemoDataGuard:
    """Removes the seeded demo rows an account may still carry.

    Entries are purged only while every distinct title is a demo title; goals
    only while every goal is the demo goal. Safe to run on every refresh.
    """

    def __init__(self, session: Session, owner: str) -> None:
        self.session = session
        self.owner = owner

    def purge(self) -> DemoPurgeResult:
        result = DemoPurgeResult()

        titles = set(
            self.session.scalars(
                select(FinanceEntry.title)
                .where(FinanceEntry.user_email == self.owner)
                .distinct()
            )
        )
        goals = self.session.execute(
            select(Goal.name, Goal.target_amount_cents).where(
                Goal.user_email == self.owner
            )
        ).all()
        purge_entries = bool(titles) and titles <= DEMO_ENTRY_TITLES
        purge_goals = bool(goals) and all(
            name == DEMO_GOAL_NAME and target == DEMO_GOAL_TARGET_CENTS
            for name, target in goals
        )
        if not purge_entries and not purge_goals:
            return result

        with unit_of_work(self.session):
            if purge_entries:
                result.entries_deleted = self.session.scalar(
                    select(func.count(FinanceEntry.id)).where(
                        FinanceEntry.user_email == self.owner
                    )
                )
                self.session.execute(
                    delete(FinanceEntry)
                    .where(FinanceEntry.user_email == self.owner)
                    .execution_options(synchronize_session="fetch")
                )
            if purge_goals:
                result.goals_deleted = len(goals)
                self.session.execute(
                    delete(Goal)
                    .where(Goal.user_email == self.owner)
                    .execution_options(synchronize_session="fetch")
                )
        if result.entries_deleted or result.goals_deleted:
            logger.info(
                f"demo_data_purged: owner={self.owner} "
                f"entries={result.entries_deleted} goals={result.goals_deleted}"
            )
        return result


@dataclass
class Dashboard:
    owner: str
    user: Optional[User]
    summary: MonthSummary
    budget: BudgetOverview
    goals: list[Goal]
    active_goal_ids: set[int]
    incomes: list[FinanceEntry]
    expenses: list[FinanceEntry]
    autopay_plans: list[AutopayPlan]
    income_series: list[MonthlyTotal]
    expense_series: list[MonthlyTotal]
    autopay_series: list[MonthlyTotal]
    available_balance_cents: int
    score: int
    catch_up: CatchUpResult = field(default_factory=CatchUpResult)


class DashboardService:
    RECENT_LIMIT = 30
    SERIES_MONTHS = 6

    def __init__(self, session: Session, owner: str) -> None:
        self.session = session
        self.owner = owner

    def refresh(self, today: Optional[date] = None) -> Dashboard:
        today = today or local_today()
        DemoDataGuard(self.session, self.owner).purge()
        catch_up = AutopayEngine(self.session).process_due_plans(self.owner, today)

        metrics = MetricsService(self.session, self.owner)
        entries = EntryService(self.session, self.owner)
        return Dashboard(
            owner=self.owner,
            user=UserService(self.session).get_by_email(self.owner),
            summary=metrics.current_month_summary(today),
            budget=metrics.budget_overview(today),
            goals=GoalService(self.session, self.owner).list(),
            active_goal_ids=SettingsService(self.session).active_goal_ids(self.owner),
            incomes=entries.list_by_kind(FinanceKind.income, self.RECENT_LIMIT),
            expenses=entries.list_by_kind(FinanceKind.expense, self.RECENT_LIMIT),
            autopay_plans=AutopayPlanService(self.session, self.owner).list_active(),
            income_series=metrics.monthly_totals(
                FinanceKind.income, self.SERIES_MONTHS, today
            ),
            expense_series=metrics.monthly_totals(
                FinanceKind.expense, self.SERIES_MONTHS, today
            ),
            autopay_series=metrics.monthly_totals(
                FinanceKind.autopay, self.SERIES_MONTHS, today
            ),
            available_balance_cents=metrics.available_balance(),
            score=metrics.dynamic_score(today),
            catch_up=catch_up,
        )
