"""JSON API over the ledger.

There is no module-level app; serve it through the factory, e.g.
``uvicorn --factory main:create_app``.
"""

import logging
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import LedgerStore
from metrics import MetricsService
from models import AutopayPlan, FinanceEntry, FinanceKind, Goal, User
from scheduler import SchedulerManager
from schemas import (
    ActiveGoalsIn,
    AutopayPlanIn,
    BudgetIn,
    CredentialIn,
    FinanceEntryIn,
    GoalAdjustIn,
    GoalAllocationIn,
    GoalIn,
    SignInIn,
    UserIn,
)
from services import (
    AutopayPlanService,
    BudgetService,
    Conflict,
    Dashboard,
    DashboardService,
    EntryService,
    GoalService,
    NotFound,
    SettingsService,
    StorageFailure,
    UserService,
)


router = APIRouter(prefix="/api")


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.store.session()
    try:
        yield db
    finally:
        db.close()


def user_to_dict(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "created_at": user.created_at.isoformat(),
    }


def entry_to_dict(entry: FinanceEntry) -> dict[str, object]:
    return {
        "id": entry.id,
        "kind": entry.kind.value,
        "title": entry.title,
        "amount_cents": entry.amount_cents,
        "category": entry.category,
        "entry_date": entry.entry_date.isoformat(),
        "source_key": entry.source_key,
    }


def plan_to_dict(plan: AutopayPlan) -> dict[str, object]:
    return {
        "id": plan.id,
        "title": plan.title,
        "amount_cents": plan.amount_cents,
        "cadence": plan.cadence.value,
        "start_date": plan.start_date.isoformat(),
        "next_payment_date": plan.next_payment_date.isoformat(),
        "active": plan.active,
    }


def goal_to_dict(goal: Goal) -> dict[str, object]:
    return {
        "id": goal.id,
        "name": goal.name,
        "current_amount_cents": goal.current_amount_cents,
        "target_amount_cents": goal.target_amount_cents,
        "target_date": goal.target_date.isoformat() if goal.target_date else None,
    }


def dashboard_to_dict(dashboard: Dashboard) -> dict[str, object]:
    return {
        "owner": dashboard.owner,
        "user": user_to_dict(dashboard.user) if dashboard.user else None,
        "summary": dashboard.summary,
        "budget": dashboard.budget,
        "goals": [goal_to_dict(goal) for goal in dashboard.goals],
        "active_goal_ids": sorted(dashboard.active_goal_ids),
        "incomes": [entry_to_dict(entry) for entry in dashboard.incomes],
        "expenses": [entry_to_dict(entry) for entry in dashboard.expenses],
        "autopay_plans": [plan_to_dict(plan) for plan in dashboard.autopay_plans],
        "income_series": dashboard.income_series,
        "expense_series": dashboard.expense_series,
        "autopay_series": dashboard.autopay_series,
        "available_balance_cents": dashboard.available_balance_cents,
        "score": dashboard.score,
        "autopay_failed_plan_ids": dashboard.catch_up.failed_plan_ids,
    }


@router.post("/users", status_code=201)
def create_user(data: UserIn, db: Session = Depends(get_db)):
    return user_to_dict(UserService(db).create(data))


@router.post("/users/verify")
def verify_user(data: SignInIn, db: Session = Depends(get_db)):
    users = UserService(db)
    if not users.get_by_email(data.email):
        raise NotFound("No account found with this email")
    return {"valid": users.verify_credential(data.email, data.credential)}


@router.put("/users/{email}/credential", status_code=204)
def reset_credential(email: str, data: CredentialIn, db: Session = Depends(get_db)):
    UserService(db).update_credential(email, data.credential)
    return Response(status_code=204)


@router.get("/owners/{owner}/dashboard")
def dashboard(owner: str, db: Session = Depends(get_db)):
    return dashboard_to_dict(DashboardService(db, owner).refresh())


@router.get("/owners/{owner}/entries")
def list_entries(
    owner: str, kind: FinanceKind, limit: int = 12, db: Session = Depends(get_db)
):
    limit = min(max(limit, 1), 200)
    entries = EntryService(db, owner).list_by_kind(kind, limit)
    return {"items": [entry_to_dict(entry) for entry in entries]}


@router.post("/owners/{owner}/entries", status_code=201)
def add_entry(owner: str, data: FinanceEntryIn, db: Session = Depends(get_db)):
    return entry_to_dict(EntryService(db, owner).add(data))


@router.delete("/owners/{owner}/entries/{entry_id}", status_code=204)
def delete_entry(owner: str, entry_id: int, db: Session = Depends(get_db)):
    EntryService(db, owner).delete(entry_id)
    return Response(status_code=204)


@router.get("/owners/{owner}/autopay")
def list_plans(owner: str, db: Session = Depends(get_db)):
    plans = AutopayPlanService(db, owner).list_active()
    return {"items": [plan_to_dict(plan) for plan in plans]}


@router.post("/owners/{owner}/autopay", status_code=201)
def create_plan(owner: str, data: AutopayPlanIn, db: Session = Depends(get_db)):
    return plan_to_dict(AutopayPlanService(db, owner).create(data))


@router.delete("/owners/{owner}/autopay/{plan_id}", status_code=204)
def deactivate_plan(owner: str, plan_id: int, db: Session = Depends(get_db)):
    AutopayPlanService(db, owner).deactivate(plan_id)
    return Response(status_code=204)


@router.post("/owners/{owner}/autopay/process")
def process_plans(owner: str, db: Session = Depends(get_db)):
    return AutopayPlanService(db, owner).process_due()


@router.get("/owners/{owner}/goals")
def list_goals(owner: str, db: Session = Depends(get_db)):
    goals = GoalService(db, owner).list()
    return {"items": [goal_to_dict(goal) for goal in goals]}


@router.post("/owners/{owner}/goals", status_code=201)
def add_goal(owner: str, data: GoalIn, db: Session = Depends(get_db)):
    return goal_to_dict(GoalService(db, owner).add(data))


@router.get("/owners/{owner}/goals/active")
def active_goals(owner: str, db: Session = Depends(get_db)):
    return {"goal_ids": sorted(SettingsService(db).active_goal_ids(owner))}


@router.put("/owners/{owner}/goals/active")
def set_active_goals(owner: str, data: ActiveGoalsIn, db: Session = Depends(get_db)):
    ids = SettingsService(db).set_active_goal_ids(owner, set(data.goal_ids))
    return {"goal_ids": sorted(ids)}


@router.post("/owners/{owner}/goals/{goal_id}/toggle-active")
def toggle_active_goal(owner: str, goal_id: int, db: Session = Depends(get_db)):
    GoalService(db, owner).get(goal_id)
    ids = SettingsService(db).toggle_active_goal(owner, goal_id)
    return {"goal_ids": sorted(ids)}


@router.delete("/owners/{owner}/goals/{goal_id}", status_code=204)
def delete_goal(owner: str, goal_id: int, db: Session = Depends(get_db)):
    GoalService(db, owner).delete(goal_id)
    return Response(status_code=204)


@router.post("/owners/{owner}/goals/{goal_id}/allocate", status_code=201)
def allocate_to_goal(
    owner: str, goal_id: int, data: GoalAllocationIn, db: Session = Depends(get_db)
):
    entry = GoalService(db, owner).allocate(goal_id, data)
    return entry_to_dict(entry)


@router.post("/owners/{owner}/goals/{goal_id}/adjust")
def adjust_goal(
    owner: str, goal_id: int, data: GoalAdjustIn, db: Session = Depends(get_db)
):
    goals = GoalService(db, owner)
    goals.adjust(goal_id, data.delta_cents)
    return goal_to_dict(goals.get(goal_id))


@router.put("/owners/{owner}/budgets")
def upsert_budget(owner: str, data: BudgetIn, db: Session = Depends(get_db)):
    budget = BudgetService(db, owner).upsert(data)
    return {"month_key": budget.month_key, "amount_cents": budget.amount_cents}


@router.get("/owners/{owner}/summary")
def current_month_summary(owner: str, db: Session = Depends(get_db)):
    return MetricsService(db, owner).current_month_summary()


@router.get("/owners/{owner}/monthly-totals")
def monthly_totals(
    owner: str, kind: FinanceKind, months: int = 6, db: Session = Depends(get_db)
):
    months = min(max(months, 1), 36)
    return {"items": MetricsService(db, owner).monthly_totals(kind, months)}


@router.get("/owners/{owner}/budget-overview")
def budget_overview(owner: str, db: Session = Depends(get_db)):
    return MetricsService(db, owner).budget_overview()


@router.get("/owners/{owner}/balance")
def available_balance(owner: str, db: Session = Depends(get_db)):
    return {"available_balance_cents": MetricsService(db, owner).available_balance()}


@router.get("/owners/{owner}/score")
def dynamic_score(owner: str, db: Session = Depends(get_db)):
    return {"score": MetricsService(db, owner).dynamic_score()}


def _error(status_code: int):
    def handler(_request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


def create_app(
    store: Optional[LedgerStore] = None, settings: Optional[Settings] = None
) -> FastAPI:
    logging.basicConfig(level=logging.INFO)
    settings = settings or get_settings()
    if store is None:
        store = LedgerStore(settings.database_url)
        store.create_all()

    app = FastAPI(title="Personal Ledger")
    app.state.store = store
    app.include_router(router)

    app.add_exception_handler(NotFound, _error(404))
    app.add_exception_handler(Conflict, _error(400))
    app.add_exception_handler(ValueError, _error(400))
    app.add_exception_handler(StorageFailure, _error(503))

    if settings.scheduler_enabled:
        scheduler_manager = SchedulerManager(store, settings.timezone)

        @app.on_event("startup")
        def startup_event():
            scheduler_manager.start()

        @app.on_event("shutdown")
        def shutdown_event():
            scheduler_manager.stop()

    return app
