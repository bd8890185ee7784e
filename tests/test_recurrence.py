import logging
from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import recurrence
from database import Base
from models import AutopayCadence, AutopayPlan, FinanceEntry, FinanceKind
from recurrence import AutopayEngine, autopay_source_key, calculate_next_date
from schemas import AutopayPlanIn
from services import AutopayPlanService


def _plan(
    cadence: AutopayCadence,
    start: date,
    *,
    owner: str = "ana@example.com",
    title: str = "Rent",
    amount_cents: int = 5_000,
    active: bool = True,
) -> AutopayPlan:
    return AutopayPlan(
        user_email=owner,
        title=title,
        amount_cents=amount_cents,
        cadence=cadence,
        start_date=start,
        next_payment_date=start,
        active=active,
    )


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _entries_for(session: Session, plan: AutopayPlan) -> list[FinanceEntry]:
    return list(
        session.scalars(
            select(FinanceEntry)
            .where(FinanceEntry.source_key.like(f"autopay:{plan.id}:%"))
            .order_by(FinanceEntry.entry_date)
        )
    )


def test_calculate_next_date_fixed_cadences():
    start = date(2024, 2, 25)
    assert calculate_next_date(_plan(AutopayCadence.daily, start), start) == date(
        2024, 2, 26
    )
    assert calculate_next_date(_plan(AutopayCadence.weekly, start), start) == date(
        2024, 3, 3
    )
    assert calculate_next_date(
        _plan(AutopayCadence.half_month, start), start
    ) == date(2024, 3, 11)


def test_calculate_next_date_monthly_snaps_to_month_end():
    plan = _plan(AutopayCadence.monthly, date(2024, 1, 31))
    feb = calculate_next_date(plan, date(2024, 1, 31))
    assert feb == date(2024, 2, 29)
    # Day of month comes back once the month is long enough again.
    assert calculate_next_date(plan, feb) == date(2024, 3, 31)
    assert calculate_next_date(plan, date(2024, 3, 31)) == date(2024, 4, 30)


def test_calculate_next_date_monthly_non_leap_year_and_rollover():
    plan = _plan(AutopayCadence.monthly, date(2023, 1, 31))
    assert calculate_next_date(plan, date(2023, 1, 31)) == date(2023, 2, 28)
    december = _plan(AutopayCadence.monthly, date(2023, 12, 15))
    assert calculate_next_date(december, date(2023, 12, 15)) == date(2024, 1, 15)


def test_monthly_plan_catches_up_every_missed_month():
    with _session() as session:
        plan = _plan(AutopayCadence.monthly, date(2024, 1, 1), amount_cents=5_000)
        session.add(plan)
        session.commit()

        result = AutopayEngine(session).process_due_plans(
            "ana@example.com", today=date(2024, 4, 15)
        )

        entries = _entries_for(session, plan)
        assert [e.entry_date for e in entries] == [
            date(2024, 1, 1),
            date(2024, 2, 1),
            date(2024, 3, 1),
            date(2024, 4, 1),
        ]
        assert all(e.kind == FinanceKind.expense for e in entries)
        assert all(e.category == "autopay" for e in entries)
        assert all(e.amount_cents == 5_000 for e in entries)
        assert result.posted == 4
        assert result.plans_advanced == 1
        session.refresh(plan)
        assert plan.next_payment_date == date(2024, 5, 1)


def test_monthly_plan_from_31st_lands_on_leap_day():
    with _session() as session:
        plan = _plan(AutopayCadence.monthly, date(2024, 1, 31))
        session.add(plan)
        session.commit()

        AutopayEngine(session).process_due_plans(
            "ana@example.com", today=date(2024, 2, 29)
        )

        dates = [e.entry_date for e in _entries_for(session, plan)]
        assert dates == [date(2024, 1, 31), date(2024, 2, 29)]
        session.refresh(plan)
        assert plan.next_payment_date == date(2024, 3, 31)


def test_processing_twice_is_idempotent():
    with _session() as session:
        plan = _plan(AutopayCadence.weekly, date(2024, 3, 1))
        session.add(plan)
        session.commit()

        engine = AutopayEngine(session)
        engine.process_due_plans("ana@example.com", today=date(2024, 3, 20))
        first = [(e.entry_date, e.source_key) for e in _entries_for(session, plan)]
        second_run = engine.process_due_plans("ana@example.com", today=date(2024, 3, 20))
        second = [(e.entry_date, e.source_key) for e in _entries_for(session, plan)]

        assert first == second
        assert len(first) == 3
        assert second_run.posted == 0


def test_rerun_after_crash_skips_materialized_dates_and_advances_cursor():
    with _session() as session:
        plan = _plan(AutopayCadence.monthly, date(2024, 1, 1))
        session.add(plan)
        session.flush()
        # Entries were written but the cursor was never persisted.
        for due in (date(2024, 1, 1), date(2024, 2, 1)):
            session.add(
                FinanceEntry(
                    user_email=plan.user_email,
                    kind=FinanceKind.expense,
                    title=plan.title,
                    amount_cents=plan.amount_cents,
                    category="autopay",
                    entry_date=due,
                    source_key=autopay_source_key(plan.id, due),
                )
            )
        session.commit()

        result = AutopayEngine(session).process_due_plans(
            "ana@example.com", today=date(2024, 3, 5)
        )

        dates = [e.entry_date for e in _entries_for(session, plan)]
        assert dates == [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]
        assert result.posted == 1
        session.refresh(plan)
        assert plan.next_payment_date == date(2024, 4, 1)


def test_inactive_and_future_plans_are_left_alone():
    with _session() as session:
        inactive = _plan(AutopayCadence.daily, date(2024, 1, 1), active=False)
        future = _plan(AutopayCadence.daily, date(2024, 6, 1), title="Gym")
        session.add_all([inactive, future])
        session.commit()

        result = AutopayEngine(session).process_due_plans(
            "ana@example.com", today=date(2024, 1, 10)
        )

        assert result.posted == 0
        assert session.query(FinanceEntry).count() == 0
        session.refresh(inactive)
        session.refresh(future)
        assert inactive.next_payment_date == date(2024, 1, 1)
        assert future.next_payment_date == date(2024, 6, 1)


def test_cursor_ends_on_first_date_after_today():
    today = date(2024, 5, 17)
    cases = [
        (AutopayCadence.daily, date(2024, 5, 1)),
        (AutopayCadence.weekly, date(2024, 1, 3)),
        (AutopayCadence.half_month, date(2023, 12, 30)),
        (AutopayCadence.monthly, date(2023, 8, 31)),
        (AutopayCadence.monthly, date(2024, 5, 17)),
    ]
    with _session() as session:
        plans = [_plan(cadence, start) for cadence, start in cases]
        session.add_all(plans)
        session.commit()

        AutopayEngine(session).process_due_plans("ana@example.com", today=today)

        for plan in plans:
            session.refresh(plan)
            entries = _entries_for(session, plan)
            assert plan.next_payment_date > today
            assert entries[-1].entry_date <= today
            assert calculate_next_date(plan, entries[-1].entry_date) == (
                plan.next_payment_date
            )


def test_storage_failure_is_isolated_to_one_plan(monkeypatch):
    real_post = AutopayEngine._post_occurrence

    def flaky(self, plan, due_date):
        if plan.title == "Broken" and due_date == date(2024, 2, 1):
            raise SQLAlchemyError("disk I/O error")
        return real_post(self, plan, due_date)

    monkeypatch.setattr(AutopayEngine, "_post_occurrence", flaky)

    with _session() as session:
        broken = _plan(AutopayCadence.monthly, date(2024, 1, 1), title="Broken")
        healthy = _plan(AutopayCadence.monthly, date(2024, 1, 15), title="Phone")
        session.add_all([broken, healthy])
        session.commit()
        broken_id, healthy_id = broken.id, healthy.id

        result = AutopayEngine(session).process_due_plans(
            "ana@example.com", today=date(2024, 3, 1)
        )

        assert result.failed_plan_ids == [broken_id]
        broken = session.get(AutopayPlan, broken_id)
        healthy = session.get(AutopayPlan, healthy_id)
        assert broken.next_payment_date == date(2024, 1, 1)
        assert _entries_for(session, broken) == []
        assert [e.entry_date for e in _entries_for(session, healthy)] == [
            date(2024, 1, 15),
            date(2024, 2, 15),
        ]
        assert healthy.next_payment_date == date(2024, 3, 15)


def test_process_all_due_covers_every_owner():
    with _session() as session:
        session.add_all(
            [
                _plan(AutopayCadence.monthly, date(2024, 1, 1), owner="a@example.com"),
                _plan(AutopayCadence.monthly, date(2024, 2, 1), owner="b@example.com"),
            ]
        )
        session.commit()

        result = AutopayEngine(session).process_all_due(today=date(2024, 2, 10))

        assert result.posted == 3
        owners = session.scalars(select(FinanceEntry.user_email)).all()
        assert sorted(owners) == ["a@example.com", "a@example.com", "b@example.com"]


def test_create_plan_seeds_start_date_occurrence():
    with _session() as session:
        plans = AutopayPlanService(session, "ana@example.com")
        plan = plans.create(
            AutopayPlanIn(
                title="Streaming",
                amount_cents=1_299,
                cadence=AutopayCadence.monthly,
                start_date=date(2024, 1, 1),
            ),
            today=date(2024, 1, 1),
        )

        assert plan.next_payment_date == date(2024, 2, 1)
        entries = _entries_for(session, plan)
        assert [e.source_key for e in entries] == [f"autopay:{plan.id}:2024-01-01"]

        plans.process_due(today=date(2024, 4, 15))
        assert len(_entries_for(session, plan)) == 4
        session.refresh(plan)
        assert plan.next_payment_date == date(2024, 5, 1)


def test_create_plan_with_future_start_waits_for_start_date():
    with _session() as session:
        plan = AutopayPlanService(session, "ana@example.com").create(
            AutopayPlanIn(
                title="Insurance",
                amount_cents=8_000,
                cadence=AutopayCadence.half_month,
                start_date=date(2024, 7, 1),
            ),
            today=date(2024, 6, 1),
        )

        assert plan.next_payment_date == date(2024, 7, 1)
        assert _entries_for(session, plan) == []


def test_cap_warning_only_when_occurrences_remain(monkeypatch, caplog):
    monkeypatch.setattr(recurrence, "MAX_OCCURRENCES_PER_RUN", 3)

    with _session() as session:
        exact = _plan(AutopayCadence.daily, date(2024, 1, 1), title="Exact")
        behind = _plan(AutopayCadence.daily, date(2024, 1, 1), title="Behind")
        session.add_all([exact, behind])
        session.commit()
        engine = AutopayEngine(session)

        with caplog.at_level(logging.WARNING, logger="recurrence"):
            assert engine.catch_up_plan(exact, today=date(2024, 1, 3)) == 3
        assert exact.next_payment_date == date(2024, 1, 4)
        assert "autopay_catch_up_capped" not in caplog.text

        with caplog.at_level(logging.WARNING, logger="recurrence"):
            assert engine.catch_up_plan(behind, today=date(2024, 1, 10)) == 3
        assert behind.next_payment_date == date(2024, 1, 4)
        assert f"autopay_catch_up_capped: plan_id={behind.id}" in caplog.text

        # The rest is picked up by later runs.
        assert engine.catch_up_plan(behind, today=date(2024, 1, 10)) == 3
        assert behind.next_payment_date == date(2024, 1, 7)
