from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class FinanceKind(str, Enum):
    income = "income"
    expense = "expense"
    autopay = "autopay"


class AutopayCadence(str, Enum):
    daily = "1d"
    weekly = "7d"
    half_month = "15d"
    monthly = "monthly"

    @property
    def days(self) -> Optional[int]:
        """Fixed day step, or None for calendar-month cadences."""
        return _CADENCE_DAYS.get(self)


_CADENCE_DAYS = {
    AutopayCadence.daily: 1,
    AutopayCadence.weekly: 7,
    AutopayCadence.half_month: 15,
}


FINANCE_KIND_ENUM = SAEnum(
    FinanceKind,
    name="financekind",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

AUTOPAY_CADENCE_ENUM = SAEnum(
    AutopayCadence,
    name="autopaycadence",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    credential: Mapped[str] = mapped_column(String(255), nullable=False)


class FinanceEntry(Base, TimestampMixin):
    __tablename__ = "finance_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[FinanceKind] = mapped_column(FINANCE_KIND_ENUM, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    source_key: Mapped[Optional[str]] = mapped_column(String(120))

    __table_args__ = (
        Index("ix_finance_entries_user_date", "user_email", "entry_date"),
        Index("ix_finance_entries_user_source", "user_email", "source_key"),
        CheckConstraint("amount_cents > 0", name="ck_finance_entries_amount_positive"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    target_date: Mapped[Optional[date]] = mapped_column(Date)

    __table_args__ = (
        Index("ix_goals_user", "user_email"),
        CheckConstraint("current_amount_cents >= 0", name="ck_goals_current_nonneg"),
        CheckConstraint("target_amount_cents > 0", name="ck_goals_target_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    month_key: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_email", "month_key", name="uq_budget_user_month"),
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )


class AutopayPlan(Base, TimestampMixin):
    __tablename__ = "autopay_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    cadence: Mapped[AutopayCadence] = mapped_column(
        AUTOPAY_CADENCE_ENUM, nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index(
            "ix_autopay_user_active_next", "user_email", "active", "next_payment_date"
        ),
        CheckConstraint("amount_cents > 0", name="ck_autopay_amount_positive"),
    )


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
