"""Per-org consumable budgets used as advisory admission control.

``check`` and ``consume`` are deliberately separate calls. Two concurrent
requests can both pass ``check`` and overshoot the limit by a small amount;
publishing throttles tolerate that. ``consume`` itself is a single SQL
increment so no consumption is ever lost.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.core.logger import get_logger
from src.storage.models import Budget


BUDGET_PERIODS = ("daily", "weekly", "monthly")
Amount = Union[int, float, Decimal, str]


@dataclass(frozen=True)
class BudgetSnapshot:
    type: str
    limit: Decimal
    consumed: Decimal
    remaining: Decimal
    percentage: int
    is_frozen: bool
    reset_at: Optional[datetime]


@dataclass(frozen=True)
class BudgetCheck:
    allowed: bool
    message: str
    budget: Optional[BudgetSnapshot]

    @property
    def remaining(self) -> Optional[Decimal]:
        return self.budget.remaining if self.budget is not None else None

    @property
    def percentage(self) -> Optional[int]:
        return self.budget.percentage if self.budget is not None else None


class BudgetExceededError(RuntimeError):
    def __init__(self, decision: BudgetCheck) -> None:
        super().__init__(decision.message)
        self.decision = decision


class BudgetNotFoundError(LookupError):
    pass


def _to_decimal(value: Amount) -> Decimal:
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if not amount.is_finite():
        raise ValueError("Budget amount must be a finite number")
    return amount


def format_amount(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def _percentage(consumed: Decimal, limit: Decimal) -> int:
    if limit <= 0:
        return 100 if consumed > 0 else 0
    ratio = consumed / limit * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_budget(session: Session, *, org_id: str, budget_type: str) -> Optional[Budget]:
    return session.scalar(
        select(Budget)
        .where(Budget.org_id == org_id, Budget.budget_type == budget_type)
        .execution_options(populate_existing=True)
    )


def check(session: Session, *, org_id: str, budget_type: str, amount: Amount = 1) -> BudgetCheck:
    requested = _to_decimal(amount)
    if requested < 0:
        raise ValueError("Requested amount must not be negative")

    budget = get_budget(session, org_id=org_id, budget_type=budget_type)
    if budget is None:
        return BudgetCheck(allowed=True, message="No budget configured for this operation type", budget=None)

    limit = _to_decimal(budget.limit_amount)
    consumed = _to_decimal(budget.consumed_amount)

    if budget.is_frozen:
        return BudgetCheck(
            allowed=False,
            message="Budget is frozen",
            budget=BudgetSnapshot(
                type=budget.budget_type,
                limit=limit,
                consumed=consumed,
                remaining=Decimal("0"),
                percentage=100,
                is_frozen=True,
                reset_at=budget.reset_at,
            ),
        )

    remaining = limit - consumed
    allowed = consumed + requested <= limit
    if allowed:
        message = "Budget check passed"
    else:
        message = (
            f"Operation would exceed budget ({format_amount(remaining)} remaining, "
            f"{format_amount(requested)} requested)"
        )
    return BudgetCheck(
        allowed=allowed,
        message=message,
        budget=BudgetSnapshot(
            type=budget.budget_type,
            limit=limit,
            consumed=consumed,
            remaining=remaining,
            percentage=_percentage(consumed, limit),
            is_frozen=False,
            reset_at=budget.reset_at,
        ),
    )


def consume(
    session: Session,
    *,
    org_id: str,
    budget_type: str,
    amount: Amount,
    commit: bool = True,
) -> bool:
    """Increment consumption. Returns False when no budget row exists for the type."""

    increment = _to_decimal(amount)
    if increment < 0:
        raise ValueError("Consumed amount must not be negative")

    result = session.execute(
        update(Budget)
        .where(Budget.org_id == org_id, Budget.budget_type == budget_type)
        .values(
            consumed_amount=Budget.consumed_amount + increment,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if commit:
        session.commit()
    consumed = (result.rowcount or 0) > 0
    if consumed:
        get_logger("opshub.budgets").info(
            "budget_consumed",
            org_id=org_id,
            budget_type=budget_type,
            amount=format_amount(increment),
        )
    return consumed


def _add_month(value: datetime) -> datetime:
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_reset_at(value: datetime, period: str) -> datetime:
    if period == "daily":
        return value + timedelta(days=1)
    if period == "weekly":
        return value + timedelta(days=7)
    if period == "monthly":
        return _add_month(value)
    raise ValueError(f"Unsupported budget period: {period}")


def _normalize_dt(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def next_reset_after(reset_at: datetime, period: str, now: datetime) -> datetime:
    candidate = _normalize_dt(reset_at)
    while candidate <= now:
        candidate = advance_reset_at(candidate, period)
    return candidate


def upsert_budget(
    session: Session,
    *,
    org_id: str,
    budget_type: str,
    limit_amount: Amount,
    name: Optional[str] = None,
    period: str = "monthly",
    reset_at: Optional[datetime] = None,
) -> Budget:
    if period not in BUDGET_PERIODS:
        raise ValueError(f"Unsupported budget period: {period}")
    limit = _to_decimal(limit_amount)
    if limit < 0:
        raise ValueError("limit_amount must not be negative")

    now = datetime.now(timezone.utc)
    budget = get_budget(session, org_id=org_id, budget_type=budget_type)
    if budget is None:
        budget = Budget(
            org_id=org_id,
            budget_type=budget_type,
            name=name or budget_type.replace("_", " ").title(),
            limit_amount=limit,
            consumed_amount=Decimal("0"),
            period=period,
            reset_at=reset_at or advance_reset_at(now, period),
            is_frozen=False,
        )
        session.add(budget)
    else:
        budget.limit_amount = limit
        budget.period = period
        if name:
            budget.name = name
        if reset_at is not None:
            budget.reset_at = reset_at
        budget.updated_at = now
    session.commit()
    return budget


def set_budget_frozen(session: Session, *, org_id: str, budget_type: str, frozen: bool) -> Budget:
    budget = get_budget(session, org_id=org_id, budget_type=budget_type)
    if budget is None:
        raise BudgetNotFoundError(f"No {budget_type} budget configured for org {org_id}")
    budget.is_frozen = frozen
    budget.updated_at = datetime.now(timezone.utc)
    session.commit()
    get_logger("opshub.budgets").info(
        "budget_frozen" if frozen else "budget_unfrozen",
        org_id=org_id,
        budget_type=budget_type,
    )
    return budget


def reset_due_budgets(
    session: Session,
    *,
    now: Optional[datetime] = None,
    org_id: Optional[str] = None,
) -> int:
    """Zero consumption for budgets whose ``reset_at`` has passed and roll it forward."""

    now = now or datetime.now(timezone.utc)
    statement = select(Budget.id, Budget.reset_at, Budget.period).where(
        Budget.reset_at.is_not(None),
        Budget.reset_at <= now,
    )
    if org_id is not None:
        statement = statement.where(Budget.org_id == org_id)

    due: List[tuple[str, datetime, str]] = list(session.execute(statement).tuples().all())
    reset = 0
    for budget_id, reset_at, period in due:
        period_name = period if period in BUDGET_PERIODS else "monthly"
        result = session.execute(
            update(Budget)
            .where(Budget.id == budget_id, Budget.reset_at == reset_at)
            .values(
                consumed_amount=Decimal("0"),
                reset_at=next_reset_after(reset_at, period_name, now),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        reset += result.rowcount or 0
    session.commit()

    if reset:
        get_logger("opshub.budgets").info("budgets_reset", org_id=org_id, count=reset)
    return reset
