"""Pydantic schemas for budget API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


class BudgetCheckRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
    budget_type: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(default=Decimal("1"), ge=0)


class BudgetSnapshotResponse(BaseModel):
    type: str
    limit: float
    consumed: float
    remaining: float
    percentage: int
    is_frozen: bool
    reset_at: Optional[str] = None


class BudgetCheckResponse(BaseModel):
    allowed: bool
    message: str
    budget: Optional[BudgetSnapshotResponse] = None


class BudgetUpsertRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
    budget_type: str = Field(min_length=1, max_length=64)
    limit_amount: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    name: Optional[str] = Field(default=None, max_length=120)
    period: Literal["daily", "weekly", "monthly"] = "monthly"
    reset_at: Optional[datetime] = None


class BudgetFreezeRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
    budget_type: str = Field(min_length=1, max_length=64)
    frozen: bool = True


class BudgetResponse(BaseModel):
    id: str
    org_id: str
    name: str
    budget_type: str
    limit_amount: float
    consumed_amount: float
    period: str
    reset_at: Optional[str] = None
    is_frozen: bool
