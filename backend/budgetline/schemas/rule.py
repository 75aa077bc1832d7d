"""Category rule schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

MatchType = Literal["exact", "contains", "regex"]


class RuleCreate(BaseModel):
    pattern: str = Field(min_length=1, max_length=500)
    category_id: str
    match_type: MatchType
    confidence: float = Field(default=0.85, ge=0, le=1)
    is_system: bool = False
    notes: str | None = Field(default=None, max_length=1000)


class RuleUpdate(BaseModel):
    pattern: str | None = Field(default=None, min_length=1, max_length=500)
    category_id: str | None = None
    match_type: MatchType | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)
    notes: str | None = None


class RuleResponse(BaseModel):
    id: str
    pattern: str
    category_id: str
    category_name: str | None = None
    category_group: str | None = None
    match_type: str
    confidence: float
    is_system: bool
    notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class RuleTestRequest(BaseModel):
    pattern: str = Field(min_length=1, max_length=500)
    match_type: MatchType
    category_id: str
    limit: int = Field(default=50, ge=1, le=100)


class RuleTestTransaction(BaseModel):
    id: str
    date: date
    description: str
    amount: Decimal
    current_category_id: str | None
    current_category_name: str | None


class RuleTestResult(BaseModel):
    total_matched: int
    transactions: list[RuleTestTransaction]
    would_change: int


class RuleCheckRequest(BaseModel):
    pattern: str
    match_type: MatchType


class RuleCheckResponse(BaseModel):
    exists: bool
    rule: RuleResponse | None = None


class RuleStats(BaseModel):
    total: int
    by_match_type: dict[str, int]
    system_rules: int
    user_rules: int
    recently_created: int
