"""Categorisation engine schemas."""

from datetime import date
from typing import Literal

from pydantic import BaseModel, Field

CategorisationSource = Literal["rule_exact", "rule_pattern", "similar", "ai", "none"]


class ParsedTransaction(BaseModel):
    """A statement line waiting for a category."""
    date: date
    description: str = Field(min_length=1)
    amount: float
    reference: str | None = None


class CategoryAlternative(BaseModel):
    category_id: str
    category_name: str
    confidence: float


class CategorisationResult(BaseModel):
    category_id: str | None = None
    category_name: str | None = None
    source: CategorisationSource = "none"
    confidence: float = 0.0
    match_details: str = ""
    alternatives: list[CategoryAlternative] | None = None


class SourceCounts(BaseModel):
    rule_exact: int = 0
    rule_pattern: int = 0
    similar: int = 0
    ai: int = 0
    none: int = 0


class CategorisationStats(BaseModel):
    total: int = 0
    categorised: int = 0
    uncategorised: int = 0
    by_source: SourceCounts = Field(default_factory=SourceCounts)
    high_confidence: int = 0
    low_confidence: int = 0
    ai_used: int = 0


class CategoriseRequest(BaseModel):
    session_id: str = Field(min_length=1)
    transactions: list[ParsedTransaction]


class CategoriseResponse(BaseModel):
    results: list[CategorisationResult]
    stats: CategorisationStats


class AIAvailability(BaseModel):
    available: bool
    remaining: int
    daily_limit: int
