"""Correction learning schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class CorrectionCreate(BaseModel):
    description: str = Field(min_length=1)
    original_category_id: str | None = None
    corrected_category_id: str
    original_source: str | None = None
    import_session_id: str | None = None


class CorrectionBatchCreate(BaseModel):
    corrections: list[CorrectionCreate]


class CorrectionBatchResult(BaseModel):
    recorded: int
    failed: int


class CorrectionRecorded(BaseModel):
    id: str


class CorrectionResponse(BaseModel):
    id: str
    description: str
    original_category_id: str | None
    original_category_name: str | None = None
    corrected_category_id: str
    corrected_category_name: str | None = None
    original_source: str | None
    import_session_id: str | None
    processed: bool
    created_rule_id: str | None
    created_at: datetime


class PatternSuggestion(BaseModel):
    """A candidate rule inferred from repeated corrections."""
    pattern: str
    match_type: Literal["exact", "contains"]
    category_id: str
    category_name: str
    correction_count: int
    confidence: float
    sample_descriptions: list[str] = []
    correction_ids: list[str] = []


class AnalysisResult(BaseModel):
    suggestions: list[PatternSuggestion]
    total_corrections: int
    recent_corrections: list[CorrectionResponse]


class SuggestionCheck(BaseModel):
    has_suggestions: bool
    count: int


class AcceptSuggestionRequest(BaseModel):
    suggestion: PatternSuggestion
    notes: str | None = None
