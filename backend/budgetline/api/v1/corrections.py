"""Category corrections API.

Corrections are recorded when a user overrides an automatic category.
Suggestions are derived from them on demand; accepting one creates a rule.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from budgetline.api.deps import get_db
from budgetline.core.exceptions import AlreadyExistsError, ServiceUnavailableError
from budgetline.schemas.correction import (
    AcceptSuggestionRequest,
    AnalysisResult,
    CorrectionBatchCreate,
    CorrectionBatchResult,
    CorrectionCreate,
    CorrectionRecorded,
    CorrectionResponse,
    SuggestionCheck,
)
from budgetline.schemas.rule import RuleResponse
from budgetline.services.learning_service import LearningService
from budgetline.services.rule_service import RuleService

router = APIRouter()


@router.get("", response_model=list[CorrectionResponse])
async def list_corrections(
    description: str | None = Query(None, description="Only corrections for this description"),
    include_processed: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    service = LearningService(db)
    if description:
        return await service.get_corrections_for_description(description)
    return await service.get_corrections(limit=limit, include_processed=include_processed)


@router.post("", response_model=CorrectionRecorded, status_code=201)
async def record_correction(
    data: CorrectionCreate,
    db: AsyncSession = Depends(get_db),
):
    recorded = await LearningService(db).record_correction(data)
    if recorded is None:
        raise ServiceUnavailableError("record correction")
    return recorded


@router.post("/batch", response_model=CorrectionBatchResult)
async def record_corrections_batch(
    data: CorrectionBatchCreate,
    db: AsyncSession = Depends(get_db),
):
    return await LearningService(db).record_corrections_batch(data.corrections)


@router.get("/suggestions", response_model=AnalysisResult)
async def get_suggestions(db: AsyncSession = Depends(get_db)):
    """Analyse recent corrections and propose rules."""
    return await LearningService(db).analyse_corrections()


@router.get("/suggestions/check", response_model=SuggestionCheck)
async def check_suggestions(db: AsyncSession = Depends(get_db)):
    return await LearningService(db).check_for_suggestions()


@router.post("/suggestions/accept", response_model=RuleResponse, status_code=201)
async def accept_suggestion(
    data: AcceptSuggestionRequest,
    db: AsyncSession = Depends(get_db),
):
    """Turn a suggestion into a rule and mark its corrections processed."""
    service = RuleService(db)
    suggestion = data.suggestion
    if await service.check_pattern_exists(suggestion.pattern, suggestion.match_type):
        raise AlreadyExistsError("Rule with this pattern")
    rule = await service.create_rule_from_suggestion(suggestion, notes=data.notes)
    if rule is None:
        raise ServiceUnavailableError("create rule")
    return rule
