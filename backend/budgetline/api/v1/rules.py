"""Category rules API routes."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from budgetline.api.deps import get_db
from budgetline.core.exceptions import (
    AlreadyExistsError,
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
)
from budgetline.schemas.rule import (
    RuleCheckRequest,
    RuleCheckResponse,
    RuleCreate,
    RuleResponse,
    RuleStats,
    RuleTestRequest,
    RuleTestResult,
    RuleUpdate,
)
from budgetline.services.rule_service import RuleService

router = APIRouter()


@router.get("", response_model=list[RuleResponse])
async def list_rules(
    is_system: bool | None = Query(None),
    category_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """List category rules, newest first."""
    return await RuleService(db).get_rules(is_system=is_system, category_id=category_id)


@router.post("", response_model=RuleResponse, status_code=201)
async def create_rule(
    data: RuleCreate,
    db: AsyncSession = Depends(get_db),
):
    """Create a rule. Patterns are unique per match type, ignoring case."""
    service = RuleService(db)
    if await service.check_pattern_exists(data.pattern, data.match_type):
        raise AlreadyExistsError("Rule with this pattern")
    rule = await service.create_rule(data)
    if rule is None:
        raise ServiceUnavailableError("create rule")
    return rule


@router.get("/stats", response_model=RuleStats)
async def get_rule_stats(db: AsyncSession = Depends(get_db)):
    return await RuleService(db).get_rule_stats()


@router.post("/test", response_model=RuleTestResult)
async def test_rule(
    data: RuleTestRequest,
    db: AsyncSession = Depends(get_db),
):
    """Dry run: which recent transactions would this rule match?"""
    return await RuleService(db).test_rule(
        data.pattern, data.match_type, data.category_id, data.limit
    )


@router.post("/check", response_model=RuleCheckResponse)
async def check_rule(
    data: RuleCheckRequest,
    db: AsyncSession = Depends(get_db),
):
    rule = await RuleService(db).check_pattern_exists(data.pattern, data.match_type)
    return RuleCheckResponse(exists=rule is not None, rule=rule)


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
):
    rule = await RuleService(db).get_rule(rule_id)
    if rule is None:
        raise NotFoundError("Rule")
    return rule


@router.patch("/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: str,
    data: RuleUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Update an existing rule."""
    service = RuleService(db)
    if await service.get_rule(rule_id) is None:
        raise NotFoundError("Rule")
    rule = await service.update_rule(rule_id, data)
    if rule is None:
        raise ServiceUnavailableError("update rule")
    return rule


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Delete a user rule. System rules cannot be deleted."""
    service = RuleService(db)
    rule = await service.get_rule(rule_id)
    if rule is None:
        raise NotFoundError("Rule")
    if rule["is_system"]:
        raise ForbiddenError("System rules cannot be deleted")
    if not await service.delete_rule(rule_id):
        raise ServiceUnavailableError("delete rule")
