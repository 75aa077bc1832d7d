"""Categorisation API.

Runs the rule / similar / AI pipeline over parsed statement lines. Results
are advisory: nothing is written to transactions here.
"""

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from budgetline.api.deps import get_db
from budgetline.core.cache import categories_cache, rules_cache
from budgetline.schemas.categorisation import (
    AIAvailability,
    CategorisationResult,
    CategoriseRequest,
    CategoriseResponse,
    ParsedTransaction,
)
from budgetline.services.ai_categoriser import AICategoriser
from budgetline.services.categorisation_engine import CategorisationEngine, calculate_stats

logger = structlog.get_logger()

router = APIRouter()


@router.post("/categorise", response_model=CategoriseResponse)
async def categorise_transactions(
    data: CategoriseRequest,
    db: AsyncSession = Depends(get_db),
):
    """Categorise a batch of transactions from one import session."""
    engine = CategorisationEngine(db)
    results = await engine.categorise_multiple(data.transactions)
    stats = calculate_stats(results)
    logger.info(
        "import_session_categorised",
        session_id=data.session_id,
        total=stats.total,
        categorised=stats.categorised,
        ai_used=stats.ai_used,
    )
    return CategoriseResponse(results=results, stats=stats)


@router.post("/transaction", response_model=CategorisationResult)
async def categorise_transaction(
    data: ParsedTransaction,
    db: AsyncSession = Depends(get_db),
):
    """Categorise a single transaction."""
    engine = CategorisationEngine(db)
    return await engine.categorise_transaction(data)


@router.get("/ai-availability", response_model=AIAvailability)
async def get_ai_availability(db: AsyncSession = Depends(get_db)):
    """Remaining AI categorisations for today."""
    return await AICategoriser(db).check_ai_availability()


@router.post("/cache/clear", status_code=204)
async def clear_caches():
    """Drop the cached rule index and category list."""
    rules_cache.invalidate()
    categories_cache.invalidate()
    logger.info("categorisation_caches_cleared")
