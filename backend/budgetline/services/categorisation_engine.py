"""Categorisation engine.

Orchestrates the categorisation strategies, in priority order:
1. Rule match (exact, then contains/regex by confidence)
2. Similar transaction lookup (trigram or token overlap)
3. AI fallback, subject to the daily quota

The engine is the trust boundary: lookup and classifier failures degrade
the result to ``source="none"`` and are never raised to the caller.
"""

from collections.abc import Awaitable, Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetline.config import settings
from budgetline.schemas.categorisation import (
    AIAvailability,
    CategorisationResult,
    CategorisationStats,
    CategoryAlternative,
    ParsedTransaction,
)
from budgetline.services.ai_categoriser import (
    AICategorisation,
    AICategorisationError,
    AICategoriser,
)
from budgetline.services.categorise_prompts import TransactionForCategorisation
from budgetline.services.rule_matcher import RuleMatch, RuleMatcher
from budgetline.services.similar_lookup import (
    SimilarLookupService,
    SimilarMatch,
    get_most_common_category,
)

logger = structlog.get_logger()

Strategy = Callable[[ParsedTransaction], Awaitable[CategorisationResult | None]]

HIGH_CONFIDENCE = 0.8
LOW_CONFIDENCE = 0.5


# ── Result builders (pure) ────────────────────────


def uncategorised(details: str = "No matching category found") -> CategorisationResult:
    return CategorisationResult(
        category_id=None,
        category_name=None,
        source="none",
        confidence=0.0,
        match_details=details,
    )


def result_from_rule(match: RuleMatch) -> CategorisationResult:
    is_exact = match.match_type == "exact"
    return CategorisationResult(
        category_id=match.category_id,
        category_name=match.category_name,
        source="rule_exact" if is_exact else "rule_pattern",
        confidence=match.confidence,
        match_details=f'{"Exact" if is_exact else "Pattern"} rule: "{match.pattern}"',
    )


def boosted_similarity(matches: list[SimilarMatch]) -> float:
    """Best similarity, boosted when several matches agree on a category."""
    confidence = matches[0].similarity
    common = get_most_common_category(matches)
    if common and common.count >= settings.engine_similar_min_count:
        confidence = min(1.0, confidence + settings.engine_similar_boost * common.count)
    return confidence


def result_from_similar(matches: list[SimilarMatch]) -> CategorisationResult | None:
    """Accept the best similar transaction if the (boosted) confidence is high enough."""
    if not matches:
        return None

    best = matches[0]
    confidence = boosted_similarity(matches)
    if confidence < settings.engine_similarity_threshold:
        return None

    snippet = best.description if len(best.description) <= 50 else f"{best.description[:50]}..."
    return CategorisationResult(
        category_id=best.category_id,
        category_name=best.category_name,
        source="similar",
        confidence=confidence,
        match_details=f'Similar to "{snippet}" ({round(best.similarity * 100)}% match)',
        alternatives=[
            CategoryAlternative(
                category_id=m.category_id,
                category_name=m.category_name,
                confidence=m.similarity,
            )
            for m in matches[1:4]
        ],
    )


def result_from_ai(ai_result: AICategorisation) -> CategorisationResult:
    alternatives = None
    if ai_result.alternatives is not None:
        alternatives = [
            CategoryAlternative(
                category_id=alt.category_id,
                category_name=alt.category_name,
                confidence=alt.confidence,
            )
            for alt in ai_result.alternatives
        ]
    return CategorisationResult(
        category_id=ai_result.category_id,
        category_name=ai_result.category_name,
        source="ai",
        confidence=ai_result.confidence,
        match_details=ai_result.reasoning,
        alternatives=alternatives,
    )


def to_ai_input(tx: ParsedTransaction) -> TransactionForCategorisation:
    return TransactionForCategorisation(
        date=tx.date.isoformat(),
        description=tx.description,
        amount=float(tx.amount),
    )


# ── Engine ────────────────────────────────────────


class CategorisationEngine:
    def __init__(
        self,
        db: AsyncSession,
        matcher: RuleMatcher | None = None,
        similar: SimilarLookupService | None = None,
        ai: AICategoriser | None = None,
    ):
        self.db = db
        self.matcher = matcher or RuleMatcher(db)
        self.similar = similar or SimilarLookupService(db)
        self.ai = ai or AICategoriser(db)

    @property
    def strategies(self) -> list[Strategy]:
        return [self.match_by_rule, self.match_by_similarity, self.match_by_ai]

    # ── Strategies ─────────────────────────────────

    async def match_by_rule(self, tx: ParsedTransaction) -> CategorisationResult | None:
        match = await self.matcher.match_rule(tx.description)
        return result_from_rule(match) if match else None

    async def match_by_similarity(self, tx: ParsedTransaction) -> CategorisationResult | None:
        matches = await self._find_similar(tx.description)
        return result_from_similar(matches)

    async def match_by_ai(self, tx: ParsedTransaction) -> CategorisationResult | None:
        availability = await self._ai_availability()
        if not availability.available:
            return None
        try:
            ai_result = await self.ai.categorise_with_ai(to_ai_input(tx))
        except AICategorisationError as e:
            logger.warning("ai_categorisation_failed", kind=e.kind.value, error=str(e))
            return None
        except SQLAlchemyError as e:
            logger.warning("ai_categorisation_failed", kind="STORE_ERROR", error=str(e))
            return None
        return result_from_ai(ai_result)

    # ── Single ─────────────────────────────────────

    async def categorise_transaction(self, tx: ParsedTransaction) -> CategorisationResult:
        """Run the strategies in order; the first accepted result wins."""
        for strategy in self.strategies:
            result = await strategy(tx)
            if result is not None:
                return result
        return uncategorised()

    # ── Batch ──────────────────────────────────────

    async def categorise_multiple(
        self, transactions: list[ParsedTransaction]
    ) -> list[CategorisationResult]:
        """Categorise a batch in three waves: rules, similarity, one AI call."""
        if not transactions:
            return []

        results: list[CategorisationResult | None] = [None] * len(transactions)

        # Wave 1: rules, against one index snapshot
        rule_matches = await self.matcher.match_rules_batch([t.description for t in transactions])
        needs_similar: list[int] = []
        for i in range(len(transactions)):
            match = rule_matches.get(i)
            if match:
                results[i] = result_from_rule(match)
            else:
                needs_similar.append(i)

        # Wave 2: similarity, one lookup at a time
        needs_ai: list[int] = []
        for i in needs_similar:
            matches = await self._find_similar(transactions[i].description)
            result = result_from_similar(matches)
            if result:
                results[i] = result
            else:
                needs_ai.append(i)

        # Wave 3: a single batched AI call for everything left
        if needs_ai:
            await self._categorise_remaining_with_ai(transactions, needs_ai, results)

        logger.info(
            "batch_categorised",
            total=len(transactions),
            by_rules=len(transactions) - len(needs_similar),
            by_similarity=len(needs_similar) - len(needs_ai),
            sent_to_ai=len(needs_ai),
        )
        return [r if r is not None else uncategorised() for r in results]

    async def _categorise_remaining_with_ai(
        self,
        transactions: list[ParsedTransaction],
        pending: list[int],
        results: list[CategorisationResult | None],
    ) -> None:
        availability = await self._ai_availability()

        if not availability.available or len(pending) > availability.remaining:
            details = (
                "AI quota insufficient for batch"
                if availability.available
                else "AI categorisation not available"
            )
            for i in pending:
                results[i] = uncategorised(details)
            return

        try:
            ai_results = await self.ai.categorise_batch_with_ai(
                [to_ai_input(transactions[i]) for i in pending]
            )
        except (AICategorisationError, SQLAlchemyError) as e:
            logger.warning("batch_ai_categorisation_failed", pending=len(pending), error=str(e))
            for i in pending:
                results[i] = uncategorised("AI categorisation failed")
            return

        for position, i in enumerate(pending):
            ai_result = ai_results.get(position)
            if ai_result:
                results[i] = result_from_ai(ai_result)
            else:
                results[i] = uncategorised("AI categorisation did not return result")

    # ── Helpers ────────────────────────────────────

    async def _find_similar(self, description: str) -> list[SimilarMatch]:
        try:
            return await self.similar.find_similar_transactions(
                description, settings.similarity_max_results
            )
        except SQLAlchemyError as e:
            logger.warning("similar_lookup_failed", error=str(e))
            return []

    async def _ai_availability(self) -> AIAvailability:
        try:
            return await self.ai.check_ai_availability()
        except SQLAlchemyError as e:
            logger.warning("ai_availability_check_failed", error=str(e))
            return AIAvailability(available=False, remaining=0, daily_limit=0)


# ── Statistics ────────────────────────────────────


def calculate_stats(results: list[CategorisationResult]) -> CategorisationStats:
    """Aggregate counts over a batch of results."""
    stats = CategorisationStats(total=len(results))

    for result in results:
        setattr(stats.by_source, result.source, getattr(stats.by_source, result.source) + 1)

        if result.category_id:
            stats.categorised += 1
            if result.confidence >= HIGH_CONFIDENCE:
                stats.high_confidence += 1
            elif result.confidence < LOW_CONFIDENCE:
                stats.low_confidence += 1
        else:
            stats.uncategorised += 1

        if result.source == "ai":
            stats.ai_used += 1

    return stats
