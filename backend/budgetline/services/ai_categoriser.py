"""AI categoriser.

Uses a generative model to categorise transactions when rules and similar
transactions don't provide a confident match. Also owns the daily usage
quota that the engine checks before every AI call.
"""

from dataclasses import dataclass, field
from datetime import date

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetline.config import settings
from budgetline.core.cache import TTLCache, categories_cache
from budgetline.models.ai_usage import AIUsageTracking
from budgetline.models.category import Category
from budgetline.schemas.categorisation import AIAvailability
from budgetline.services.categorise_prompts import (
    AIAlternativePayload,
    CategoryInfo,
    TransactionForCategorisation,
    build_batch_prompt,
    build_single_prompt,
    parse_json_reply,
    validate_batch_reply,
    validate_single_reply,
)
from budgetline.services.llm_provider import AIErrorKind, Completion, LLMProviderBase, get_llm_provider

logger = structlog.get_logger()

USAGE_TYPE = "categorisation"
UNRESOLVED_CATEGORY_MAX_CONFIDENCE = 0.3


class AICategorisationError(Exception):
    """Typed failure of an AI categorisation call."""

    def __init__(self, message: str, kind: AIErrorKind):
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind == AIErrorKind.PARSE_ERROR


@dataclass
class AIAlternative:
    category_id: str
    category_name: str
    confidence: float


@dataclass
class AICategorisation:
    category_id: str
    category_name: str
    confidence: float
    reasoning: str
    alternatives: list[AIAlternative] | None = field(default=None)


# ── Usage accounting ──────────────────────────────


class AIUsageTracker:
    """Daily per-purpose AI call counters."""

    def __init__(self, db: AsyncSession, daily_limit: int | None = None):
        self.db = db
        self.daily_limit = (
            daily_limit if daily_limit is not None else settings.ai_categorisation_daily_limit
        )

    async def get_used(self, usage_type: str = USAGE_TYPE, day: date | None = None) -> int:
        result = await self.db.execute(
            select(AIUsageTracking.count).where(
                AIUsageTracking.date == (day or date.today()),
                AIUsageTracking.usage_type == usage_type,
            )
        )
        return result.scalar_one_or_none() or 0

    async def track(self, count: int = 1, usage_type: str = USAGE_TYPE) -> None:
        """Add ``count`` to today's counter, creating it if needed."""
        today = date.today()
        result = await self.db.execute(
            select(AIUsageTracking).where(
                AIUsageTracking.date == today,
                AIUsageTracking.usage_type == usage_type,
            )
        )
        row = result.scalar_one_or_none()
        if row:
            row.count += count
        else:
            self.db.add(AIUsageTracking(date=today, usage_type=usage_type, count=count))
        await self.db.flush()

    async def check_availability(self) -> AIAvailability:
        used = await self.get_used()
        remaining = max(0, self.daily_limit - used)
        return AIAvailability(
            available=remaining > 0,
            remaining=remaining,
            daily_limit=self.daily_limit,
        )


# ── Categoriser ───────────────────────────────────


class AICategoriser:
    def __init__(
        self,
        db: AsyncSession,
        provider: LLMProviderBase | None = None,
        cache: TTLCache | None = None,
        usage: AIUsageTracker | None = None,
    ):
        self.db = db
        self.provider = provider or get_llm_provider()
        self.cache = cache if cache is not None else categories_cache
        self.usage = usage or AIUsageTracker(db)

    # ── Categories ─────────────────────────────────

    async def get_categories(self) -> list[CategoryInfo]:
        return await self.cache.get_or_refresh(self._load_categories, [])

    def clear_categories_cache(self) -> None:
        self.cache.invalidate()

    async def _load_categories(self) -> list[CategoryInfo]:
        result = await self.db.execute(
            select(Category).order_by(Category.group_name, Category.display_order)
        )
        return [
            CategoryInfo(id=c.id, name=c.name, group_name=c.group_name, is_income=c.is_income)
            for c in result.scalars().all()
        ]

    # ── Availability ───────────────────────────────

    async def check_ai_availability(self) -> AIAvailability:
        """Quota check; an unconfigured provider counts as no quota."""
        availability = await self.usage.check_availability()
        if availability.available and not await self.provider.is_available():
            return AIAvailability(available=False, remaining=0, daily_limit=availability.daily_limit)
        return availability

    # ── Single ─────────────────────────────────────

    async def categorise_with_ai(self, tx: TransactionForCategorisation) -> AICategorisation:
        """Categorise one transaction. Raises ``AICategorisationError``."""
        categories = await self._require_categories()
        prompt = build_single_prompt(tx, categories)

        payload = await self._complete_with_retry(prompt, validate_single_reply)
        category_id, category_name, confidence = self._resolve_category(
            payload.category_id, payload.category_name, payload.confidence, categories
        )
        result = AICategorisation(
            category_id=category_id,
            category_name=category_name,
            confidence=confidence,
            reasoning=payload.reasoning,
            alternatives=self._alternatives(payload.alternatives),
        )
        await self.usage.track(1)
        return result

    # ── Batch ──────────────────────────────────────

    async def categorise_batch_with_ai(
        self, transactions: list[TransactionForCategorisation]
    ) -> dict[int, AICategorisation]:
        """Categorise many transactions, chunked to the provider's batch size.

        Returned keys are positions in ``transactions``. Items the model did
        not answer for are simply absent.
        """
        if not transactions:
            return {}

        size = settings.ai_max_batch_size
        if len(transactions) > size:
            results: dict[int, AICategorisation] = {}
            for start in range(0, len(transactions), size):
                chunk_results = await self.categorise_batch_with_ai(transactions[start:start + size])
                for index, result in chunk_results.items():
                    results[start + index] = result
            return results

        categories = await self._require_categories()
        prompt = build_batch_prompt(transactions, categories)
        items = await self._complete_with_retry(prompt, validate_batch_reply)

        results = {}
        for item in items:
            if not 0 <= item.index < len(transactions):
                logger.warning("ai_batch_index_out_of_range", index=item.index, size=len(transactions))
                continue
            category_id, category_name, confidence = self._resolve_category(
                item.category_id, item.category_name, item.confidence, categories
            )
            results[item.index] = AICategorisation(
                category_id=category_id,
                category_name=category_name,
                confidence=confidence,
                reasoning=item.reasoning,
            )

        await self.usage.track(len(transactions))
        logger.info("ai_batch_categorised", requested=len(transactions), returned=len(results))
        return results

    # ── Helpers ────────────────────────────────────

    async def _require_categories(self) -> list[CategoryInfo]:
        categories = await self.get_categories()
        if not categories:
            raise AICategorisationError("No categories available", AIErrorKind.API_ERROR)
        return categories

    async def _complete_with_retry(self, prompt: str, validate):
        """Call the provider and validate the reply; parse failures are retried."""
        attempts = 0
        while True:
            attempts += 1
            try:
                return await self._complete_once(prompt, validate)
            except AICategorisationError as e:
                if e.retryable and attempts <= settings.ai_max_retries:
                    logger.info("ai_reply_unparseable_retrying", attempt=attempts)
                    continue
                raise

    async def _complete_once(self, prompt: str, validate):
        completion: Completion = await self.provider.complete(
            prompt, max_tokens=settings.ai_max_tokens, timeout=settings.ai_timeout
        )

        if completion.error == AIErrorKind.RATE_LIMITED:
            raise AICategorisationError(
                "AI rate limit exceeded. Please try again later.", AIErrorKind.RATE_LIMITED
            )
        if completion.error == AIErrorKind.TIMEOUT:
            raise AICategorisationError("AI request timed out", AIErrorKind.TIMEOUT)
        if completion.error is not None:
            raise AICategorisationError(
                f"AI categorisation failed: {completion.detail or 'Unknown error'}",
                completion.error,
            )

        text = completion.text or ""
        try:
            payload = parse_json_reply(text)
        except ValueError:
            raise AICategorisationError(
                f"Failed to parse AI response: {text[:200]}", AIErrorKind.PARSE_ERROR
            )

        try:
            return validate(payload)
        except (ValidationError, TypeError) as e:
            logger.warning("ai_reply_invalid", error=str(e))
            raise AICategorisationError(
                "AI response does not match expected structure", AIErrorKind.INVALID_RESPONSE
            )

    @staticmethod
    def _resolve_category(
        category_id: str,
        category_name: str,
        confidence: float,
        categories: list[CategoryInfo],
    ) -> tuple[str, str, float]:
        """Check the returned id; fall back to a name match, else cap confidence."""
        confidence = max(0.0, min(1.0, confidence))

        by_id = next((c for c in categories if c.id == category_id), None)
        if by_id:
            return by_id.id, by_id.name, confidence

        by_name = next(
            (c for c in categories if c.name.lower() == category_name.strip().lower()),
            None,
        )
        if by_name:
            return by_name.id, by_name.name, confidence

        logger.warning("ai_unknown_category", category_id=category_id, category_name=category_name)
        return category_id, category_name, min(confidence, UNRESOLVED_CATEGORY_MAX_CONFIDENCE)

    @staticmethod
    def _alternatives(payload: list[AIAlternativePayload] | None) -> list[AIAlternative] | None:
        if payload is None:
            return None
        return [
            AIAlternative(
                category_id=alt.category_id,
                category_name=alt.category_name,
                confidence=max(0.0, min(1.0, alt.confidence)),
            )
            for alt in payload[:3]
        ]
