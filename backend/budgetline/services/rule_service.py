"""Category rule management service.

CRUD over ``category_mappings``, dry-run testing of a pattern against recent
transactions, and rule statistics. Every successful write invalidates the
rule matcher's cache. Write failures are reported as ``None``/``False``.
"""

from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetline.core.cache import TTLCache, rules_cache
from budgetline.models.category import Category
from budgetline.models.category_mapping import CategoryMapping
from budgetline.models.transaction import Transaction
from budgetline.schemas.correction import PatternSuggestion
from budgetline.schemas.rule import RuleCreate, RuleUpdate
from budgetline.services.learning_service import LearningService
from budgetline.services.rule_matcher import matches_pattern, normalise

logger = structlog.get_logger()

RULE_TEST_SAMPLE_SIZE = 1000
RECENT_RULE_DAYS = 30


class RuleService:
    def __init__(self, db: AsyncSession, cache: TTLCache | None = None):
        self.db = db
        self.cache = cache if cache is not None else rules_cache

    # ── Queries ────────────────────────────────────────

    async def get_rules(
        self,
        is_system: bool | None = None,
        category_id: str | None = None,
    ) -> list[dict]:
        """List rules with their category, newest first."""
        query = select(CategoryMapping, Category).outerjoin(
            Category, Category.id == CategoryMapping.category_id
        )
        if is_system is not None:
            query = query.where(CategoryMapping.is_system.is_(is_system))
        if category_id:
            query = query.where(CategoryMapping.category_id == category_id)

        try:
            result = await self.db.execute(query.order_by(CategoryMapping.created_at.desc()))
        except SQLAlchemyError as e:
            logger.error("rules_fetch_failed", error=str(e))
            return []
        return [self._rule_to_dict(rule, cat) for rule, cat in result.all()]

    async def get_rule(self, rule_id: str) -> dict | None:
        rule = await self._get_mapping(rule_id)
        if not rule:
            return None
        cat = await self.db.get(Category, rule.category_id)
        return self._rule_to_dict(rule, cat)

    async def check_pattern_exists(self, pattern: str, match_type: str) -> dict | None:
        """Find a rule of ``match_type`` with the same pattern, ignoring case."""
        normalised = normalise(pattern)
        result = await self.db.execute(
            select(CategoryMapping, Category)
            .outerjoin(Category, Category.id == CategoryMapping.category_id)
            .where(CategoryMapping.match_type == match_type)
        )
        for rule, cat in result.all():
            if normalise(rule.pattern) == normalised:
                return self._rule_to_dict(rule, cat)
        return None

    # ── CRUD ───────────────────────────────────────────

    async def create_rule(self, data: RuleCreate) -> dict | None:
        """Create a rule. Returns ``None`` if the store rejects it."""
        rule = CategoryMapping(
            pattern=data.pattern,
            category_id=data.category_id,
            match_type=data.match_type,
            confidence=data.confidence,
            is_system=data.is_system,
            notes=data.notes,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(rule)
                await self.db.flush()
        except SQLAlchemyError as e:
            logger.error("rule_create_failed", pattern=data.pattern, error=str(e))
            return None

        self.cache.invalidate()
        logger.info("rule_created", rule_id=rule.id, match_type=rule.match_type)
        cat = await self.db.get(Category, rule.category_id)
        return self._rule_to_dict(rule, cat)

    async def create_rule_from_suggestion(
        self,
        suggestion: PatternSuggestion,
        correction_ids: list[str] | None = None,
        notes: str | None = None,
    ) -> dict | None:
        """Promote a correction pattern into a rule and retire its corrections."""
        rule = await self.create_rule(
            RuleCreate(
                pattern=suggestion.pattern,
                category_id=suggestion.category_id,
                match_type=suggestion.match_type,
                confidence=suggestion.confidence,
                notes=notes or f"Created from {suggestion.correction_count} user corrections",
            )
        )
        ids = correction_ids if correction_ids is not None else suggestion.correction_ids
        if rule and ids:
            await LearningService(self.db).mark_corrections_as_processed(ids, rule["id"])
        return rule

    async def update_rule(self, rule_id: str, data: RuleUpdate) -> dict | None:
        """Update a rule. Returns ``None`` if it is missing or the write fails."""
        update_data = data.model_dump(exclude_unset=True)
        if not update_data:
            return await self.get_rule(rule_id)

        rule = await self._get_mapping(rule_id)
        if not rule:
            return None

        try:
            async with self.db.begin_nested():
                for key, value in update_data.items():
                    setattr(rule, key, value)
                await self.db.flush()
        except SQLAlchemyError as e:
            logger.error("rule_update_failed", rule_id=rule_id, error=str(e))
            return None

        self.cache.invalidate()
        cat = await self.db.get(Category, rule.category_id)
        return self._rule_to_dict(rule, cat)

    async def delete_rule(self, rule_id: str) -> bool:
        """Delete a user rule. System rules are never deleted."""
        rule = await self._get_mapping(rule_id)
        if not rule:
            logger.warning("rule_delete_missing", rule_id=rule_id)
            return False
        if rule.is_system:
            logger.warning("rule_delete_refused_system", rule_id=rule_id)
            return False

        try:
            async with self.db.begin_nested():
                await self.db.delete(rule)
                await self.db.flush()
        except SQLAlchemyError as e:
            logger.error("rule_delete_failed", rule_id=rule_id, error=str(e))
            return False

        self.cache.invalidate()
        logger.info("rule_deleted", rule_id=rule_id)
        return True

    # ── Dry run ────────────────────────────────────────

    async def test_rule(
        self,
        pattern: str,
        match_type: str,
        category_id: str,
        limit: int = 50,
    ) -> dict:
        """Preview which recent transactions a rule would match.

        ``would_change`` counts matches currently filed under another category.
        """
        try:
            result = await self.db.execute(
                select(Transaction, Category.name)
                .outerjoin(Category, Category.id == Transaction.category_id)
                .order_by(Transaction.date.desc())
                .limit(RULE_TEST_SAMPLE_SIZE)
            )
            rows = result.all()
        except SQLAlchemyError as e:
            logger.error("rule_test_fetch_failed", error=str(e))
            return {"total_matched": 0, "transactions": [], "would_change": 0}

        matched = []
        would_change = 0
        for txn, category_name in rows:
            if not matches_pattern(txn.description or "", pattern, match_type):
                continue
            matched.append({
                "id": txn.id,
                "date": txn.date,
                "description": txn.description,
                "amount": txn.amount,
                "current_category_id": txn.category_id,
                "current_category_name": category_name,
            })
            if txn.category_id != category_id:
                would_change += 1

        return {
            "total_matched": len(matched),
            "transactions": matched[:limit],
            "would_change": would_change,
        }

    # ── Statistics ─────────────────────────────────────

    async def get_rule_stats(self) -> dict:
        rules = await self.get_rules()
        cutoff = datetime.now(timezone.utc) - timedelta(days=RECENT_RULE_DAYS)

        by_match_type: dict[str, int] = {}
        system_rules = 0
        recently_created = 0
        for rule in rules:
            by_match_type[rule["match_type"]] = by_match_type.get(rule["match_type"], 0) + 1
            if rule["is_system"]:
                system_rules += 1
            created_at = rule["created_at"]
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            if created_at > cutoff:
                recently_created += 1

        return {
            "total": len(rules),
            "by_match_type": by_match_type,
            "system_rules": system_rules,
            "user_rules": len(rules) - system_rules,
            "recently_created": recently_created,
        }

    # ── Helpers ─────────────────────────────────────────

    async def _get_mapping(self, rule_id: str) -> CategoryMapping | None:
        result = await self.db.execute(
            select(CategoryMapping).where(CategoryMapping.id == rule_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _rule_to_dict(rule: CategoryMapping, cat: Category | None) -> dict:
        return {
            "id": rule.id,
            "pattern": rule.pattern,
            "category_id": rule.category_id,
            "category_name": cat.name if cat else None,
            "category_group": cat.group_name if cat else None,
            "match_type": rule.match_type,
            "confidence": float(rule.confidence),
            "is_system": rule.is_system,
            "notes": rule.notes,
            "created_at": rule.created_at,
        }
