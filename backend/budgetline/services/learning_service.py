"""Correction learning loop.

Records user overrides of automatic categorisations and mines the
unprocessed ones for repeated patterns that could become rules:

1. Same description corrected to the same category N+ times
   -> ``exact`` (or ``contains`` when the spellings differ)
2. Words / two-word phrases shared by most corrections of a category
   -> ``contains``

Accepted suggestions are turned into rules by ``RuleService``; the
contributing corrections are then stamped and drop out of the analysis.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from budgetline.config import settings
from budgetline.models.category import Category
from budgetline.models.category_correction import CategoryCorrection
from budgetline.schemas.correction import CorrectionCreate, PatternSuggestion

logger = structlog.get_logger()

RECENT_CORRECTIONS = 10
EXACT_BASE_CONFIDENCE = 0.85
EXACT_MAX_CONFIDENCE = 0.95
CONTAINS_BASE_CONFIDENCE = 0.80
CONTAINS_MAX_CONFIDENCE = 0.90
CONFIDENCE_STEP = 0.02
MIN_SHARE_OF_CATEGORY = 0.5

PHRASE_STOPWORDS = frozenset({
    "the", "and", "for", "ref", "gbp", "usd", "eur",
    "payment", "card", "debit", "credit",
})

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")

# trimmed identically in Python and in SQL TRIM(col, chars)
DESCRIPTION_WHITESPACE = " \t\n\r\f\v"


@dataclass
class CommonPhrase:
    pattern: str
    count: int
    samples: list[str] = field(default_factory=list)
    correction_ids: list[str] = field(default_factory=list)


def normalise_description(description: str) -> str:
    return description.lower().strip(DESCRIPTION_WHITESPACE)


def normalised_description_column():
    """SQL counterpart of ``normalise_description``."""
    return func.lower(func.trim(CategoryCorrection.description, DESCRIPTION_WHITESPACE))


def suggestion_confidence(count: int, match_type: str, min_count: int | None = None) -> float:
    """Confidence grows with the number of corrections, up to a cap."""
    min_count = min_count or settings.learning_min_corrections
    if match_type == "exact":
        base, cap = EXACT_BASE_CONFIDENCE, EXACT_MAX_CONFIDENCE
    else:
        base, cap = CONTAINS_BASE_CONFIDENCE, CONTAINS_MAX_CONFIDENCE
    return min(cap, base + CONFIDENCE_STEP * (count - min_count))


def _phrase_words(description: str) -> list[str]:
    cleaned = _NON_ALNUM.sub(" ", description.lower())
    return [w for w in cleaned.split() if len(w) >= 3 and w not in PHRASE_STOPWORDS]


def find_common_phrases(corrections: list[dict], min_count: int, max_samples: int) -> list[CommonPhrase]:
    """Words and two-word phrases present in enough of ``corrections``.

    A phrase counts once per description and must appear in at least
    ``min_count`` descriptions and half of them.
    """
    if len(corrections) < min_count:
        return []

    phrases: dict[str, CommonPhrase] = {}
    for correction in corrections:
        normalised = normalise_description(correction["description"])
        words = _phrase_words(correction["description"])
        candidates = words + [f"{a} {b}" for a, b in zip(words, words[1:])]

        seen: set[str] = set()
        for candidate in candidates:
            # a phrase must survive as a literal substring to work as a contains rule
            if candidate in seen or candidate not in normalised:
                continue
            seen.add(candidate)
            phrase = phrases.setdefault(candidate, CommonPhrase(pattern=candidate, count=0))
            phrase.count += 1
            phrase.correction_ids.append(correction["id"])
            if len(phrase.samples) < max_samples:
                phrase.samples.append(correction["description"])

    common = [
        p for p in phrases.values()
        if p.count >= min_count and p.count >= len(corrections) * MIN_SHARE_OF_CATEGORY
    ]
    return sorted(common, key=lambda p: (-p.count, -len(p.pattern)))


def find_patterns(
    corrections: list[dict],
    min_count: int | None = None,
    max_samples: int | None = None,
) -> list[PatternSuggestion]:
    """Turn a list of correction dicts into rule suggestions, strongest first."""
    min_count = min_count or settings.learning_min_corrections
    max_samples = max_samples or settings.learning_max_samples

    by_description: dict[str, list[dict]] = {}
    by_pair: dict[tuple[str, str], list[dict]] = {}
    by_category: dict[str, list[dict]] = {}
    for c in corrections:
        key = normalise_description(c["description"])
        by_description.setdefault(key, []).append(c)
        by_pair.setdefault((key, c["corrected_category_id"]), []).append(c)
        by_category.setdefault(c["corrected_category_id"], []).append(c)

    suggestions: list[PatternSuggestion] = []

    # Pass 1: repeated descriptions
    for (key, category_id), group in by_pair.items():
        if len(group) < min_count:
            continue
        verbatim = len({c["description"] for c in group}) == 1
        match_type = "exact" if verbatim else "contains"
        consistency = len(group) / len(by_description[key])
        suggestions.append(
            PatternSuggestion(
                pattern=group[0]["description"].strip(DESCRIPTION_WHITESPACE),
                match_type=match_type,
                category_id=category_id,
                category_name=group[0].get("corrected_category_name") or "Unknown",
                correction_count=len(group),
                confidence=suggestion_confidence(len(group), match_type, min_count) * consistency,
                sample_descriptions=[c["description"] for c in group[:max_samples]],
                correction_ids=[c["id"] for c in group],
            )
        )

    # Pass 2: shared words and phrases within a category
    for category_id, group in by_category.items():
        for phrase in find_common_phrases(group, min_count, max_samples):
            covered = any(
                s.category_id == category_id and phrase.pattern in s.pattern.lower()
                for s in suggestions
            )
            if covered:
                continue
            suggestions.append(
                PatternSuggestion(
                    pattern=phrase.pattern,
                    match_type="contains",
                    category_id=category_id,
                    category_name=group[0].get("corrected_category_name") or "Unknown",
                    correction_count=phrase.count,
                    confidence=suggestion_confidence(phrase.count, "contains", min_count),
                    sample_descriptions=phrase.samples,
                    correction_ids=phrase.correction_ids,
                )
            )

    return sorted(suggestions, key=lambda s: s.correction_count, reverse=True)


class LearningService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Recording ──────────────────────────────────

    async def record_correction(self, data: CorrectionCreate) -> dict | None:
        correction = CategoryCorrection(**data.model_dump())
        try:
            async with self.db.begin_nested():
                self.db.add(correction)
                await self.db.flush()
        except SQLAlchemyError as e:
            logger.error("correction_record_failed", error=str(e))
            return None
        logger.info(
            "correction_recorded",
            correction_id=correction.id,
            corrected_category_id=correction.corrected_category_id,
        )
        return {"id": correction.id}

    async def record_corrections_batch(self, items: list[CorrectionCreate]) -> dict:
        """Insert all corrections in one savepoint; it is all or nothing."""
        if not items:
            return {"recorded": 0, "failed": 0}

        corrections = [CategoryCorrection(**item.model_dump()) for item in items]
        try:
            async with self.db.begin_nested():
                self.db.add_all(corrections)
                await self.db.flush()
        except SQLAlchemyError as e:
            logger.error("correction_batch_failed", size=len(items), error=str(e))
            return {"recorded": 0, "failed": len(items)}

        logger.info("correction_batch_recorded", size=len(corrections))
        return {"recorded": len(corrections), "failed": 0}

    # ── Queries ────────────────────────────────────

    async def get_corrections(self, limit: int = 50, include_processed: bool = False) -> list[dict]:
        query = self._correction_query()
        if not include_processed:
            query = query.where(CategoryCorrection.processed.is_(False))
        result = await self.db.execute(query.limit(limit))
        return [self._correction_to_dict(*row) for row in result.all()]

    async def get_corrections_for_description(self, description: str) -> list[dict]:
        """Unprocessed corrections whose description matches, ignoring case."""
        key = normalise_description(description)
        result = await self.db.execute(
            self._correction_query().where(
                CategoryCorrection.processed.is_(False),
                normalised_description_column() == key,
            )
        )
        return [self._correction_to_dict(*row) for row in result.all()]

    # ── Analysis ───────────────────────────────────

    async def analyse_corrections(self) -> dict:
        """Suggest rules from unprocessed corrections in the lookback window."""
        try:
            result = await self.db.execute(
                self._correction_query().where(
                    CategoryCorrection.processed.is_(False),
                    CategoryCorrection.created_at >= self._cutoff(),
                )
            )
        except SQLAlchemyError as e:
            logger.error("correction_fetch_failed", error=str(e))
            return {"suggestions": [], "total_corrections": 0, "recent_corrections": []}

        corrections = [self._correction_to_dict(*row) for row in result.all()]
        suggestions = find_patterns(corrections)
        logger.info(
            "corrections_analysed",
            corrections=len(corrections),
            suggestions=len(suggestions),
        )
        return {
            "suggestions": suggestions,
            "total_corrections": len(corrections),
            "recent_corrections": corrections[:RECENT_CORRECTIONS],
        }

    async def check_for_suggestions(self) -> dict:
        """Count what ``analyse_corrections`` would suggest.

        A suggestion never spans categories, so only categories holding at
        least the minimum number of corrections are fetched, and only their
        id/description columns.
        """
        min_count = settings.learning_min_corrections
        window = (
            CategoryCorrection.processed.is_(False),
            CategoryCorrection.created_at >= self._cutoff(),
        )
        try:
            candidates = (
                await self.db.execute(
                    select(CategoryCorrection.corrected_category_id)
                    .where(*window)
                    .group_by(CategoryCorrection.corrected_category_id)
                    .having(func.count(CategoryCorrection.id) >= min_count)
                )
            ).scalars().all()
            rows = []
            if candidates:
                result = await self.db.execute(
                    select(
                        CategoryCorrection.id,
                        CategoryCorrection.description,
                        CategoryCorrection.corrected_category_id,
                    )
                    .where(*window, CategoryCorrection.corrected_category_id.in_(candidates))
                    .order_by(CategoryCorrection.created_at.desc())
                )
                rows = result.all()
        except SQLAlchemyError as e:
            logger.error("suggestion_check_failed", error=str(e))
            return {"has_suggestions": False, "count": 0}

        corrections = [
            {"id": r.id, "description": r.description, "corrected_category_id": r.corrected_category_id}
            for r in rows
        ]
        count = len(find_patterns(corrections, min_count))
        return {"has_suggestions": count > 0, "count": count}

    async def mark_corrections_as_processed(self, correction_ids: list[str], rule_id: str) -> bool:
        if not correction_ids:
            return True
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    update(CategoryCorrection)
                    .where(CategoryCorrection.id.in_(correction_ids))
                    .values(processed=True, created_rule_id=rule_id)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            logger.error("corrections_mark_failed", rule_id=rule_id, error=str(e))
            return False
        logger.info("corrections_processed", rule_id=rule_id, count=len(correction_ids))
        return True

    # ── Helpers ────────────────────────────────────

    @staticmethod
    def _cutoff() -> datetime:
        return datetime.now(timezone.utc) - timedelta(days=settings.learning_lookback_days)

    @staticmethod
    def _correction_query():
        corrected = aliased(Category)
        original = aliased(Category)
        return (
            select(CategoryCorrection, corrected.name, original.name)
            .outerjoin(corrected, corrected.id == CategoryCorrection.corrected_category_id)
            .outerjoin(original, original.id == CategoryCorrection.original_category_id)
            .order_by(CategoryCorrection.created_at.desc())
        )

    @staticmethod
    def _correction_to_dict(
        c: CategoryCorrection, corrected_name: str | None, original_name: str | None
    ) -> dict:
        return {
            "id": c.id,
            "description": c.description,
            "original_category_id": c.original_category_id,
            "original_category_name": original_name,
            "corrected_category_id": c.corrected_category_id,
            "corrected_category_name": corrected_name,
            "original_source": c.original_source,
            "import_session_id": c.import_session_id,
            "processed": c.processed,
            "created_rule_id": c.created_rule_id,
            "created_at": c.created_at,
        }
