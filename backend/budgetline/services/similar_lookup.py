"""Similar transaction lookup.

Finds already-categorised transactions whose description resembles a new
one. PostgreSQL's pg_trgm does the work through the
``find_similar_transactions`` SQL function; when that is unavailable a
token-overlap score is computed in Python over recent history.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetline.config import settings
from budgetline.models.category import Category
from budgetline.models.transaction import Transaction

logger = structlog.get_logger()

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "as", "is", "was", "are", "were", "been", "be",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "dare", "ought",
    "used",
    # banking boilerplate
    "payment", "direct", "debit", "credit", "transfer", "ref", "reference",
    "card", "visa", "mastercard", "ltd", "limited", "plc", "inc", "co", "uk",
    "com", "www",
})

MAX_TOKENS = 10
MIN_TOKEN_LENGTH = 3

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


class TrigramUnavailableError(Exception):
    """The store cannot run the trigram similarity function."""


@dataclass(frozen=True)
class SimilarMatch:
    transaction_id: str
    description: str
    category_id: str
    category_name: str
    similarity: float
    date: date


@dataclass(frozen=True)
class CategoryConsensus:
    category_id: str
    category_name: str
    count: int
    avg_similarity: float


def extract_tokens(description: str) -> list[str]:
    """Lowercased, punctuation-free tokens without stop words (first 10)."""
    cleaned = _NON_ALNUM.sub(" ", description.lower())
    tokens = [
        token for token in cleaned.split()
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOPWORDS
    ]
    return tokens[:MAX_TOKENS]


def token_similarity(tokens1: Iterable[str], tokens2: Iterable[str]) -> float:
    """Weighted overlap: exact token matches count double, substring matches once."""
    set1 = set(tokens1)
    set2 = set(tokens2)
    if not set1 or not set2:
        return 0.0

    exact_matches = 0
    partial_matches = 0
    for token in set1:
        if token in set2:
            exact_matches += 1
        elif any(token in other or other in token for other in set2):
            partial_matches += 1

    score = (exact_matches * 2 + partial_matches) / (len(set1) + len(set2))
    return min(1.0, score)


def is_similar_enough(score: float, threshold: float | None = None) -> bool:
    """Inclusive threshold check."""
    limit = settings.similarity_min_score if threshold is None else threshold
    return score >= limit


def get_most_common_category(matches: list[SimilarMatch]) -> CategoryConsensus | None:
    """Category shared by most matches; ties go to the higher average similarity."""
    if not matches:
        return None

    groups: dict[str, dict] = {}
    for match in matches:
        group = groups.setdefault(
            match.category_id,
            {"category_name": match.category_name, "count": 0, "total": 0.0},
        )
        group["count"] += 1
        group["total"] += match.similarity

    best: CategoryConsensus | None = None
    for category_id, group in groups.items():
        avg = group["total"] / group["count"]
        if (
            best is None
            or group["count"] > best.count
            or (group["count"] == best.count and avg > best.avg_similarity)
        ):
            best = CategoryConsensus(
                category_id=category_id,
                category_name=group["category_name"],
                count=group["count"],
                avg_similarity=avg,
            )
    return best


class SimilarLookupService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_similar_transactions(
        self, description: str, limit: int | None = None
    ) -> list[SimilarMatch]:
        """Categorised transactions resembling ``description``, best first."""
        limit = limit or settings.similarity_max_results
        try:
            return await self._find_by_trigram(description, limit)
        except (SQLAlchemyError, TrigramUnavailableError) as e:
            logger.warning("trigram_lookup_unavailable", error=str(e))
            return await self._find_by_tokens(description, limit)

    async def find_similar_batch(
        self, descriptions: list[str], limit: int = 3
    ) -> dict[int, list[SimilarMatch]]:
        """One lookup per description, issued sequentially."""
        results: dict[int, list[SimilarMatch]] = {}
        for i, description in enumerate(descriptions):
            results[i] = await self.find_similar_transactions(description, limit)
        return results

    async def _find_by_trigram(self, description: str, limit: int) -> list[SimilarMatch]:
        bind = self.db.get_bind()
        if bind.dialect.name != "postgresql":
            raise TrigramUnavailableError(f"pg_trgm not available on {bind.dialect.name}")

        # A failed statement must not poison the request transaction
        async with self.db.begin_nested():
            result = await self.db.execute(
                text(
                    "SELECT id, description, category_id, category_name, similarity, date "
                    "FROM find_similar_transactions(:search_description, :min_similarity, :max_results)"
                ),
                {
                    "search_description": description,
                    "min_similarity": settings.similarity_min_score,
                    "max_results": limit,
                },
            )
            rows = result.mappings().all()

        return [
            SimilarMatch(
                transaction_id=str(row["id"]),
                description=row["description"],
                category_id=str(row["category_id"]),
                category_name=row["category_name"],
                similarity=float(row["similarity"]),
                date=row["date"],
            )
            for row in rows
        ]

    async def _find_by_tokens(self, description: str, limit: int) -> list[SimilarMatch]:
        tokens = extract_tokens(description)
        if not tokens:
            return []

        try:
            result = await self.db.execute(
                select(
                    Transaction.id,
                    Transaction.description,
                    Transaction.category_id,
                    Transaction.date,
                    Category.name,
                )
                .outerjoin(Category, Category.id == Transaction.category_id)
                .where(Transaction.category_id.is_not(None))
                .order_by(Transaction.date.desc())
                .limit(settings.similarity_candidate_pool)
            )
            rows = result.all()
        except SQLAlchemyError as e:
            logger.error("similarity_candidates_fetch_failed", error=str(e))
            return []

        scored = []
        for row in rows:
            score = token_similarity(tokens, extract_tokens(row.description))
            if not is_similar_enough(score):
                continue
            scored.append(
                SimilarMatch(
                    transaction_id=row.id,
                    description=row.description,
                    category_id=row.category_id,
                    category_name=row.name or "Unknown",
                    similarity=score,
                    date=row.date,
                )
            )

        scored.sort(key=lambda m: m.similarity, reverse=True)
        return scored[:limit]
