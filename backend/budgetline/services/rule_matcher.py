"""Rule matcher.

Matches transaction descriptions against ``category_mappings`` rules.
Exact rules are checked first; contains and regex rules compete on
confidence. Rules are held in a process-wide TTL cache as an immutable
``RuleIndex`` snapshot, so regexes are compiled once per refresh.
"""

import re
from dataclasses import dataclass, field

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetline.core.cache import TTLCache, rules_cache
from budgetline.models.category import Category
from budgetline.models.category_mapping import CategoryMapping

logger = structlog.get_logger()


@dataclass(frozen=True)
class CachedRule:
    id: str
    pattern: str
    category_id: str
    category_name: str
    match_type: str
    confidence: float


@dataclass(frozen=True)
class RuleMatch:
    rule_id: str
    category_id: str
    category_name: str
    pattern: str
    match_type: str
    confidence: float

    @classmethod
    def from_rule(cls, rule: CachedRule) -> "RuleMatch":
        return cls(
            rule_id=rule.id,
            category_id=rule.category_id,
            category_name=rule.category_name,
            pattern=rule.pattern,
            match_type=rule.match_type,
            confidence=rule.confidence,
        )


@dataclass(frozen=True)
class CompiledPattern:
    """Outcome of compiling a regex rule: either ``regex`` or ``error`` is set."""
    rule: CachedRule
    regex: re.Pattern | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.regex is not None


def normalise(text: str) -> str:
    return text.lower().strip()


def compile_rule_pattern(rule: CachedRule) -> CompiledPattern:
    try:
        return CompiledPattern(rule=rule, regex=re.compile(rule.pattern, re.IGNORECASE))
    except re.error as e:
        return CompiledPattern(rule=rule, error=str(e))


def matches_pattern(description: str, pattern: str, match_type: str) -> bool:
    """Check a single description against a pattern, outside of any index.

    Used for dry runs; an uncompilable regex simply never matches.
    """
    if match_type == "exact":
        return normalise(description) == normalise(pattern)
    if match_type == "contains":
        return normalise(pattern) in normalise(description)
    if match_type == "regex":
        try:
            return re.search(pattern, description, re.IGNORECASE) is not None
        except re.error:
            return False
    return False


@dataclass
class RuleIndex:
    """Rules partitioned by match type, regexes pre-compiled.

    Input rules must already be ordered by descending confidence.
    """
    exact: list[CachedRule] = field(default_factory=list)
    # contains rules and compiled regex rules, in descending confidence order
    patterns: list[tuple[CachedRule, re.Pattern | None]] = field(default_factory=list)
    invalid: list[CompiledPattern] = field(default_factory=list)

    @classmethod
    def build(cls, rules: list[CachedRule]) -> "RuleIndex":
        index = cls()
        for rule in rules:
            if rule.match_type == "exact":
                index.exact.append(rule)
            elif rule.match_type == "contains":
                index.patterns.append((rule, None))
            elif rule.match_type == "regex":
                compiled = compile_rule_pattern(rule)
                if compiled.ok:
                    index.patterns.append((rule, compiled.regex))
                else:
                    logger.warning(
                        "invalid_regex_rule",
                        rule_id=rule.id,
                        pattern=rule.pattern,
                        error=compiled.error,
                    )
                    index.invalid.append(compiled)
        return index

    def __len__(self) -> int:
        return len(self.exact) + len(self.patterns)

    def match_exact(self, description: str) -> RuleMatch | None:
        normalised = normalise(description)
        for rule in self.exact:
            if normalised == normalise(rule.pattern):
                return RuleMatch.from_rule(rule)
        return None

    def match_pattern(self, description: str) -> RuleMatch | None:
        """Best contains/regex match by confidence; ties go to the earlier rule."""
        normalised = normalise(description)
        best: CachedRule | None = None
        for rule, regex in self.patterns:
            if regex is None:
                is_match = normalise(rule.pattern) in normalised
            else:
                is_match = regex.search(description) is not None
            if is_match and (best is None or rule.confidence > best.confidence):
                best = rule
        return RuleMatch.from_rule(best) if best else None

    def match(self, description: str) -> RuleMatch | None:
        return self.match_exact(description) or self.match_pattern(description)


class RuleMatcher:
    """Matches descriptions against the cached rule index."""

    def __init__(self, db: AsyncSession, cache: TTLCache | None = None):
        self.db = db
        self.cache = cache if cache is not None else rules_cache

    async def get_index(self) -> RuleIndex:
        return await self.cache.get_or_refresh(self._load_index, RuleIndex())

    def clear_rules_cache(self) -> None:
        self.cache.invalidate()

    async def match_exact_rule(self, description: str) -> RuleMatch | None:
        index = await self.get_index()
        return index.match_exact(description)

    async def match_pattern_rule(self, description: str) -> RuleMatch | None:
        index = await self.get_index()
        return index.match_pattern(description)

    async def match_rule(self, description: str) -> RuleMatch | None:
        """Match against all rules: exact first, then the best pattern rule."""
        index = await self.get_index()
        return index.match(description)

    async def match_rules_batch(self, descriptions: list[str]) -> dict[int, RuleMatch | None]:
        """Match many descriptions against one index snapshot."""
        index = await self.get_index()
        return {i: index.match(description) for i, description in enumerate(descriptions)}

    async def _load_index(self) -> RuleIndex:
        result = await self.db.execute(
            select(
                CategoryMapping.id,
                CategoryMapping.pattern,
                CategoryMapping.category_id,
                CategoryMapping.match_type,
                CategoryMapping.confidence,
                Category.name,
            )
            .outerjoin(Category, Category.id == CategoryMapping.category_id)
            .order_by(CategoryMapping.confidence.desc())
        )
        rules = [
            CachedRule(
                id=row.id,
                pattern=row.pattern,
                category_id=row.category_id,
                category_name=row.name or "Unknown",
                match_type=row.match_type,
                confidence=float(row.confidence),
            )
            for row in result.all()
        ]
        index = RuleIndex.build(rules)
        logger.info("rules_cache_refreshed", rules=len(rules), invalid=len(index.invalid))
        return index


def clear_rules_cache() -> None:
    """Invalidate the process-wide rule cache."""
    rules_cache.invalidate()
