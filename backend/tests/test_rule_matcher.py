"""Rule matcher and TTL cache tests."""

import pytest
from sqlalchemy.exc import OperationalError

from budgetline.core.cache import TTLCache
from budgetline.services.rule_matcher import (
    CachedRule,
    RuleIndex,
    RuleMatcher,
    matches_pattern,
)
from fakes import FakeClock


def _rule(rule_id, pattern, match_type, confidence, category="Groceries"):
    return CachedRule(
        id=rule_id,
        pattern=pattern,
        category_id=f"cat-{category.lower()}",
        category_name=category,
        match_type=match_type,
        confidence=confidence,
    )


class TestRuleIndex:
    def test_exact_beats_higher_confidence_contains(self):
        index = RuleIndex.build([
            _rule("r1", "tesco", "contains", 0.99, "Shopping"),
            _rule("r2", "TESCO STORES 1234", "exact", 0.6, "Groceries"),
        ])
        match = index.match("tesco stores 1234")
        assert match.rule_id == "r2"
        assert match.match_type == "exact"

    def test_exact_match_ignores_case_and_whitespace(self):
        index = RuleIndex.build([_rule("r1", "Netflix.com", "exact", 1.0, "Entertainment")])
        assert index.match_exact("  NETFLIX.COM ").category_name == "Entertainment"
        assert index.match_exact("NETFLIX.COM MONTHLY") is None

    def test_highest_confidence_pattern_wins(self):
        index = RuleIndex.build([
            _rule("high", r"^amazon\b", "regex", 0.9, "Shopping"),
            _rule("mid", "amazon", "contains", 0.8, "Shopping"),
            _rule("low", "prime", "contains", 0.5, "Entertainment"),
        ])
        assert index.match("AMAZON PRIME VIDEO").rule_id == "high"

    def test_equal_confidence_keeps_first_rule(self):
        index = RuleIndex.build([
            _rule("first", "uber", "contains", 0.8, "Transport"),
            _rule("second", "eats", "contains", 0.8, "Eating Out"),
        ])
        assert index.match("UBER EATS").rule_id == "first"

    def test_invalid_regex_is_skipped(self):
        index = RuleIndex.build([
            _rule("bad", "([unclosed", "regex", 0.99),
            _rule("good", "sainsbury", "contains", 0.7),
        ])
        assert len(index.invalid) == 1
        assert index.invalid[0].rule.id == "bad"
        assert index.match("SAINSBURYS ([unclosed").rule_id == "good"

    def test_regex_is_case_insensitive(self):
        index = RuleIndex.build([_rule("r1", r"tfl\.gov", "regex", 0.8, "Transport")])
        assert index.match("TFL.GOV.UK/CP").category_name == "Transport"

    def test_no_rules_no_match(self):
        assert RuleIndex.build([]).match("ANYTHING") is None


class TestMatchesPattern:
    @pytest.mark.parametrize(
        "description,pattern,match_type,expected",
        [
            ("Tesco Stores 1234", "TESCO", "contains", True),
            ("TESCO", "tesco ", "exact", True),
            ("TESCO EXPRESS", "tesco", "exact", False),
            ("SPOTIFY P1234", r"spotify\s+p\d+", "regex", True),
            ("SPOTIFY", "([", "regex", False),
            ("SPOTIFY", "spotify", "fuzzy", False),
        ],
    )
    def test_matches_pattern(self, description, pattern, match_type, expected):
        assert matches_pattern(description, pattern, match_type) is expected


class TestTTLCache:
    @pytest.mark.asyncio
    async def test_refreshes_after_ttl(self):
        clock = FakeClock()
        cache = TTLCache(10.0, clock=clock)
        values = iter([1, 2])

        async def loader():
            return next(values)

        assert await cache.get_or_refresh(loader, 0) == 1
        clock.advance(5)
        assert await cache.get_or_refresh(loader, 0) == 1
        clock.advance(6)
        assert await cache.get_or_refresh(loader, 0) == 2

    @pytest.mark.asyncio
    async def test_serves_stale_value_when_refresh_fails(self):
        clock = FakeClock()
        cache = TTLCache(10.0, clock=clock)

        async def good():
            return "fresh"

        async def broken():
            raise OperationalError("SELECT 1", {}, Exception("connection lost"))

        await cache.get_or_refresh(good, "default")
        clock.advance(60)
        assert await cache.get_or_refresh(broken, "default") == "fresh"

    @pytest.mark.asyncio
    async def test_returns_default_when_nothing_cached(self):
        cache = TTLCache(10.0, clock=FakeClock())

        async def broken():
            raise OperationalError("SELECT 1", {}, Exception("connection lost"))

        assert await cache.get_or_refresh(broken, []) == []
        assert cache.peek() is None


class TestRuleMatcher:
    @pytest.mark.asyncio
    async def test_netflix_exact_rule(self, db, categories, add_rule, fresh_rules_cache):
        await add_rule("NETFLIX.COM", categories["entertainment"], "exact", 1.0)
        matcher = RuleMatcher(db, cache=fresh_rules_cache)

        match = await matcher.match_rule("netflix.com")

        assert match.category_name == "Entertainment"
        assert match.confidence == 1.0
        assert match.match_type == "exact"

    @pytest.mark.asyncio
    async def test_single_refetch_after_clear(self, db, categories, add_rule, fresh_rules_cache):
        await add_rule("tesco", categories["groceries"], "contains", 0.8)
        matcher = RuleMatcher(db, cache=fresh_rules_cache)
        loads = 0
        load_index = matcher._load_index

        async def counting_load():
            nonlocal loads
            loads += 1
            return await load_index()

        matcher._load_index = counting_load
        matcher.clear_rules_cache()

        first = await matcher.match_rule("TESCO STORES 1234")
        second = await matcher.match_rule("TESCO STORES 1234")

        assert first == second
        assert loads == 1

    @pytest.mark.asyncio
    async def test_cached_rules_hide_new_rule_until_cleared(
        self, db, categories, add_rule, fresh_rules_cache
    ):
        matcher = RuleMatcher(db, cache=fresh_rules_cache)
        assert await matcher.match_rule("GREGGS 123") is None

        await add_rule("greggs", categories["eating_out"], "contains", 0.85)
        assert await matcher.match_rule("GREGGS 123") is None

        matcher.clear_rules_cache()
        assert (await matcher.match_rule("GREGGS 123")).category_name == "Eating Out"

    @pytest.mark.asyncio
    async def test_cache_expires(self, db, categories, add_rule, clock, fresh_rules_cache):
        matcher = RuleMatcher(db, cache=fresh_rules_cache)
        await matcher.get_index()
        await add_rule("trainline", categories["transport"], "contains", 0.85)

        clock.advance(301)

        assert (await matcher.match_rule("TRAINLINE.COM")).category_name == "Transport"

    @pytest.mark.asyncio
    async def test_batch_uses_one_snapshot(self, db, categories, add_rule, fresh_rules_cache):
        await add_rule("NETFLIX.COM", categories["entertainment"], "exact", 1.0)
        await add_rule(r"^tfl", categories["transport"], "regex", 0.8)
        await add_rule("([", categories["transport"], "regex", 0.95)
        matcher = RuleMatcher(db, cache=fresh_rules_cache)

        matches = await matcher.match_rules_batch(["netflix.com", "TFL TRAVEL", "UNKNOWN SHOP"])

        assert matches[0].match_type == "exact"
        assert matches[1].category_name == "Transport"
        assert matches[2] is None
        assert len((await matcher.get_index()).invalid) == 1
