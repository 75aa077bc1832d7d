"""AI categoriser tests against a scripted provider."""

import json
from datetime import date

import pytest

from budgetline.config import settings
from budgetline.services.ai_categoriser import (
    AICategorisationError,
    AICategoriser,
    AIUsageTracker,
)
from budgetline.services.categorise_prompts import (
    TransactionForCategorisation,
    format_amount,
    parse_json_reply,
)
from budgetline.services.llm_provider import AIErrorKind, Completion
from fakes import FakeProvider


def _tx(description="PRET A MANGER", amount=-4.5):
    return TransactionForCategorisation(date="2026-03-01", description=description, amount=amount)


def _single_reply(category_id="cat-eating-out", name="Eating Out", confidence=0.9, **extra):
    payload = {
        "categoryId": category_id,
        "categoryName": name,
        "confidence": confidence,
        "reasoning": "Coffee shop chain",
    }
    payload.update(extra)
    return json.dumps(payload)


class TestPromptHelpers:
    def test_format_amount(self):
        assert format_amount(-12.5) == "-£12.50"
        assert format_amount(1500) == "+£1500.00"

    def test_parse_strips_code_fences(self):
        assert parse_json_reply('```json\n{"a": 1}\n```') == {"a": 1}
        assert parse_json_reply('```\n[1, 2]\n```') == [1, 2]

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_json_reply("I think this is groceries")


class TestSingle:
    @pytest.mark.asyncio
    async def test_success_tracks_usage(self, db, categories):
        provider = FakeProvider([f"```json\n{_single_reply()}\n```"])
        ai = AICategoriser(db, provider=provider)

        result = await ai.categorise_with_ai(_tx())

        assert result.category_id == "cat-eating-out"
        assert result.category_name == "Eating Out"
        assert result.confidence == 0.9
        assert await ai.usage.get_used() == 1

    @pytest.mark.asyncio
    async def test_prompt_lists_taxonomy(self, db, categories):
        provider = FakeProvider([_single_reply()])
        await AICategoriser(db, provider=provider).categorise_with_ai(_tx())

        prompt = provider.prompts[0]
        assert "Salary (id: cat-salary) [INCOME]" in prompt
        assert "Groceries (id: cat-groceries)" in prompt
        assert "-£4.50 (expense)" in prompt

    @pytest.mark.asyncio
    async def test_falls_back_to_category_name(self, db, categories):
        provider = FakeProvider([_single_reply(category_id=999, name=" groceries ")])

        result = await AICategoriser(db, provider=provider).categorise_with_ai(_tx())

        assert result.category_id == "cat-groceries"
        assert result.category_name == "Groceries"

    @pytest.mark.asyncio
    async def test_unknown_category_caps_confidence(self, db, categories):
        provider = FakeProvider([_single_reply(category_id="nope", name="Gadgets", confidence=0.95)])

        result = await AICategoriser(db, provider=provider).categorise_with_ai(_tx())

        assert result.category_id == "nope"
        assert result.confidence == 0.3

    @pytest.mark.asyncio
    async def test_alternatives_are_kept(self, db, categories):
        alternatives = [
            {"categoryId": "cat-groceries", "categoryName": "Groceries", "confidence": 0.4},
        ]
        provider = FakeProvider([_single_reply(alternatives=alternatives)])

        result = await AICategoriser(db, provider=provider).categorise_with_ai(_tx())

        assert result.alternatives[0].category_id == "cat-groceries"

    @pytest.mark.asyncio
    async def test_parse_error_is_retried_once(self, db, categories):
        provider = FakeProvider(["not json at all", _single_reply()])

        result = await AICategoriser(db, provider=provider).categorise_with_ai(_tx())

        assert result.category_id == "cat-eating-out"
        assert len(provider.prompts) == 2

    @pytest.mark.asyncio
    async def test_parse_error_after_retry_is_raised(self, db, categories):
        provider = FakeProvider(["nope", "still nope", _single_reply()])
        ai = AICategoriser(db, provider=provider)

        with pytest.raises(AICategorisationError) as exc_info:
            await ai.categorise_with_ai(_tx())

        assert exc_info.value.kind == AIErrorKind.PARSE_ERROR
        assert len(provider.prompts) == 2
        assert await ai.usage.get_used() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [AIErrorKind.RATE_LIMITED, AIErrorKind.TIMEOUT, AIErrorKind.API_ERROR])
    async def test_provider_errors_are_not_retried(self, db, categories, kind):
        provider = FakeProvider([Completion.failed(kind, "boom"), _single_reply()])

        with pytest.raises(AICategorisationError) as exc_info:
            await AICategoriser(db, provider=provider).categorise_with_ai(_tx())

        assert exc_info.value.kind == kind
        assert len(provider.prompts) == 1

    @pytest.mark.asyncio
    async def test_missing_fields_are_invalid(self, db, categories):
        provider = FakeProvider([json.dumps({"categoryId": "cat-groceries", "confidence": 0.8})])

        with pytest.raises(AICategorisationError) as exc_info:
            await AICategoriser(db, provider=provider).categorise_with_ai(_tx())

        assert exc_info.value.kind == AIErrorKind.INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_no_categories_is_an_api_error(self, db):
        with pytest.raises(AICategorisationError) as exc_info:
            await AICategoriser(db, provider=FakeProvider([_single_reply()])).categorise_with_ai(_tx())

        assert exc_info.value.kind == AIErrorKind.API_ERROR


class TestBatch:
    @pytest.mark.asyncio
    async def test_chunks_and_reindexes(self, db, categories, monkeypatch):
        monkeypatch.setattr(settings, "ai_max_batch_size", 2)
        provider = FakeProvider([
            json.dumps([
                {"index": 0, "categoryId": "cat-groceries", "categoryName": "Groceries",
                 "confidence": 0.8, "reasoning": "supermarket"},
                {"index": 1, "categoryId": "cat-transport", "categoryName": "Transport",
                 "confidence": 0.7, "reasoning": "train"},
            ]),
            json.dumps([
                {"index": 0, "categoryId": "cat-salary", "categoryName": "Salary",
                 "confidence": 0.95, "reasoning": "payroll"},
            ]),
        ])
        ai = AICategoriser(db, provider=provider)

        results = await ai.categorise_batch_with_ai([
            _tx("ALDI"), _tx("TRAINLINE"), _tx("ACME PAYROLL", 2500.0),
        ])

        assert len(provider.prompts) == 2
        assert results[0].category_id == "cat-groceries"
        assert results[1].category_id == "cat-transport"
        assert results[2].category_id == "cat-salary"
        assert await ai.usage.get_used() == 3

    @pytest.mark.asyncio
    async def test_missing_and_out_of_range_items_are_absent(self, db, categories):
        provider = FakeProvider([
            json.dumps([
                {"index": 1, "categoryId": "cat-transport", "categoryName": "Transport",
                 "confidence": 0.7, "reasoning": "train"},
                {"index": 7, "categoryId": "cat-groceries", "categoryName": "Groceries",
                 "confidence": 0.7, "reasoning": "?"},
            ]),
        ])

        results = await AICategoriser(db, provider=provider).categorise_batch_with_ai(
            [_tx("ALDI"), _tx("TRAINLINE")]
        )

        assert set(results) == {1}

    @pytest.mark.asyncio
    async def test_non_array_reply_is_invalid(self, db, categories):
        provider = FakeProvider([_single_reply()])

        with pytest.raises(AICategorisationError) as exc_info:
            await AICategoriser(db, provider=provider).categorise_batch_with_ai([_tx()])

        assert exc_info.value.kind == AIErrorKind.INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_empty_batch(self, db, categories):
        provider = FakeProvider()
        assert await AICategoriser(db, provider=provider).categorise_batch_with_ai([]) == {}
        assert provider.prompts == []


class TestAvailability:
    @pytest.mark.asyncio
    async def test_remaining_counts_down(self, db):
        usage = AIUsageTracker(db, daily_limit=5)
        await usage.track(2)
        await usage.track(1)

        availability = await usage.check_availability()

        assert availability.remaining == 2
        assert availability.available is True

    @pytest.mark.asyncio
    async def test_exhausted_quota(self, db):
        usage = AIUsageTracker(db, daily_limit=3)
        await usage.track(4)

        availability = await usage.check_availability()

        assert availability.available is False
        assert availability.remaining == 0

    @pytest.mark.asyncio
    async def test_usage_is_per_day(self, db):
        usage = AIUsageTracker(db, daily_limit=5)
        await usage.track(5)
        assert await usage.get_used(day=date(2020, 1, 1)) == 0

    @pytest.mark.asyncio
    async def test_unconfigured_provider_is_unavailable(self, db):
        ai = AICategoriser(db, provider=FakeProvider(available=False))

        availability = await ai.check_ai_availability()

        assert availability.available is False
        assert availability.remaining == 0
