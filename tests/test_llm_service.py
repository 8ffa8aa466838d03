"""LLM fallback tier tests (fake provider, no network)."""

import functools
import json
import math

import pytest

from spendsense.core.exceptions import ProviderError, ProviderRateLimitedError
from spendsense.core.retry import rate_limit_retrying
from spendsense.services import llm_service
from spendsense.services.llm_service import LLMService, clamp_confidence
from spendsense.services.results import MissReason


def answer(**fields) -> str:
    return json.dumps(fields)


def test_clamp_confidence():
    assert clamp_confidence(1.5) == 0.9
    assert clamp_confidence(0.1) == 0.5
    assert clamp_confidence(0.72) == 0.72
    assert clamp_confidence(math.nan) == 0.7


def test_parse_response_rejects_garbage():
    assert LLMService.parse_response("not json") is None
    assert LLMService.parse_response("[1, 2]") is None
    assert LLMService.parse_response(answer(category="")) is None

    parsed = LLMService.parse_response(answer(category=" Food ", confidence="high", tx_kind="bogus"))
    assert parsed.category == "food"
    assert parsed.confidence == 0.7
    assert parsed.tx_kind is None


@pytest.mark.asyncio
async def test_categorize_clamps_and_resolves(make_llm, make_transaction):
    llm = make_llm(answer(category="food", subcategory="delivery", confidence=0.99, explanation="Order"))
    tx = await make_transaction("XYZ TRADERS 4411")

    result = await llm.categorize(tx)

    assert result.method == "llm"
    assert result.category.slug == "food"
    assert result.subcategory.slug == "food-delivery"
    assert result.confidence == 0.9
    assert result.tx_kind == "spend"
    assert result.explanation == "Order"
    system_prompt, user_prompt = llm.provider.calls[0]
    assert "food-delivery" in system_prompt
    assert "XYZ TRADERS 4411" in user_prompt


@pytest.mark.asyncio
async def test_missing_confidence_defaults(make_llm, make_transaction):
    llm = make_llm(answer(category="salary"))
    tx = await make_transaction("XYZ TRADERS 4411", transaction_type="credit")

    result = await llm.categorize(tx)

    assert result.confidence == 0.7
    assert result.tx_kind == "income_salary"
    assert result.subcategory.slug == "salary-monthly"


@pytest.mark.asyncio
async def test_subcategory_of_another_category_uses_default(make_llm, make_transaction):
    llm = make_llm(answer(category="food", subcategory="transport-cab", confidence=0.8))
    tx = await make_transaction("XYZ TRADERS 4411")

    result = await llm.categorize(tx)

    assert result.subcategory.slug == "food-dining"


@pytest.mark.asyncio
async def test_unknown_category_is_a_miss(make_llm, make_transaction):
    llm = make_llm(answer(category="crypto", confidence=0.9))
    result = await llm.categorize(await make_transaction("XYZ TRADERS 4411"))
    assert not result.success
    assert result.reason == MissReason.UNKNOWN_CATEGORY


@pytest.mark.asyncio
async def test_unparseable_answer_is_a_miss(make_llm, make_transaction):
    llm = make_llm("Sure! The category is food.")
    result = await llm.categorize(await make_transaction("XYZ TRADERS 4411"))
    assert result.reason == MissReason.UNPARSEABLE


@pytest.mark.asyncio
async def test_not_configured_is_a_silent_miss(make_llm, make_transaction):
    llm = make_llm(configured=False)
    result = await llm.categorize(await make_transaction("XYZ TRADERS 4411"))
    assert result.reason == MissReason.NOT_CONFIGURED
    assert llm.provider.calls == []


@pytest.mark.asyncio
async def test_blank_description_skips_the_call(make_llm, make_transaction):
    llm = make_llm()
    result = await llm.categorize(await make_transaction(""))
    assert result.reason == MissReason.BLANK_DESCRIPTION
    assert llm.provider.calls == []


@pytest.mark.asyncio
async def test_rate_limits_are_retried(make_llm, make_transaction):
    llm = make_llm(
        ProviderRateLimitedError("fake"),
        ProviderRateLimitedError("fake"),
        answer(category="food", confidence=0.8),
    )
    result = await llm.categorize(await make_transaction("XYZ TRADERS 4411"))
    assert result.category.slug == "food"
    assert len(llm.provider.calls) == 3


@pytest.mark.asyncio
async def test_retries_are_bounded(make_llm, make_transaction):
    llm = make_llm(
        ProviderRateLimitedError("fake"),
        ProviderRateLimitedError("fake"),
        answer(category="food", confidence=0.8),
        max_retries=1,
    )
    result = await llm.categorize(await make_transaction("XYZ TRADERS 4411"))
    assert result.reason == MissReason.PROVIDER_FAILED
    assert len(llm.provider.calls) == 2


@pytest.mark.asyncio
async def test_rate_limit_waits_grow_with_each_attempt(make_llm, make_transaction, monkeypatch):
    waits = []

    async def record_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr(
        llm_service, "rate_limit_retrying", functools.partial(rate_limit_retrying, sleep=record_sleep)
    )
    llm = make_llm(
        ProviderRateLimitedError("fake"),
        ProviderRateLimitedError("fake"),
        ProviderRateLimitedError("fake"),
        answer(category="food", confidence=0.8),
        max_retries=3,
        retry_base_delay=2.0,
    )

    result = await llm.categorize(await make_transaction("XYZ TRADERS 4411"))

    assert result.category.slug == "food"
    assert waits == [2.0, 4.0, 6.0]


@pytest.mark.asyncio
async def test_provider_errors_are_not_retried(make_llm, make_transaction):
    llm = make_llm(ProviderError("fake", "bad request"), answer(category="food"))
    result = await llm.categorize(await make_transaction("XYZ TRADERS 4411"))
    assert result.reason == MissReason.PROVIDER_FAILED
    assert len(llm.provider.calls) == 1


@pytest.mark.asyncio
async def test_parse_batch_response(make_llm, make_transaction):
    llm = make_llm()
    first = await make_transaction("XYZ TRADERS 4411")
    second = await make_transaction("ZORBA WIDGETS")
    content = json.dumps(
        {
            "results": [
                {"id": first.id, "category": "shopping", "confidence": 0.95},
                {"id": second.id, "category": "nonsense"},
                {"id": 99999, "category": "food"},
                {"category": "food"},
                "junk",
            ]
        }
    )

    results = await llm.parse_batch_response(content, [first, second])

    assert list(results) == [first.id]
    assert results[first.id].category.slug == "shopping"
    assert results[first.id].confidence == 0.9
    assert await llm.parse_batch_response("oops", [first]) == {}


@pytest.mark.asyncio
async def test_categorize_batch_chunks_calls(make_llm, make_transaction):
    transactions = [await make_transaction(f"ZORBA WIDGETS {i}") for i in range(3)]
    content = json.dumps([{"id": tx.id, "category": "business", "confidence": 0.8} for tx in transactions])
    llm = make_llm(content, batch_size=2)

    results = await llm.categorize_batch(transactions)

    assert len(llm.provider.calls) == 2
    assert {r.category.slug for r in results.values()} == {"business"}
    assert set(results) == {tx.id for tx in transactions}
