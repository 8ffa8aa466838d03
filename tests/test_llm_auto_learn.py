"""Learning from confident LLM answers."""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from spendsense.models import GlobalPattern, LabeledExample, UserRule
from spendsense.services.llm_auto_learn_service import LLMAutoLearnService
from spendsense.services.results import CategorizationResult


@pytest.fixture
def make_result(category_cache, subcategory_cache):
    async def _make(category_slug="business", subcategory_slug=None, confidence=0.9):
        category = await category_cache.find_by_slug(category_slug)
        subcategory = await subcategory_cache.find_by_slug(subcategory_slug)
        return CategorizationResult(
            method="llm",
            category=category,
            subcategory=subcategory,
            tx_kind="spend",
            confidence=confidence,
        )

    return _make


@pytest.fixture
def service(db, queue):
    return LLMAutoLearnService(db, queue)


@pytest.mark.asyncio
async def test_confident_answer_creates_all_artifacts(service, make_result, make_transaction, queue):
    tx = await make_transaction("XYZ TRADERS 4411")
    result = await make_result(subcategory_slug="business-vendor")

    outcome = await service.learn(tx, result)

    assert outcome.learned
    assert outcome.rule.pattern == "xyz traders"
    assert outcome.rule.priority == -1
    assert outcome.rule.subcategory_id == result.subcategory.id
    assert outcome.example.normalized_description == "xyz traders 4411"
    assert outcome.example.source == "llm_auto"
    assert outcome.global_pattern.user_count == 1
    assert outcome.message == "Created: Auto-rule 'xyz traders' + Labeled example + Global pattern (1 user(s))"
    assert tx.ai_category_id == result.category.id
    assert tx.category_id is None
    assert queue.examples == [outcome.example.id]


@pytest.mark.asyncio
async def test_low_confidence_learns_nothing(db, service, make_result, make_transaction):
    tx = await make_transaction("XYZ TRADERS 4411")

    outcome = await service.learn(tx, await make_result(confidence=0.84))

    assert not outcome.learned
    assert outcome.message == "Confidence too low"
    assert (await db.execute(select(UserRule))).first() is None
    assert (await db.execute(select(GlobalPattern))).first() is None


@pytest.mark.asyncio
async def test_existing_rule_is_reused(db, service, make_result, make_transaction):
    first = await make_transaction("XYZ TRADERS 4411")
    second = await make_transaction("XYZ TRADERS 5522")
    created = await service.learn(first, await make_result())

    outcome = await service.learn(second, await make_result())

    assert outcome.rule.id == created.rule.id
    assert len((await db.execute(select(UserRule))).scalars().all()) == 1
    assert len((await db.execute(select(LabeledExample))).scalars().all()) == 2
    assert outcome.global_pattern.occurrence_count == 2
    assert outcome.global_pattern.user_count == 1


@pytest.mark.asyncio
async def test_rule_cap_per_category(db, queue, make_result, make_transaction):
    service = LLMAutoLearnService(db, queue, max_rules_per_category=0)
    tx = await make_transaction("XYZ TRADERS 4411")

    outcome = await service.learn(tx, await make_result())

    assert outcome.rule is None
    assert outcome.example is not None
    assert outcome.message.startswith("Created: Labeled example")


@pytest.mark.asyncio
async def test_two_users_verify_the_pattern(db, queue, make_result, make_transaction, other_user):
    service = LLMAutoLearnService(db, queue)
    await service.learn(await make_transaction("XYZ TRADERS 4411"), await make_result())

    theirs = await make_transaction("XYZ TRADERS 8080", user_id=other_user.id)
    outcome = await service.learn(theirs, await make_result())

    assert outcome.global_pattern.is_verified
    assert "Global pattern (verified)" in outcome.message


@pytest.mark.asyncio
async def test_short_pattern_skips_rule_and_global_pattern(service, make_result, make_transaction):
    tx = await make_transaction("AB 12")

    outcome = await service.learn(tx, await make_result())

    assert outcome.rule is None
    assert outcome.global_pattern is None
    assert outcome.example is not None


@pytest.mark.asyncio
async def test_failed_global_pattern_leaves_no_partial_artifacts(db, service, make_result, make_transaction, queue, monkeypatch):
    tx = await make_transaction("XYZ TRADERS 4411")
    result = await make_result(subcategory_slug="business-vendor")

    async def broken_record_pattern(*args, **kwargs):
        raise OperationalError("INSERT INTO global_patterns", {}, Exception("disk I/O error"))

    monkeypatch.setattr(service.global_patterns, "record_pattern", broken_record_pattern)
    with pytest.raises(OperationalError):
        await service.learn(tx, result)

    assert (await db.execute(select(UserRule))).first() is None
    assert (await db.execute(select(LabeledExample))).first() is None
    assert (await db.execute(select(GlobalPattern))).first() is None
    assert queue.examples == []
