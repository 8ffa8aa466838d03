"""Cross-user pattern verification tests."""

import pytest

from spendsense.services.global_pattern_service import GlobalPatternService


@pytest.fixture
def service(db):
    return GlobalPatternService(db)


async def category_ids(category_cache, *slugs):
    return [(await category_cache.find_by_slug(slug)).id for slug in slugs]


async def disagree(service, pattern, category_id, user_id):
    await service.record_pattern(pattern, category_id, user_id)
    await service.record_disagreement(pattern, category_id, user_id)


@pytest.mark.asyncio
async def test_one_user_never_verifies(service, category_cache):
    [food] = await category_ids(category_cache, "food")
    await service.record_pattern("blinkit", food, 1)
    pattern = await service.record_pattern("Blinkit ", food, 1)

    assert pattern.pattern == "blinkit"
    assert pattern.occurrence_count == 2
    assert pattern.user_count == 1
    assert pattern.agreement_count == 1
    assert not pattern.is_verified


@pytest.mark.asyncio
async def test_two_agreeing_users_verify(service, category_cache):
    [food] = await category_ids(category_cache, "food")
    await service.record_pattern("blinkit", food, 1)
    pattern = await service.record_pattern("blinkit", food, 2)

    assert pattern.user_count == 2
    assert pattern.agreement_rate == pytest.approx(1.0)
    assert pattern.is_verified
    assert pattern.verified_at is not None


@pytest.mark.asyncio
async def test_disagreement_lowers_agreement_but_not_agreement_count(service, category_cache):
    food, shopping = await category_ids(category_cache, "food", "shopping")
    food_pattern = await service.record_pattern("blinkit", food, 1)
    await disagree(service, "blinkit", shopping, 2)

    assert food_pattern.occurrence_count == 2
    assert food_pattern.user_count == 2
    assert food_pattern.agreement_count == 1
    assert food_pattern.agreement_rate == pytest.approx(0.5)
    assert not food_pattern.is_verified

    shopping_pattern = await service.find("blinkit", shopping)
    assert shopping_pattern.user_count == 1
    assert not shopping_pattern.is_verified


@pytest.mark.asyncio
async def test_verifies_once_agreement_reaches_threshold(service, category_cache):
    food, shopping = await category_ids(category_cache, "food", "shopping")
    food_pattern = await service.record_pattern("blinkit", food, 1)
    await disagree(service, "blinkit", shopping, 2)

    for user_id in (3, 4):
        await service.record_pattern("blinkit", food, user_id)
        assert not food_pattern.is_verified

    await service.record_pattern("blinkit", food, 5)
    assert food_pattern.user_count == 5
    assert food_pattern.agreement_count == 4
    assert food_pattern.is_verified


@pytest.mark.asyncio
async def test_verification_is_never_revoked(service, category_cache):
    food, shopping = await category_ids(category_cache, "food", "shopping")
    await service.record_pattern("blinkit", food, 1)
    food_pattern = await service.record_pattern("blinkit", food, 2)
    assert food_pattern.is_verified

    for user_id in (3, 4, 5):
        await disagree(service, "blinkit", shopping, user_id)

    assert food_pattern.agreement_rate < service.min_agreement
    assert food_pattern.is_verified


@pytest.mark.asyncio
async def test_repeat_disagreement_from_same_user_is_ignored(service, category_cache):
    food, shopping = await category_ids(category_cache, "food", "shopping")
    food_pattern = await service.record_pattern("blinkit", food, 1)
    await disagree(service, "blinkit", shopping, 2)
    await disagree(service, "blinkit", shopping, 2)

    assert food_pattern.user_count == 2
    assert food_pattern.occurrence_count == 2


@pytest.mark.asyncio
async def test_short_patterns_are_not_recorded(service, category_cache):
    [food] = await category_ids(category_cache, "food")
    assert await service.record_pattern("ab", food, 1) is None
    assert await service.record_disagreement("  ", food, 1) == []
