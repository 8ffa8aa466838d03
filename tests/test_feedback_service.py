"""User correction tests."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from spendsense.core.exceptions import SubcategoryMismatchError
from spendsense.models import LabeledExample, Transaction, UserRule
from spendsense.services.feedback_service import FeedbackService
from spendsense.services.neighbors import InMemoryNeighbors
from tests.conftest import vector


@pytest.fixture
def service(db, category_cache, subcategory_cache, queue):
    return FeedbackService(db, category_cache, subcategory_cache, queue, InMemoryNeighbors(db))


@pytest.mark.asyncio
async def test_correction_fills_confirmed_slot_and_learns(service, make_transaction, category_cache, queue):
    business = await category_cache.find_by_slug("business")
    tx = await make_transaction("XYZ TRADERS 4411", ai_category_id=business.id)

    outcome = await service.process_correction(tx, "shopping", "shopping-offline")

    assert outcome.success
    assert outcome.message == "Created rule 'xyz traders 4411' and Saved as labeled example"
    assert tx.category_id == (await category_cache.find_by_slug("shopping")).id
    assert tx.ai_category_id == business.id
    assert tx.is_reviewed
    assert tx.tx_kind == "spend"
    assert tx.metadata_["user_corrected"] is True
    assert tx.metadata_["previous_category"] == "business"

    assert outcome.rule.source == "feedback"
    assert outcome.rule.pattern_type == "keyword"
    assert outcome.rule.source_transaction_id == tx.id
    assert outcome.example.normalized_description == "xyz traders 4411"
    assert outcome.example.source == "user_feedback"
    assert queue.examples == [outcome.example.id]


@pytest.mark.asyncio
async def test_second_correction_repoints_rule_and_example(db, service, make_transaction, subcategory_cache):
    first = await make_transaction("XYZ TRADERS 4411")
    second = await make_transaction("XYZ TRADERS 4411")
    await service.process_correction(first, "shopping")

    outcome = await service.process_correction(second, "health", "health-diagnostics")

    rules = (await db.execute(select(UserRule))).scalars().all()
    examples = (await db.execute(select(LabeledExample))).scalars().all()
    assert len(rules) == 1 and len(examples) == 1
    diagnostics = await subcategory_cache.find_by_slug("health-diagnostics")
    assert rules[0].subcategory_id == diagnostics.id
    assert examples[0].transaction_id == second.id
    assert outcome.rule.id == rules[0].id


@pytest.mark.asyncio
async def test_transfer_subcategory_sets_transfer_kind(service, make_transaction):
    tx = await make_transaction("NEFT TO MY HDFC")
    await service.process_correction(tx, "transfer", "transfer-self")
    assert tx.tx_kind == "transfer_self"


@pytest.mark.asyncio
async def test_mismatched_subcategory_is_rejected(service, make_transaction):
    tx = await make_transaction("XYZ TRADERS 4411")
    with pytest.raises(SubcategoryMismatchError):
        await service.process_correction(tx, "shopping", "food-delivery")
    assert tx.category_id is None


@pytest.mark.asyncio
async def test_unknown_category_is_reported(service, make_transaction):
    tx = await make_transaction("XYZ TRADERS 4411")
    outcome = await service.process_correction(tx, "crypto")
    assert not outcome.success
    assert outcome.message == "Unknown category 'crypto'"


@pytest.mark.asyncio
async def test_unknown_subcategory_uses_default(service, make_transaction, subcategory_cache):
    tx = await make_transaction("XYZ TRADERS 4411")
    await service.process_correction(tx, "shopping", "shopping-nonexistent")
    assert tx.subcategory_id == (await subcategory_cache.find_by_slug("shopping-online")).id


@pytest.mark.asyncio
async def test_example_reuses_transaction_embedding(service, make_transaction, queue):
    tx = await make_transaction(
        "XYZ TRADERS 4411",
        embedding=vector(0.3, 0.7),
        embedding_generated_at=datetime.now(timezone.utc),
    )
    outcome = await service.process_correction(tx, "shopping")
    assert outcome.example.embedding_generated_at is not None
    assert queue.examples == []


@pytest.mark.asyncio
async def test_apply_to_similar(service, make_transaction, category_cache, other_user):
    now = datetime.now(timezone.utc)
    source = await make_transaction("XYZ TRADERS 4411", embedding=vector(1.0, 0.2), embedding_generated_at=now)
    near = await make_transaction("XYZ TRADERS 1234", embedding=vector(1.0, 0.21), embedding_generated_at=now)
    same = await make_transaction("XYZ TRADERS", embedding=vector(1.0, 0.2), embedding_generated_at=now)
    far = await make_transaction("ZORBA WIDGETS", embedding=vector(0.0, 1.0), embedding_generated_at=now)
    health = await category_cache.find_by_slug("health")
    confirmed = await make_transaction(
        "XYZ TRADERS 9999",
        embedding=vector(1.0, 0.2),
        embedding_generated_at=now,
        category_id=health.id,
    )
    stranger = await make_transaction(
        "XYZ TRADERS 4411",
        embedding=vector(1.0, 0.2),
        embedding_generated_at=now,
        user_id=other_user.id,
    )

    outcome = await service.apply_to_similar(source, "shopping")

    assert sorted(outcome["ids"]) == sorted([near.id, same.id])
    assert outcome["updated"] == 2
    shopping = await category_cache.find_by_slug("shopping")
    assert near.category_id == shopping.id
    assert not near.is_reviewed
    assert far.category_id is None
    assert confirmed.category_id == health.id
    assert stranger.category_id is None


@pytest.mark.asyncio
async def test_apply_to_similar_without_embedding(service, make_transaction):
    tx = await make_transaction("XYZ TRADERS 4411")
    assert await service.apply_to_similar(tx, "shopping") == {"updated": 0, "ids": []}


@pytest.mark.asyncio
async def test_failed_example_write_rolls_back_the_correction(db, service, make_transaction, queue, monkeypatch):
    tx = await make_transaction("XYZ TRADERS 4411")

    async def broken_upsert_example(*args, **kwargs):
        raise OperationalError("INSERT INTO labeled_examples", {}, Exception("disk I/O error"))

    monkeypatch.setattr(service, "_upsert_example", broken_upsert_example)
    outcome = await service.process_correction(tx, "shopping")

    assert not outcome.success
    assert outcome.message == "An error occurred while processing feedback"
    assert (await db.execute(select(UserRule))).first() is None
    assert tx.category_id is None
    assert not tx.is_reviewed
    assert queue.examples == []


@pytest.mark.asyncio
async def test_apply_to_similar_updates_loaded_rows(db, service, make_transaction, category_cache):
    now = datetime.now(timezone.utc)
    source = await make_transaction("XYZ TRADERS 4411", embedding=vector(1.0, 0.2), embedding_generated_at=now)
    near = await make_transaction("XYZ TRADERS 1234", embedding=vector(1.0, 0.21), embedding_generated_at=now)

    await service.apply_to_similar(source, "shopping", "shopping-offline")

    shopping = await category_cache.find_by_slug("shopping")
    stored = await db.scalar(select(Transaction.category_id).where(Transaction.id == near.id))
    assert stored == near.category_id == shopping.id
    assert near.subcategory_id is not None
