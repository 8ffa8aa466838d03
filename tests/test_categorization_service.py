"""Triage orchestrator tests: tier precedence, learning, batches, persistence."""

import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError

from spendsense.core.exceptions import StoreUpdateError
from spendsense.models import LabeledExample, Transaction, UserRule
from spendsense.services.categorization_service import CategorizationService
from spendsense.services.global_pattern_service import GlobalPatternService
from spendsense.services.neighbors import InMemoryNeighbors
from spendsense.services.results import MissReason
from spendsense.services.rule_engine import RuleEngine
from tests.conftest import SpyNeighbors, vector

LLM_BUSINESS = json.dumps(
    {"category": "business", "subcategory": "business-vendor", "confidence": 0.88, "explanation": "Trader"}
)


@pytest.fixture
def make_service(db, category_cache, subcategory_cache, queue, make_llm):
    def _make(llm=None, **options):
        options.setdefault("neighbors", InMemoryNeighbors(db))
        return CategorizationService(
            db,
            category_cache,
            subcategory_cache,
            llm_service=llm or make_llm(configured=False),
            embedding_queue=queue,
            **options,
        )

    return _make


# ── Single transaction ──────────────────────────────────


@pytest.mark.asyncio
async def test_confident_rule_skips_later_tiers(make_service, make_llm, make_transaction, queue, category_cache):
    spy = SpyNeighbors()
    llm = make_llm(LLM_BUSINESS)
    service = make_service(llm=llm, neighbors=spy)
    tx = await make_transaction("Zomato order")

    result = await service.categorize(tx)

    assert result.method == "rule"
    assert result.category.slug == "food"
    assert spy.calls == []
    assert llm.provider.calls == []
    assert tx.ai_category_id == (await category_cache.find_by_slug("food")).id
    assert tx.category_id is None
    assert tx.categorization_status == "completed"
    assert tx.confidence == pytest.approx(0.79)
    assert tx.metadata_["categorization_method"] == "rule"
    assert tx.metadata_["normalized_description"] == "zomato order"
    assert result.needs_embedding
    assert queue.transactions == [tx.id]


@pytest.mark.asyncio
async def test_llm_answer_is_learned(db, make_service, make_llm, make_transaction, queue, user):
    llm = make_llm(LLM_BUSINESS)
    service = make_service(llm=llm)
    tx = await make_transaction("XYZ TRADERS 4411")

    result = await service.categorize(tx)

    assert result.method == "llm"
    assert result.category.slug == "business"
    assert result.subcategory.slug == "business-vendor"
    assert tx.categorization_status == "completed"
    assert tx.ai_explanation == "Trader"

    rule = (await db.execute(select(UserRule).where(UserRule.user_id == user.id))).scalar_one()
    assert rule.pattern == "xyz traders"
    assert rule.source == "llm_auto"
    assert rule.priority == -1
    example = (await db.execute(select(LabeledExample))).scalar_one()
    assert example.source == "llm_auto"
    assert queue.examples == [example.id]
    assert queue.transactions == [tx.id]

    # The next similar transaction never reaches the LLM
    again = await make_transaction("XYZ TRADERS 9876")
    second = await service.categorize(again)
    assert second.method == "user_rule"
    assert second.category.slug == "business"
    assert len(llm.provider.calls) == 1


@pytest.mark.asyncio
async def test_unconfident_llm_answer_is_not_learned(db, make_service, make_llm, make_transaction):
    llm = make_llm(json.dumps({"category": "business", "confidence": 0.7}))
    tx = await make_transaction("XYZ TRADERS 4411")

    result = await make_service(llm=llm).categorize(tx)

    assert result.method == "llm"
    assert (await db.execute(select(UserRule))).first() is None
    assert (await db.execute(select(LabeledExample))).first() is None


@pytest.mark.asyncio
async def test_auto_learn_can_be_disabled(db, make_service, make_llm, make_transaction):
    tx = await make_transaction("XYZ TRADERS 4411")
    await make_service(llm=make_llm(LLM_BUSINESS), enable_auto_learn=False).categorize(tx)
    assert (await db.execute(select(UserRule))).first() is None


@pytest.mark.asyncio
async def test_nothing_matches_ends_completed_and_uncategorized(make_service, make_transaction, queue):
    tx = await make_transaction("random qwerty")

    result = await make_service().categorize(tx)

    assert not result.success
    assert result.method == "none"
    assert result.reason == MissReason.NO_MATCH
    assert result.needs_embedding
    assert tx.categorization_status == "completed"
    assert tx.ai_category_id is None
    assert queue.transactions == [tx.id]


@pytest.mark.asyncio
async def test_labeled_example_match(db, make_service, make_llm, make_transaction, category_cache, user, queue):
    health = await category_cache.find_by_slug("health")
    db.add(
        LabeledExample(
            user_id=user.id,
            category_id=health.id,
            description="Cult fitness",
            normalized_description="cult fitness",
            embedding=vector(1.0, 0.5),
            embedding_generated_at=datetime.now(timezone.utc),
        )
    )
    tx = await make_transaction(
        "CULTFIT BLR",
        embedding=vector(1.0, 0.5),
        embedding_generated_at=datetime.now(timezone.utc),
    )
    llm = make_llm(LLM_BUSINESS)

    result = await make_service(llm=llm).categorize(tx)

    assert result.method == "embedding_feedback"
    assert result.category.slug == "health"
    assert result.confidence == pytest.approx(0.97)
    assert llm.provider.calls == []
    assert not result.needs_embedding
    assert queue.transactions == []


@pytest.mark.asyncio
async def test_embeddings_can_be_disabled(make_service, make_transaction, queue):
    tx = await make_transaction("Zomato order")
    result = await make_service(enable_embeddings=False).categorize(tx)
    assert result.success
    assert not result.needs_embedding
    assert queue.transactions == []


@pytest.mark.asyncio
async def test_failing_tier_is_absorbed(make_service, make_llm, make_transaction):
    llm = make_llm(RuntimeError("provider exploded"))
    tx = await make_transaction("XYZ TRADERS 4411")

    result = await make_service(llm=llm).categorize(tx)

    assert not result.success
    assert tx.categorization_status == "completed"


@pytest.mark.asyncio
async def test_store_failure_is_raised(db, make_service, make_transaction, monkeypatch):
    tx = await make_transaction("Zomato order")

    async def broken_flush(*args, **kwargs):
        raise OperationalError("UPDATE transactions", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "flush", broken_flush)
    with pytest.raises(StoreUpdateError) as exc_info:
        await make_service().categorize(tx)
    assert exc_info.value.transaction_id == tx.id


@pytest.mark.asyncio
async def test_failed_statement_in_rule_tier_does_not_block_the_save(db, make_service, make_llm, make_transaction, monkeypatch):
    async def broken_categorize(self, transaction, user_id=None):
        await self.db.execute(text("SELECT pattern FROM missing_rules"))

    monkeypatch.setattr(RuleEngine, "categorize", broken_categorize)
    tx = await make_transaction("XYZ TRADERS 4411")

    result = await make_service(llm=make_llm(LLM_BUSINESS)).categorize(tx)

    assert result.method == "llm"
    assert tx.categorization_status == "completed"
    stored = await db.scalar(select(Transaction.categorization_status).where(Transaction.id == tx.id))
    assert stored == "completed"


@pytest.mark.asyncio
async def test_failed_learning_keeps_the_answer_without_partial_artifacts(
    db, make_service, make_llm, make_transaction, queue, monkeypatch
):
    async def broken_record_pattern(*args, **kwargs):
        raise OperationalError("INSERT INTO global_patterns", {}, Exception("disk I/O error"))

    monkeypatch.setattr(GlobalPatternService, "record_pattern", broken_record_pattern)
    tx = await make_transaction("XYZ TRADERS 4411")

    result = await make_service(llm=make_llm(LLM_BUSINESS)).categorize(tx)

    assert result.method == "llm"
    assert result.category.slug == "business"
    assert tx.categorization_status == "completed"
    assert tx.ai_category_id == result.category.id
    assert (await db.execute(select(UserRule))).first() is None
    assert (await db.execute(select(LabeledExample))).first() is None
    assert queue.examples == []


@pytest.mark.asyncio
async def test_recategorizing_is_idempotent(make_service, make_transaction):
    service = make_service()
    salary = await make_transaction("NEFT CREDIT SALARY ACME CORP", transaction_type="credit")
    unknown = await make_transaction("random qwerty")

    for tx in (salary, unknown):
        first = (await service.categorize(tx)).to_dict()
        state = (tx.ai_category_id, tx.ai_subcategory_id, tx.tx_kind, tx.confidence, tx.categorization_status)
        second = (await service.categorize(tx)).to_dict()
        assert first == second
        assert state == (tx.ai_category_id, tx.ai_subcategory_id, tx.tx_kind, tx.confidence, tx.categorization_status)


# ── Batches ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_large_batch_queues_one_embedding_job(make_service, make_transaction, queue, user):
    transactions = [await make_transaction(f"Zomato order {i}") for i in range(19)]
    transactions.append(await make_transaction("random qwerty"))

    results = await make_service().categorize_batch(transactions, user_id=user.id)

    assert len(results) == 20
    assert all(r.category.slug == "food" for r in results[:19])
    assert not results[19].success
    assert all(tx.categorization_status == "completed" for tx in transactions)
    assert queue.batches == [([tx.id for tx in transactions], user.id)]
    assert queue.transactions == []


@pytest.mark.asyncio
async def test_small_batch_runs_individually_but_queues_once(make_service, make_transaction, queue):
    transactions = [await make_transaction(d) for d in ("Zomato order", "Netflix subscription", "random qwerty")]

    results = await make_service().categorize_batch(transactions)

    assert [r.success for r in results] == [True, True, False]
    assert queue.transactions == []
    assert len(queue.batches) == 1
    assert queue.batches[0][0] == [tx.id for tx in transactions]


@pytest.mark.asyncio
async def test_forced_batch_matches_single_results(make_service, make_transaction):
    descriptions = ("Zomato order", "NEFT CREDIT SALARY ACME CORP", "Paytm wallet load", "random qwerty")
    single_txs = [await make_transaction(d) for d in descriptions]
    batch_txs = [await make_transaction(d) for d in descriptions]

    single = [await make_service().categorize(tx) for tx in single_txs]
    batch = await make_service().categorize_batch(batch_txs, force_batch=True)

    for expected, actual in zip(single, batch):
        assert actual.to_dict() == expected.to_dict()


@pytest.mark.asyncio
async def test_batch_applies_each_owners_rules(db, make_service, make_transaction, category_cache, user, other_user):
    for owner, slug in ((user, "shopping"), (other_user, "health")):
        category = await category_cache.find_by_slug(slug)
        db.add(UserRule(user_id=owner.id, category_id=category.id, pattern="xyz traders"))
    await db.flush()
    mine = await make_transaction("XYZ TRADERS 4411")
    theirs = await make_transaction("XYZ TRADERS 4411", user_id=other_user.id)

    results = await make_service().categorize_batch([mine, theirs], force_batch=True)

    assert [r.category.slug for r in results] == ["shopping", "health"]


@pytest.mark.asyncio
async def test_batch_llm_phase_only_for_leftovers(make_service, make_llm, make_transaction):
    llm = make_llm(LLM_BUSINESS)
    transactions = [await make_transaction("Zomato order"), await make_transaction("XYZ TRADERS 4411")]

    results = await make_service(llm=llm).categorize_batch(transactions, force_batch=True)

    assert [r.method for r in results] == ["rule", "llm"]
    assert len(llm.provider.calls) == 1


@pytest.mark.asyncio
async def test_batch_store_failure_is_raised(db, make_service, make_transaction, monkeypatch):
    transactions = [await make_transaction("Zomato order"), await make_transaction("Netflix subscription")]

    async def broken_flush(*args, **kwargs):
        raise OperationalError("UPDATE transactions", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "flush", broken_flush)
    with pytest.raises(StoreUpdateError) as exc_info:
        await make_service().categorize_batch(transactions, force_batch=True)
    assert exc_info.value.transaction_id is None
