"""In-process nearest-neighbor search."""

from datetime import datetime, timezone

import pytest

from spendsense.models import LabeledExample
from spendsense.services.neighbors import (
    InMemoryNeighbors,
    NeighborScope,
    NeighborSource,
    neighbors_for,
)
from tests.conftest import vector


@pytest.fixture
def add_example(db, user, category_cache):
    async def _add(normalized, embedding, category_slug="food", user_id=None):
        category = await category_cache.find_by_slug(category_slug)
        example = LabeledExample(
            user_id=user_id or user.id,
            category_id=category.id,
            description=normalized,
            normalized_description=normalized,
            embedding=embedding,
            embedding_generated_at=datetime.now(timezone.utc) if embedding is not None else None,
        )
        db.add(example)
        await db.flush()
        return example

    return _add


@pytest.mark.asyncio
async def test_examples_ranked_by_distance(db, user, add_example):
    close = await add_example("zomato order", vector(1.0, 0.1))
    exact = await add_example("zomato", vector(1.0, 0.0))
    await add_example("uber trip", vector(0.0, 1.0), category_slug="transport")
    await add_example("pending", None)

    scope = NeighborScope(NeighborSource.LABELED_EXAMPLES, user.id)
    found = await InMemoryNeighbors(db).search(vector(1.0, 0.0), scope, k=5, max_distance=0.2)

    assert [n.id for n in found] == [exact.id, close.id]
    assert found[0].distance == pytest.approx(0.0, abs=1e-9)
    assert found[0].similarity == pytest.approx(1.0)
    assert found[1].category_id == close.category_id


@pytest.mark.asyncio
async def test_k_and_exclusion(db, user, add_example):
    first = await add_example("one", vector(1.0, 0.0))
    second = await add_example("two", vector(1.0, 0.05))
    await add_example("three", vector(1.0, 0.1))
    scope = NeighborScope(NeighborSource.LABELED_EXAMPLES, user.id)
    neighbors = InMemoryNeighbors(db)

    assert len(await neighbors.search(vector(1.0, 0.0), scope, k=2, max_distance=0.5)) == 2
    found = await neighbors.search(vector(1.0, 0.0), scope, k=1, max_distance=0.5, exclude_id=first.id)
    assert [n.id for n in found] == [second.id]


@pytest.mark.asyncio
async def test_other_users_examples_are_invisible(db, user, other_user, add_example):
    await add_example("zomato", vector(1.0, 0.0), user_id=other_user.id)
    scope = NeighborScope(NeighborSource.LABELED_EXAMPLES, user.id)
    assert await InMemoryNeighbors(db).search(vector(1.0, 0.0), scope, k=5, max_distance=0.5) == []


@pytest.mark.asyncio
async def test_transaction_scopes(db, user, make_transaction, category_cache):
    now = datetime.now(timezone.utc)
    food = await category_cache.find_by_slug("food")
    health = await category_cache.find_by_slug("health")
    suggested = await make_transaction(
        "a", embedding=vector(1.0, 0.0), embedding_generated_at=now, ai_category_id=food.id
    )
    confirmed = await make_transaction(
        "b", embedding=vector(1.0, 0.0), embedding_generated_at=now, category_id=health.id
    )
    bare = await make_transaction("c", embedding=vector(1.0, 0.0), embedding_generated_at=now)
    neighbors = InMemoryNeighbors(db)

    async def ids(categorized):
        scope = NeighborScope(NeighborSource.TRANSACTIONS, user.id, categorized=categorized)
        return {n.id for n in await neighbors.search(vector(1.0, 0.0), scope, k=10, max_distance=0.5)}

    assert await ids(True) == {suggested.id, confirmed.id}
    assert await ids(False) == {suggested.id, bare.id}
    assert await ids(None) == {suggested.id, confirmed.id, bare.id}

    scope = NeighborScope(NeighborSource.TRANSACTIONS, user.id)
    found = await neighbors.search(vector(1.0, 0.0), scope, k=10, max_distance=0.5)
    categories = {n.id: n.category_id for n in found}
    assert categories == {suggested.id: food.id, confirmed.id: health.id}


@pytest.mark.asyncio
async def test_search_many_skips_the_query_row(db, user, make_transaction, category_cache):
    now = datetime.now(timezone.utc)
    food = await category_cache.find_by_slug("food")
    first = await make_transaction("a", embedding=vector(1.0, 0.0), embedding_generated_at=now, ai_category_id=food.id)
    second = await make_transaction("b", embedding=vector(1.0, 0.1), embedding_generated_at=now, ai_category_id=food.id)
    scope = NeighborScope(NeighborSource.TRANSACTIONS, user.id)

    found = await InMemoryNeighbors(db).search_many(
        [(first.id, vector(1.0, 0.0)), (second.id, vector(1.0, 0.1))], scope, k=5, max_distance=0.5
    )

    assert [n.id for n in found[first.id]] == [second.id]
    assert [n.id for n in found[second.id]] == [first.id]
    assert await InMemoryNeighbors(db).search_many([], scope, k=5, max_distance=0.5) == {}


@pytest.mark.asyncio
async def test_sqlite_uses_in_memory_search(db):
    assert isinstance(neighbors_for(db), InMemoryNeighbors)
