"""rq job functions.

rq runs plain callables, so each job drives its async body with
``asyncio.run`` in a fresh event loop and disposes the engine afterwards
(pooled asyncpg connections cannot cross event loops). The async bodies take
a session and are what the tests call.

Jobs raise when an embedding provider keeps failing so rq's Retry applies;
a missing row is logged and dropped.
"""

import asyncio

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.core.database import async_session_factory, engine, session_scope
from spendsense.core.exceptions import ProviderError
from spendsense.jobs.queue import EmbeddingQueue, get_embedding_queue
from spendsense.models.labeled_example import LabeledExample
from spendsense.models.transaction import Transaction
from spendsense.services.categorization_service import CategorizationService
from spendsense.services.embedder import Embedder
from spendsense.services.embedding_generation_service import EmbeddingGenerationService
from spendsense.services.taxonomy_cache import CategoryCache, SubcategoryCache

logger = structlog.get_logger()

CATEGORIZE_CHUNK_SIZE = 100


# ── Async bodies ────────────────────────────────────────


async def embed_transaction(
    db: AsyncSession,
    transaction_id: int,
    embedder: Embedder | None = None,
) -> bool:
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None:
        logger.warning("embedding_job_transaction_missing", transaction_id=transaction_id)
        return False
    if transaction.embedding_generated_at is not None:
        logger.debug("embedding_job_skipped", transaction_id=transaction_id)
        return False

    service = EmbeddingGenerationService(db, embedder=embedder, user_id=transaction.user_id)
    embedding = await service.generate_single(transaction)
    if embedding is None and service.errors:
        raise ProviderError(service.embedder.name, service.errors[-1])
    logger.info("embedding_job_done", transaction_id=transaction_id, generated=embedding is not None)
    return embedding is not None


async def embed_transactions(
    db: AsyncSession,
    transaction_ids: list[int],
    user_id: int | None = None,
    embedder: Embedder | None = None,
) -> int:
    if not transaction_ids:
        return 0
    result = await db.execute(
        select(Transaction.id).where(
            Transaction.id.in_(transaction_ids),
            Transaction.embedding_generated_at.is_(None),
        )
    )
    pending = list(result.scalars().all())
    if not pending:
        logger.info("embedding_batch_job_nothing_to_do", requested=len(transaction_ids))
        return 0

    service = EmbeddingGenerationService(db, embedder=embedder, user_id=user_id)
    outcome = await service.generate_batch(limit=len(pending), transaction_ids=pending)
    if outcome.errors:
        logger.warning("embedding_batch_job_errors", errors=outcome.errors[:5])
    if outcome.generated_count == 0 and outcome.errors:
        raise ProviderError(service.embedder.name, outcome.errors[-1])
    return outcome.generated_count


async def embed_labeled_example(
    db: AsyncSession,
    example_id: int,
    embedder: Embedder | None = None,
) -> bool:
    example = await db.get(LabeledExample, example_id)
    if example is None or example.embedding_generated_at is not None:
        return False

    service = EmbeddingGenerationService(db, embedder=embedder, user_id=example.user_id)
    embedding = await service.generate_for_labeled_example(example)
    if embedding is None and service.errors:
        raise ProviderError(service.embedder.name, service.errors[-1])
    return embedding is not None


async def categorize_transactions(
    db: AsyncSession,
    transaction_ids: list[int],
    category_cache: CategoryCache,
    subcategory_cache: SubcategoryCache,
    user_id: int | None = None,
    embedding_queue: EmbeddingQueue | None = None,
    **service_options,
) -> dict:
    """Categorize ids in chunks, then queue one embedding job for all of them."""
    embedding_queue = embedding_queue or get_embedding_queue()
    await category_cache.refresh()
    await subcategory_cache.refresh()

    service = CategorizationService(
        db,
        category_cache,
        subcategory_cache,
        embedding_queue=embedding_queue,
        **service_options,
    )
    categorized = failed = 0
    needs_embedding_ids: list[int] = []

    for start in range(0, len(transaction_ids), CATEGORIZE_CHUNK_SIZE):
        chunk_ids = transaction_ids[start : start + CATEGORIZE_CHUNK_SIZE]
        result = await db.execute(
            select(Transaction).where(Transaction.id.in_(chunk_ids)).order_by(Transaction.id)
        )
        transactions = list(result.scalars().all())
        try:
            results = await service.categorize_batch(transactions, user_id=user_id, queue_embeddings=False)
            await db.commit()
        except Exception as e:
            await db.rollback()
            failed += len(transactions)
            logger.error("categorize_batch_chunk_failed", size=len(transactions), error=type(e).__name__)
            continue

        for tx, outcome in zip(transactions, results):
            if outcome.success:
                categorized += 1
            if outcome.needs_embedding:
                needs_embedding_ids.append(tx.id)

    if needs_embedding_ids:
        embedding_queue.enqueue_transactions(needs_embedding_ids, user_id)

    summary = {
        "categorized": categorized,
        "failed": failed,
        "needs_embedding": len(needs_embedding_ids),
    }
    logger.info("categorize_batch_job_done", total=len(transaction_ids), **summary)
    return summary


# ── rq entry points ─────────────────────────────────────


async def _in_session(body, *args):
    try:
        async with session_scope() as db:
            return await body(db, *args)
    finally:
        await engine.dispose()


async def _categorize_in_session(transaction_ids: list[int], user_id: int | None):
    try:
        async with async_session_factory() as db:
            return await categorize_transactions(
                db,
                transaction_ids,
                CategoryCache(async_session_factory),
                SubcategoryCache(async_session_factory),
                user_id=user_id,
            )
    finally:
        await engine.dispose()


def generate_embedding(transaction_id: int) -> bool:
    return asyncio.run(_in_session(embed_transaction, transaction_id))


def generate_embeddings_batch(transaction_ids: list[int], user_id: int | None = None) -> int:
    return asyncio.run(_in_session(embed_transactions, transaction_ids, user_id))


def generate_labeled_example_embedding(example_id: int) -> bool:
    return asyncio.run(_in_session(embed_labeled_example, example_id))


def categorize_batch(transaction_ids: list[int], user_id: int | None = None) -> dict:
    if not transaction_ids:
        return {"categorized": 0, "failed": 0, "needs_embedding": 0}
    return asyncio.run(_categorize_in_session(list(transaction_ids), user_id))
