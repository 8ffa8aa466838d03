"""Similarity search for many transactions at once.

Same two-stage search as EmbeddingService, but each stage runs one
search_many per user and sub-batch, so the in-process backend loads the
candidate embeddings once per stage instead of once per transaction.
"""

from collections import defaultdict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.config import settings
from spendsense.models.transaction import Transaction
from spendsense.services.embedding_service import SimilarityResultBuilder
from spendsense.services.neighbors import NearestNeighbors, NeighborScope, NeighborSource, neighbors_for
from spendsense.services.results import CategorizationResult
from spendsense.services.taxonomy_cache import CategoryCache, SubcategoryCache

logger = structlog.get_logger()

SUB_BATCH_SIZE = 10


class BatchEmbeddingService:
    def __init__(
        self,
        db: AsyncSession,
        category_cache: CategoryCache,
        subcategory_cache: SubcategoryCache,
        neighbors: NearestNeighbors | None = None,
        min_similarity: float | None = None,
        max_results: int | None = None,
        sub_batch_size: int = SUB_BATCH_SIZE,
    ):
        self.db = db
        self.neighbors = neighbors or neighbors_for(db)
        self.min_similarity = (
            settings.embedding_min_similarity if min_similarity is None else min_similarity
        )
        self.max_results = settings.embedding_max_results if max_results is None else max_results
        self.sub_batch_size = sub_batch_size
        self.builder = SimilarityResultBuilder(category_cache, subcategory_cache, self.min_similarity)

    async def find_similar_batch(
        self, transactions: list[Transaction]
    ) -> dict[int, CategorizationResult]:
        """Results only for transactions that matched; others are left out."""
        with_embedding = [t for t in transactions if t.embedding is not None and t.text.strip()]
        if not with_embedding:
            return {}

        by_user: dict[int, list[Transaction]] = defaultdict(list)
        for tx in with_embedding:
            by_user[tx.user_id].append(tx)

        results: dict[int, CategorizationResult] = {}
        for user_id, user_transactions in by_user.items():
            for start in range(0, len(user_transactions), self.sub_batch_size):
                chunk = user_transactions[start : start + self.sub_batch_size]
                results.update(await self._process_chunk(user_id, chunk))

        logger.info(
            "batch_embeddings_matched",
            total=len(transactions),
            searchable=len(with_embedding),
            matched=len(results),
        )
        return results

    async def _process_chunk(
        self, user_id: int, chunk: list[Transaction]
    ) -> dict[int, CategorizationResult]:
        max_distance = 1.0 - self.min_similarity
        results: dict[int, CategorizationResult] = {}

        examples = await self.neighbors.search_many(
            [(tx.id, tx.embedding) for tx in chunk],
            NeighborScope(NeighborSource.LABELED_EXAMPLES, user_id),
            k=self.max_results,
            max_distance=max_distance,
        )
        remaining = []
        for tx in chunk:
            result = None
            if examples.get(tx.id):
                result = await self.builder.from_examples(examples[tx.id], tx)
            if result and result.confidence >= self.min_similarity:
                results[tx.id] = result
            else:
                remaining.append(tx)

        if not remaining:
            return results

        similar = await self.neighbors.search_many(
            [(tx.id, tx.embedding) for tx in remaining],
            NeighborScope(NeighborSource.TRANSACTIONS, user_id),
            k=self.max_results,
            max_distance=max_distance,
        )
        for tx in remaining:
            result = await self.builder.from_transactions(similar.get(tx.id, []), tx)
            if result:
                results[tx.id] = result
        return results
