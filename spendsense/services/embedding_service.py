"""Embedding-based categorization by vector similarity.

Looks for the user's most similar, already-categorized descriptions:

1. Labeled examples (user-confirmed, highest trust) -> method "embedding_feedback"
2. The user's other categorized transactions      -> method "embedding"

Only embeddings that already exist are used. Generating one is a queued side
effect handled by EmbeddingGenerationService, never done inline here.
"""

import math
from collections import Counter
from dataclasses import dataclass, field

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.config import settings
from spendsense.models.transaction import Transaction
from spendsense.services.neighbors import (
    NearestNeighbors,
    Neighbor,
    NeighborScope,
    NeighborSource,
    neighbors_for,
)
from spendsense.services.results import CategorizationResult, MissReason, tx_kind_for
from spendsense.services.taxonomy_cache import CategoryCache, SubcategoryCache

logger = structlog.get_logger()

# Corroboration damping: log(count + 1) / K boosts groups with several neighbors
EXAMPLE_GROUP_K = 8
TRANSACTION_GROUP_K = 10


@dataclass
class NeighborGroup:
    category_id: int
    neighbors: list[Neighbor] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.neighbors)

    @property
    def avg_similarity(self) -> float:
        return sum(n.similarity for n in self.neighbors) / self.count

    def score(self, k: int) -> float:
        return self.avg_similarity * (1 + math.log(self.count + 1) / k)

    def subcategory_id(self) -> int | None:
        votes = Counter(n.subcategory_id for n in self.neighbors if n.subcategory_id is not None)
        return votes.most_common(1)[0][0] if votes else None


def best_group(neighbors: list[Neighbor], k: int) -> NeighborGroup | None:
    """Group neighbors by category; highest score wins, nearest group on ties."""
    groups: dict[int, NeighborGroup] = {}
    for neighbor in neighbors:
        if neighbor.category_id is None:
            continue
        groups.setdefault(neighbor.category_id, NeighborGroup(neighbor.category_id)).neighbors.append(neighbor)
    if not groups:
        return None
    return max(groups.values(), key=lambda g: g.score(k))


def example_confidence(group: NeighborGroup) -> float:
    return min(0.98, group.avg_similarity * 0.95 + group.count * 0.02)


def transaction_confidence(group: NeighborGroup) -> float:
    return min(0.95, group.avg_similarity * 0.90 + group.count * 0.02)


class SimilarityResultBuilder:
    """Turns neighbor sets into results; shared with the batch service."""

    def __init__(
        self,
        category_cache: CategoryCache,
        subcategory_cache: SubcategoryCache,
        min_similarity: float,
    ):
        self.category_cache = category_cache
        self.subcategory_cache = subcategory_cache
        self.min_similarity = min_similarity

    async def from_examples(
        self, neighbors: list[Neighbor], transaction: Transaction
    ) -> CategorizationResult | None:
        group = best_group(neighbors, EXAMPLE_GROUP_K)
        if group is None or group.avg_similarity < self.min_similarity:
            return None
        return await self._build(
            group,
            transaction,
            method="embedding_feedback",
            confidence=example_confidence(group),
            explanation=(
                f"Matched {group.count} user-labeled example(s) "
                f"with {group.avg_similarity * 100:.1f}% similarity"
            ),
        )

    async def from_transactions(
        self, neighbors: list[Neighbor], transaction: Transaction
    ) -> CategorizationResult | None:
        group = best_group(neighbors, TRANSACTION_GROUP_K)
        if group is None or group.avg_similarity < self.min_similarity:
            return None
        return await self._build(
            group,
            transaction,
            method="embedding",
            confidence=transaction_confidence(group),
            explanation=(
                f"Matched {group.count} similar transaction(s) "
                f"with {group.avg_similarity * 100:.1f}% similarity"
            ),
        )

    async def _build(self, group, transaction, method, confidence, explanation):
        category = await self.category_cache.find_by_id(group.category_id)
        if category is None:
            return None
        subcategory = await self.subcategory_cache.resolve_for_category(
            category, await self.subcategory_cache.find_by_id(group.subcategory_id())
        )
        return CategorizationResult(
            method=method,
            category=category,
            subcategory=subcategory,
            tx_kind=tx_kind_for(category.slug, transaction.transaction_type),
            confidence=confidence,
            explanation=explanation,
        )


class EmbeddingService:
    """Categorize one transaction from its stored embedding."""

    def __init__(
        self,
        db: AsyncSession,
        category_cache: CategoryCache,
        subcategory_cache: SubcategoryCache,
        neighbors: NearestNeighbors | None = None,
        min_similarity: float | None = None,
        max_results: int | None = None,
    ):
        self.db = db
        self.neighbors = neighbors or neighbors_for(db)
        self.min_similarity = (
            settings.embedding_min_similarity if min_similarity is None else min_similarity
        )
        self.max_results = settings.embedding_max_results if max_results is None else max_results
        self.builder = SimilarityResultBuilder(category_cache, subcategory_cache, self.min_similarity)

    @property
    def max_distance(self) -> float:
        return 1.0 - self.min_similarity

    async def categorize(self, transaction: Transaction) -> CategorizationResult:
        if not transaction.text.strip():
            return CategorizationResult.miss("embedding", MissReason.BLANK_DESCRIPTION)
        if transaction.embedding is None:
            return CategorizationResult.miss(
                "embedding",
                MissReason.NO_EMBEDDING,
                "No embedding generated yet",
                needs_embedding=transaction.embedding_generated_at is None,
            )

        examples = await self.neighbors.search(
            transaction.embedding,
            NeighborScope(NeighborSource.LABELED_EXAMPLES, transaction.user_id),
            k=self.max_results,
            max_distance=self.max_distance,
        )
        if examples:
            result = await self.builder.from_examples(examples, transaction)
            if result and result.confidence >= self.min_similarity:
                logger.debug("embedding_example_match", transaction_id=transaction.id, confidence=result.confidence)
                return result

        similar = await self.neighbors.search(
            transaction.embedding,
            NeighborScope(NeighborSource.TRANSACTIONS, transaction.user_id),
            k=self.max_results,
            max_distance=self.max_distance,
            exclude_id=transaction.id,
        )
        result = await self.builder.from_transactions(similar, transaction)
        if result:
            logger.debug("embedding_transaction_match", transaction_id=transaction.id, confidence=result.confidence)
            return result
        return CategorizationResult.miss("embedding", MissReason.BELOW_THRESHOLD, "No similar transactions")
