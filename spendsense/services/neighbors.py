"""Nearest-neighbor search over stored embeddings.

Similarity services only depend on the NearestNeighbors interface:

    search(vector, scope, k, max_distance) -> [Neighbor(id, category, distance)]

Two implementations: pgvector's cosine distance operator on PostgreSQL, and
an in-process numpy/scikit-learn scan for other databases (SQLite in tests,
small deployments).
"""

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import numpy as np
import structlog
from sklearn.metrics.pairwise import cosine_similarity
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.core.database import dialect_name
from spendsense.models.labeled_example import LabeledExample
from spendsense.models.transaction import Transaction

logger = structlog.get_logger()


class NeighborSource(str, Enum):
    LABELED_EXAMPLES = "labeled_examples"
    TRANSACTIONS = "transactions"


@dataclass(frozen=True)
class NeighborScope:
    """Which rows to search.

    ``categorized`` only applies to transactions: True keeps rows with a
    confirmed or suggested category, False keeps rows without a confirmed
    one, None keeps everything.
    """

    source: NeighborSource
    user_id: int
    categorized: bool | None = True


@dataclass(frozen=True)
class Neighbor:
    id: int
    category_id: int | None
    subcategory_id: int | None
    distance: float

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance


class NearestNeighbors(Protocol):
    async def search(
        self,
        vector: Sequence[float],
        scope: NeighborScope,
        k: int,
        max_distance: float,
        exclude_id: int | None = None,
    ) -> list[Neighbor]: ...

    async def search_many(
        self,
        queries: list[tuple[int, Sequence[float]]],
        scope: NeighborScope,
        k: int,
        max_distance: float,
    ) -> dict[int, list[Neighbor]]: ...


def _columns(scope: NeighborScope):
    """(model, id, category, subcategory, embedding, filters) for a scope."""
    if scope.source == NeighborSource.LABELED_EXAMPLES:
        return (
            LabeledExample.id,
            LabeledExample.category_id,
            LabeledExample.subcategory_id,
            LabeledExample.embedding,
            [LabeledExample.user_id == scope.user_id, LabeledExample.embedding.is_not(None)],
        )

    category = func.coalesce(Transaction.category_id, Transaction.ai_category_id)
    subcategory = case(
        (Transaction.category_id.is_not(None), Transaction.subcategory_id),
        else_=Transaction.ai_subcategory_id,
    )
    filters = [Transaction.user_id == scope.user_id, Transaction.embedding.is_not(None)]
    if scope.categorized is True:
        filters.append(category.is_not(None))
    elif scope.categorized is False:
        filters.append(Transaction.category_id.is_(None))
    return Transaction.id, category, subcategory, Transaction.embedding, filters


class PgVectorNeighbors:
    """Cosine distance (``<=>``) computed by PostgreSQL."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def search(
        self,
        vector: Sequence[float],
        scope: NeighborScope,
        k: int,
        max_distance: float,
        exclude_id: int | None = None,
    ) -> list[Neighbor]:
        id_col, category, subcategory, embedding, filters = _columns(scope)
        distance = embedding.cosine_distance(list(map(float, vector)))

        stmt = (
            select(id_col, category, subcategory, distance.label("distance"))
            .where(*filters, distance < max_distance)
            .order_by(distance)
            .limit(k)
        )
        if exclude_id is not None:
            stmt = stmt.where(id_col != exclude_id)

        result = await self.db.execute(stmt)
        return [
            Neighbor(id=row[0], category_id=row[1], subcategory_id=row[2], distance=float(row[3]))
            for row in result.all()
        ]

    async def search_many(
        self,
        queries: list[tuple[int, Sequence[float]]],
        scope: NeighborScope,
        k: int,
        max_distance: float,
    ) -> dict[int, list[Neighbor]]:
        exclude_self = scope.source == NeighborSource.TRANSACTIONS
        return {
            query_id: await self.search(
                vector, scope, k, max_distance, exclude_id=query_id if exclude_self else None
            )
            for query_id, vector in queries
        }


class InMemoryNeighbors:
    """Loads the scope's embeddings once and ranks them with numpy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _candidates(self, scope: NeighborScope):
        id_col, category, subcategory, embedding, filters = _columns(scope)
        result = await self.db.execute(select(id_col, category, subcategory, embedding).where(*filters))
        rows = [row for row in result.all() if row[3] is not None]
        if not rows:
            return [], None
        matrix = np.array([np.asarray(row[3], dtype=float) for row in rows])
        return rows, matrix

    @staticmethod
    def _rank(rows, similarities, k, max_distance, exclude_id) -> list[Neighbor]:
        neighbors = []
        for idx in np.argsort(-similarities, kind="stable"):
            row = rows[idx]
            if exclude_id is not None and row[0] == exclude_id:
                continue
            distance = 1.0 - float(similarities[idx])
            if distance >= max_distance:
                break
            neighbors.append(Neighbor(id=row[0], category_id=row[1], subcategory_id=row[2], distance=distance))
            if len(neighbors) >= k:
                break
        return neighbors

    async def search(
        self,
        vector: Sequence[float],
        scope: NeighborScope,
        k: int,
        max_distance: float,
        exclude_id: int | None = None,
    ) -> list[Neighbor]:
        rows, matrix = await self._candidates(scope)
        if not rows:
            return []
        query = np.asarray(vector, dtype=float).reshape(1, -1)
        similarities = cosine_similarity(query, matrix)[0]
        return self._rank(rows, similarities, k, max_distance, exclude_id)

    async def search_many(
        self,
        queries: list[tuple[int, Sequence[float]]],
        scope: NeighborScope,
        k: int,
        max_distance: float,
    ) -> dict[int, list[Neighbor]]:
        if not queries:
            return {}
        rows, matrix = await self._candidates(scope)
        if not rows:
            return {query_id: [] for query_id, _ in queries}

        exclude_self = scope.source == NeighborSource.TRANSACTIONS
        query_matrix = np.array([np.asarray(v, dtype=float) for _, v in queries])
        similarities = cosine_similarity(query_matrix, matrix)
        return {
            query_id: self._rank(
                rows, similarities[i], k, max_distance, query_id if exclude_self else None
            )
            for i, (query_id, _) in enumerate(queries)
        }


def neighbors_for(db: AsyncSession) -> NearestNeighbors:
    """pgvector on PostgreSQL, in-process search anywhere else."""
    if dialect_name(db) == "postgresql":
        return PgVectorNeighbors(db)
    return InMemoryNeighbors(db)
