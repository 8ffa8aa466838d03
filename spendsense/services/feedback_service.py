"""User corrections: the explicit learning loop.

A correction is authoritative. It fills the confirmed category slot, then
creates (or re-points) a keyword rule and a labeled example so the next
similar transaction is categorized the user's way without the LLM.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.core.database import insert_or_ignore
from spendsense.core.exceptions import SubcategoryMismatchError
from spendsense.jobs.queue import EmbeddingQueue, get_embedding_queue
from spendsense.models.labeled_example import LabeledExample
from spendsense.models.transaction import Transaction
from spendsense.models.user_rule import UserRule
from spendsense.services.neighbors import NearestNeighbors, NeighborScope, NeighborSource, neighbors_for
from spendsense.services.normalization import normalize
from spendsense.services.results import tx_kind_for
from spendsense.services.taxonomy_cache import (
    CategoryCache,
    CategoryEntry,
    SubcategoryCache,
    SubcategoryEntry,
)

logger = structlog.get_logger()

FEEDBACK_PATTERN_WORDS = 3
SIMILAR_MAX_DISTANCE = 0.15
SIMILAR_MAX_COUNT = 50

TRANSFER_KINDS = {
    "transfer-self": "transfer_self",
    "transfer-wallet": "transfer_wallet",
    "transfer-p2p": "transfer_p2p",
}


@dataclass
class FeedbackResult:
    success: bool
    rule: UserRule | None = None
    example: LabeledExample | None = None
    message: str = ""


class FeedbackService:
    def __init__(
        self,
        db: AsyncSession,
        category_cache: CategoryCache,
        subcategory_cache: SubcategoryCache,
        embedding_queue: EmbeddingQueue | None = None,
        neighbors: NearestNeighbors | None = None,
    ):
        self.db = db
        self.category_cache = category_cache
        self.subcategory_cache = subcategory_cache
        self.embedding_queue = embedding_queue or get_embedding_queue()
        self.neighbors = neighbors or neighbors_for(db)

    async def process_correction(
        self,
        transaction: Transaction,
        category_slug: str,
        subcategory_slug: str | None = None,
        user_id: int | None = None,
    ) -> FeedbackResult:
        """Apply a user's category to ``transaction`` and learn from it.

        Raises SubcategoryMismatchError when the subcategory belongs to
        another category; an unknown category is reported in the result.
        """
        category = await self.category_cache.find_by_slug(category_slug)
        if category is None:
            return FeedbackResult(success=False, message=f"Unknown category '{category_slug}'")
        subcategory = await self._resolve_subcategory(category, subcategory_slug)
        user_id = user_id if user_id is not None else transaction.user_id

        previous = await self.category_cache.find_by_id(transaction.ai_category_id)
        transaction_id = transaction.id
        try:
            # The confirmed slot and both learned artifacts commit together
            async with self.db.begin_nested():
                transaction.category_id = category.id
                transaction.subcategory_id = subcategory.id if subcategory else None
                transaction.tx_kind = self._tx_kind(category, subcategory, transaction)
                transaction.is_reviewed = True
                transaction.metadata_ = {
                    **(transaction.metadata_ or {}),
                    "user_corrected": True,
                    "corrected_at": datetime.now(timezone.utc).isoformat(),
                    "previous_category": previous.slug if previous else None,
                }
                await self.db.flush()

                normalized = normalize(transaction.text)
                rule = await self._upsert_rule(transaction, user_id, category, subcategory, normalized)
                example = await self._upsert_example(transaction, user_id, category, subcategory, normalized)
        except SQLAlchemyError as e:
            logger.error(
                "feedback_failed",
                transaction_id=transaction_id,
                error=type(e).__name__,
            )
            # The rolled-back savepoint expired the row; reload what is stored
            await self.db.refresh(transaction)
            return FeedbackResult(success=False, message="An error occurred while processing feedback")

        if example is not None and example.embedding_generated_at is None:
            self.embedding_queue.enqueue_labeled_example(example.id)

        parts = []
        if rule is not None:
            parts.append(f"Created rule '{rule.pattern}'")
        if example is not None:
            parts.append("Saved as labeled example")
        logger.info(
            "feedback_recorded",
            transaction_id=transaction.id,
            category=category.slug,
            previous_category=previous.slug if previous else None,
            rule_id=rule.id if rule else None,
            example_id=example.id if example else None,
        )
        return FeedbackResult(
            success=True,
            rule=rule,
            example=example,
            message=" and ".join(parts) if parts else "Feedback recorded",
        )

    async def apply_to_similar(
        self,
        transaction: Transaction,
        category_slug: str,
        subcategory_slug: str | None = None,
        max_count: int = SIMILAR_MAX_COUNT,
    ) -> dict:
        """Give the user's near-identical uncategorized transactions the same category.

        Updated rows are left unreviewed. Returns ``{"updated": n, "ids": [...]}``.
        """
        if transaction.embedding is None:
            return {"updated": 0, "ids": []}
        category = await self.category_cache.find_by_slug(category_slug)
        if category is None:
            return {"updated": 0, "ids": []}
        subcategory = await self._resolve_subcategory(category, subcategory_slug)

        similar = await self.neighbors.search(
            transaction.embedding,
            NeighborScope(NeighborSource.TRANSACTIONS, transaction.user_id, categorized=False),
            k=max_count,
            max_distance=SIMILAR_MAX_DISTANCE,
            exclude_id=transaction.id,
        )
        ids = [neighbor.id for neighbor in similar]
        if not ids:
            return {"updated": 0, "ids": []}

        # Load and assign so rows already in the session see the new category
        result = await self.db.execute(select(Transaction).where(Transaction.id.in_(ids)))
        for similar_tx in result.scalars():
            similar_tx.category_id = category.id
            similar_tx.subcategory_id = subcategory.id if subcategory else None
            similar_tx.is_reviewed = False
        await self.db.flush()
        logger.info("feedback_applied_to_similar", transaction_id=transaction.id, updated=len(ids))
        return {"updated": len(ids), "ids": ids}

    # ── Internals ───────────────────────────────────────

    async def _resolve_subcategory(
        self, category: CategoryEntry, subcategory_slug: str | None
    ) -> SubcategoryEntry | None:
        if not subcategory_slug:
            return await self.subcategory_cache.default_for_category(category)
        subcategory = await self.subcategory_cache.find_by_slug(subcategory_slug)
        if subcategory is None:
            return await self.subcategory_cache.default_for_category(category)
        if subcategory.category_id != category.id:
            raise SubcategoryMismatchError(subcategory.slug, category.slug)
        return subcategory

    @staticmethod
    def _tx_kind(
        category: CategoryEntry,
        subcategory: SubcategoryEntry | None,
        transaction: Transaction,
    ) -> str:
        if subcategory is not None and subcategory.slug in TRANSFER_KINDS:
            return TRANSFER_KINDS[subcategory.slug]
        return tx_kind_for(category.slug, transaction.transaction_type)

    async def _upsert_rule(
        self,
        transaction: Transaction,
        user_id: int,
        category: CategoryEntry,
        subcategory: SubcategoryEntry | None,
        normalized: str,
    ) -> UserRule | None:
        pattern = " ".join(normalized.split()[:FEEDBACK_PATTERN_WORDS])
        if not pattern:
            return None

        await insert_or_ignore(
            self.db,
            UserRule,
            {
                "user_id": user_id,
                "category_id": category.id,
                "pattern": pattern,
                "pattern_type": "keyword",
                "match_field": "normalized",
                "priority": 0,
                "match_count": 0,
                "is_active": True,
                "source": "feedback",
            },
            ["user_id", "pattern"],
        )
        result = await self.db.execute(
            select(UserRule).where(UserRule.user_id == user_id, UserRule.pattern == pattern)
        )
        rule = result.scalar_one()

        # The user's latest word wins over whatever the rule said before
        rule.category_id = category.id
        rule.subcategory_id = subcategory.id if subcategory else None
        rule.pattern_type = "keyword"
        rule.match_field = "normalized"
        rule.source = "feedback"
        rule.is_active = True
        rule.source_transaction_id = transaction.id
        await self.db.flush()
        return rule

    async def _upsert_example(
        self,
        transaction: Transaction,
        user_id: int,
        category: CategoryEntry,
        subcategory: SubcategoryEntry | None,
        normalized: str,
    ) -> LabeledExample | None:
        if not normalized:
            return None

        await insert_or_ignore(
            self.db,
            LabeledExample,
            {
                "user_id": user_id,
                "category_id": category.id,
                "description": transaction.text,
                "normalized_description": normalized,
                "source": "user_feedback",
            },
            ["user_id", "normalized_description"],
        )
        result = await self.db.execute(
            select(LabeledExample).where(
                LabeledExample.user_id == user_id,
                LabeledExample.normalized_description == normalized,
            )
        )
        example = result.scalar_one()

        example.category_id = category.id
        example.subcategory_id = subcategory.id if subcategory else None
        example.transaction_id = transaction.id
        example.description = transaction.text
        example.amount = transaction.amount
        example.transaction_type = transaction.transaction_type
        example.source = "user_feedback"
        # Same text, same vector: reuse the transaction's when it has one
        if transaction.embedding is not None:
            example.embedding = transaction.embedding
            example.embedding_generated_at = transaction.embedding_generated_at or datetime.now(
                timezone.utc
            )
        await self.db.flush()
        return example
