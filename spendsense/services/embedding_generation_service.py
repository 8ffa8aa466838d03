"""Embedding generation, decoupled from categorization.

Runs from background jobs. Finds transactions without an embedding
(``embedding_generated_at IS NULL``), embeds their normalized descriptions
in batches and stores the vectors. Idempotent: a transaction is only picked
up again while its timestamp is still empty, so retries are safe.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.config import settings
from spendsense.core.exceptions import ProviderError
from spendsense.core.retry import rate_limit_retrying
from spendsense.models.labeled_example import LabeledExample
from spendsense.models.transaction import Transaction
from spendsense.services.embedder import Embedder, get_embedder
from spendsense.services.normalization import normalize

logger = structlog.get_logger()

DEFAULT_LIMIT = 500


@dataclass
class GenerationResult:
    success: bool
    generated_count: int = 0
    failed_count: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def total_processed(self) -> int:
        return self.generated_count + self.failed_count


class EmbeddingGenerationService:
    def __init__(
        self,
        db: AsyncSession,
        embedder: Embedder | None = None,
        user_id: int | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
    ):
        self.db = db
        self.embedder = embedder or get_embedder()
        self.user_id = user_id
        self.batch_size = batch_size or settings.embedding_generation_batch_size
        self.max_retries = settings.llm_max_retries if max_retries is None else max_retries
        self.retry_base_delay = (
            settings.llm_retry_base_delay if retry_base_delay is None else retry_base_delay
        )
        self.errors: list[str] = []

    # ── Transactions ────────────────────────────────────

    async def generate_batch(
        self,
        limit: int = DEFAULT_LIMIT,
        transaction_ids: list[int] | None = None,
    ) -> GenerationResult:
        """Embed up to ``limit`` transactions that have none yet."""
        start = time.monotonic()
        self.errors = []

        if not self.embedder.configured:
            return GenerationResult(success=False, errors=["Embedding provider not configured"])

        transactions = await self._find_transactions_needing_embeddings(limit, transaction_ids)
        if not transactions:
            return GenerationResult(success=True)

        generated = failed = 0
        for offset in range(0, len(transactions), self.batch_size):
            batch = transactions[offset : offset + self.batch_size]
            batch_generated, batch_failed = await self._process_batch(batch)
            generated += batch_generated
            failed += batch_failed
            logger.info(
                "embedding_generation_progress",
                processed=generated + failed,
                total=len(transactions),
            )

        await self.db.flush()
        result = GenerationResult(
            success=not self.errors,
            generated_count=generated,
            failed_count=failed,
            errors=list(self.errors),
            duration=time.monotonic() - start,
        )
        logger.info(
            "embedding_generation_finished",
            user_id=self.user_id,
            generated=result.generated_count,
            failed=result.failed_count,
            duration=round(result.duration, 3),
        )
        return result

    async def generate_single(self, transaction: Transaction) -> list[float] | None:
        """Embed one transaction now. Returns the vector, or None."""
        if not self.embedder.configured:
            return None
        text = normalize(transaction.text)
        if not text:
            transaction.embedding_generated_at = datetime.now(timezone.utc)
            await self.db.flush()
            return None

        embeddings = await self._embed([text])
        if not embeddings:
            return None
        self._store(transaction, embeddings[0])
        await self.db.flush()
        return embeddings[0]

    # ── Labeled examples ────────────────────────────────

    async def generate_for_labeled_example(self, example: LabeledExample) -> list[float] | None:
        if not self.embedder.configured:
            return None
        text = example.normalized_description or example.description
        if not text:
            return None

        embeddings = await self._embed([text])
        if not embeddings:
            return None
        example.embedding = embeddings[0]
        example.embedding_generated_at = datetime.now(timezone.utc)
        await self.db.flush()
        return embeddings[0]

    # ── Internals ───────────────────────────────────────

    async def _find_transactions_needing_embeddings(
        self, limit: int, transaction_ids: list[int] | None
    ) -> list[Transaction]:
        query = select(Transaction).where(Transaction.embedding_generated_at.is_(None))
        if self.user_id is not None:
            query = query.where(Transaction.user_id == self.user_id)
        if transaction_ids is not None:
            query = query.where(Transaction.id.in_(transaction_ids))
        query = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _process_batch(self, transactions: list[Transaction]) -> tuple[int, int]:
        """Returns (generated, failed) for one provider call."""
        items = [(tx, normalize(tx.text)) for tx in transactions]
        valid = [(tx, text) for tx, text in items if text]
        blank = [tx for tx, text in items if not text]

        # Nothing to embed: mark as done so they are not picked up again
        if blank:
            await self.db.execute(
                update(Transaction)
                .where(Transaction.id.in_([tx.id for tx in blank]))
                .values(embedding_generated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session="fetch")
            )

        if not valid:
            return len(blank), 0

        embeddings = await self._embed([text for _, text in valid])
        if embeddings is None:
            return len(blank), len(valid)

        generated = failed = 0
        for index, (tx, _) in enumerate(valid):
            embedding = embeddings[index] if index < len(embeddings) else None
            if embedding is None:
                failed += 1
                self.errors.append(f"Failed to get embedding for transaction #{tx.id}")
                continue
            self._store(tx, embedding)
            generated += 1
        return generated + len(blank), failed

    async def _embed(self, texts: list[str]) -> list[list[float]] | None:
        try:
            async for attempt in rate_limit_retrying(self.max_retries, self.retry_base_delay):
                with attempt:
                    return await self.embedder.embed(texts)
        except ProviderError as e:
            logger.warning("embedding_provider_failed", provider=e.provider, error=type(e).__name__)
            self.errors.append(f"API error: {e.detail}")
            return None
        except Exception as e:
            logger.warning("embedding_generation_error", error=type(e).__name__, detail=str(e)[:200])
            self.errors.append(f"Unexpected error: {type(e).__name__}")
            return None

    @staticmethod
    def _store(transaction: Transaction, embedding: list[float]) -> None:
        transaction.embedding = embedding
        transaction.embedding_generated_at = datetime.now(timezone.utc)
