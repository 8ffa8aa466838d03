"""Categorization triage: rules, then embeddings, then the LLM.

Each tier is more expensive than the one before, so a tier only runs when
the cheaper ones left the transaction without a confident answer:

    rules       free, deterministic (transfer classifier, user rules,
                system keywords, verified global patterns)
    embeddings  uses only embeddings that already exist; never generated here
    llm         paid and slow; confident answers are learned from

The best candidate by confidence wins. A transaction always ends up
``completed``, categorized or not. Tier failures are logged and treated as
"no candidate"; only a failed write of the result is raised to the caller.
"""

from collections import defaultdict

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.config import settings
from spendsense.core.exceptions import StoreUpdateError
from spendsense.jobs.queue import EmbeddingQueue, get_embedding_queue
from spendsense.models.transaction import Transaction
from spendsense.services.batch_embedding_service import BatchEmbeddingService
from spendsense.services.batch_rule_engine import BatchRuleEngine
from spendsense.services.embedding_service import EmbeddingService
from spendsense.services.llm_auto_learn_service import LLMAutoLearnService
from spendsense.services.llm_service import LLMService
from spendsense.services.neighbors import NearestNeighbors, neighbors_for
from spendsense.services.normalization import normalize
from spendsense.services.results import CategorizationResult, MissReason, best_of
from spendsense.services.rule_engine import RuleEngine
from spendsense.services.taxonomy_cache import CategoryCache, SubcategoryCache
from spendsense.services.transfer_classifier import TransferClassifier

logger = structlog.get_logger()

NO_RESULT_EXPLANATION = "No categorization method succeeded"


class CategorizationService:
    def __init__(
        self,
        db: AsyncSession,
        category_cache: CategoryCache,
        subcategory_cache: SubcategoryCache,
        llm_service: LLMService | None = None,
        embedding_queue: EmbeddingQueue | None = None,
        neighbors: NearestNeighbors | None = None,
        transfer_classifier: TransferClassifier | None = None,
        enable_embeddings: bool | None = None,
        enable_llm: bool = True,
        enable_auto_learn: bool = True,
    ):
        self.db = db
        self.category_cache = category_cache
        self.subcategory_cache = subcategory_cache
        self.llm = llm_service or LLMService(category_cache, subcategory_cache)
        self.embedding_queue = embedding_queue or get_embedding_queue()
        self.neighbors = neighbors or neighbors_for(db)
        self.transfer_classifier = transfer_classifier or TransferClassifier()
        self.enable_embeddings = (
            settings.embedding_enabled if enable_embeddings is None else enable_embeddings
        )
        self.enable_llm = enable_llm
        self.enable_auto_learn = enable_auto_learn

        self.confidence_threshold = settings.categorization_confidence_threshold
        self.embedding_threshold = settings.categorization_embedding_threshold
        self.llm_threshold = settings.categorization_llm_threshold
        self.batch_threshold = settings.categorization_batch_threshold

    @property
    def llm_enabled(self) -> bool:
        return self.enable_llm and self.llm.configured

    # ── Single transaction ──────────────────────────────

    async def categorize(
        self,
        transaction: Transaction,
        user_id: int | None = None,
        queue_embedding: bool = True,
    ) -> CategorizationResult:
        user_id = user_id if user_id is not None else transaction.user_id
        normalized = normalize(transaction.text)

        transaction.categorization_status = "processing"
        await self._flush(transaction.id)

        result = await self._try_rules(transaction, user_id)

        if self.enable_embeddings and (result is None or result.confidence < self.confidence_threshold):
            result = best_of(result, await self._try_embeddings(transaction))

        if self.llm_enabled and (result is None or result.confidence < self.llm_threshold):
            result = best_of(result, await self._try_llm(transaction, normalized))

        if result is not None and result.method == "llm":
            await self._auto_learn(transaction, result, user_id)

        needs_embedding = self._needs_embedding(transaction)
        await self._save(transaction, result, normalized, needs_embedding)

        if needs_embedding and queue_embedding:
            self.embedding_queue.enqueue_transaction(transaction.id)

        return self._final(result, needs_embedding)

    # ── Batch ───────────────────────────────────────────

    async def categorize_batch(
        self,
        transactions: list[Transaction],
        user_id: int | None = None,
        force_batch: bool = False,
        queue_embeddings: bool = True,
    ) -> list[CategorizationResult]:
        """Categorize many transactions; results come back in input order.

        Small batches run one by one (less setup); larger ones share rule
        indexes and neighbor scans. Either way embeddings are queued as a
        single job.
        """
        if not transactions:
            return []

        await self.category_cache.ensure_loaded()
        await self.subcategory_cache.ensure_loaded()

        if len(transactions) < self.batch_threshold and not force_batch:
            return await self._categorize_individually(transactions, user_id, queue_embeddings)

        for tx in transactions:
            tx.categorization_status = "processing"
        await self._flush(None)

        # Phase 1: rules, grouped by owner so each user's rules apply
        rule_engine = BatchRuleEngine(
            self.db, self.category_cache, self.subcategory_cache, self.transfer_classifier
        )
        by_user: dict[int, list[Transaction]] = defaultdict(list)
        for tx in transactions:
            by_user[user_id if user_id is not None else tx.user_id].append(tx)
        rule_results: dict[int, CategorizationResult] = {}
        for owner_id, owned in by_user.items():
            try:
                async with self.db.begin_nested():
                    rule_results.update(await rule_engine.categorize_batch(owned, owner_id))
            except Exception as e:
                logger.warning("batch_rules_failed", user_id=owner_id, error=type(e).__name__)
        rule_results = {tx_id: r for tx_id, r in rule_results.items() if r.success}

        remaining = [
            tx
            for tx in transactions
            if tx.id not in rule_results or rule_results[tx.id].confidence < self.confidence_threshold
        ]
        logger.info("batch_phase_rules", matched=len(transactions) - len(remaining), total=len(transactions))

        # Phase 2: similarity over what the rules left
        embedding_results: dict[int, CategorizationResult] = {}
        if self.enable_embeddings and remaining:
            try:
                async with self.db.begin_nested():
                    found = await BatchEmbeddingService(
                        self.db, self.category_cache, self.subcategory_cache, self.neighbors
                    ).find_similar_batch(remaining)
            except Exception as e:
                logger.warning("batch_embeddings_failed", error=type(e).__name__)
                found = {}
            embedding_results = {
                tx_id: r for tx_id, r in found.items() if r.success and r.confidence >= self.embedding_threshold
            }
            logger.info("batch_phase_embeddings", matched=len(embedding_results), total=len(remaining))

        # Phase 3: one LLM call per transaction still without a usable answer
        llm_results: dict[int, CategorizationResult] = {}
        if self.llm_enabled:
            for tx in remaining:
                best = best_of(rule_results.get(tx.id), embedding_results.get(tx.id))
                if best is not None and best.confidence >= self.llm_threshold:
                    continue
                candidate = await self._try_llm(tx, normalize(tx.text))
                if candidate is not None:
                    llm_results[tx.id] = candidate
            logger.info("batch_phase_llm", matched=len(llm_results))

        results = []
        needs_embedding_ids = []
        for tx in transactions:
            result = best_of(rule_results.get(tx.id), embedding_results.get(tx.id), llm_results.get(tx.id))
            if result is not None and result.method == "llm":
                await self._auto_learn(tx, result, user_id if user_id is not None else tx.user_id)

            needs_embedding = self._needs_embedding(tx)
            if needs_embedding:
                needs_embedding_ids.append(tx.id)
            await self._save(tx, result, normalize(tx.text), needs_embedding)
            results.append(self._final(result, needs_embedding))

        if needs_embedding_ids and queue_embeddings:
            self.embedding_queue.enqueue_transactions(needs_embedding_ids, user_id)

        logger.info(
            "batch_categorization_finished",
            total=len(transactions),
            categorized=sum(1 for r in results if r.success),
            queued_for_embedding=len(needs_embedding_ids),
        )
        return results

    async def _categorize_individually(
        self,
        transactions: list[Transaction],
        user_id: int | None,
        queue_embeddings: bool,
    ) -> list[CategorizationResult]:
        results = []
        needs_embedding_ids = []
        for tx in transactions:
            result = await self.categorize(tx, user_id, queue_embedding=False)
            if result.needs_embedding:
                needs_embedding_ids.append(tx.id)
            results.append(result)

        if needs_embedding_ids and queue_embeddings:
            self.embedding_queue.enqueue_transactions(needs_embedding_ids, user_id)
        return results

    # ── Tiers ───────────────────────────────────────────

    # Tiers that touch the store run in a savepoint so a failed statement
    # cannot poison the session for the writes that follow.

    async def _try_rules(self, transaction: Transaction, user_id: int | None) -> CategorizationResult | None:
        transaction_id = transaction.id
        try:
            async with self.db.begin_nested():
                result = await RuleEngine(
                    self.db, self.category_cache, self.subcategory_cache, self.transfer_classifier
                ).categorize(transaction, user_id)
        except Exception as e:
            logger.warning("rules_failed", transaction_id=transaction_id, error=type(e).__name__)
            return None
        if not result.success:
            return None
        logger.debug("rules_matched", transaction_id=transaction.id, confidence=result.confidence)
        return result

    async def _try_embeddings(self, transaction: Transaction) -> CategorizationResult | None:
        transaction_id = transaction.id
        try:
            async with self.db.begin_nested():
                result = await EmbeddingService(
                    self.db, self.category_cache, self.subcategory_cache, self.neighbors
                ).categorize(transaction)
        except Exception as e:
            logger.warning("embeddings_failed", transaction_id=transaction_id, error=type(e).__name__)
            return None
        if not result.success or result.confidence < self.embedding_threshold:
            return None
        logger.debug("embeddings_matched", transaction_id=transaction.id, confidence=result.confidence)
        return result

    async def _try_llm(self, transaction: Transaction, normalized: str) -> CategorizationResult | None:
        try:
            result = await self.llm.categorize(transaction, normalized)
        except Exception as e:
            logger.warning("llm_failed", transaction_id=transaction.id, error=type(e).__name__)
            return None
        return result if result.success else None

    async def _auto_learn(self, transaction: Transaction, result: CategorizationResult, user_id: int) -> None:
        if not self.enable_auto_learn:
            return
        transaction_id = transaction.id
        try:
            await LLMAutoLearnService(self.db, self.embedding_queue).learn(transaction, result, user_id)
        except Exception as e:
            logger.warning("auto_learn_failed", transaction_id=transaction_id, error=type(e).__name__)
            # Learning rolled back its savepoint, which expires the row
            try:
                await self.db.refresh(transaction)
            except SQLAlchemyError as refresh_error:
                raise StoreUpdateError(transaction_id, type(refresh_error).__name__) from refresh_error

    # ── Persistence ─────────────────────────────────────

    def _needs_embedding(self, transaction: Transaction) -> bool:
        return self.enable_embeddings and transaction.embedding_generated_at is None

    async def _save(
        self,
        transaction: Transaction,
        result: CategorizationResult | None,
        normalized: str,
        needs_embedding: bool,
    ) -> None:
        if result is not None and result.success:
            transaction.ai_category_id = result.category.id
            transaction.ai_subcategory_id = result.subcategory.id if result.subcategory else None
            transaction.tx_kind = result.tx_kind
            transaction.counterparty_name = result.counterparty_name
            transaction.confidence = result.confidence
            transaction.ai_explanation = result.explanation
            transaction.metadata_ = {
                **(transaction.metadata_ or {}),
                "categorization_method": result.method,
                "normalized_description": normalized,
                "needs_embedding": needs_embedding,
            }
            logger.info(
                "transaction_categorized",
                transaction_id=transaction.id,
                category=result.category.slug,
                method=result.method,
                confidence=round(result.confidence, 2),
            )
        else:
            logger.info("transaction_uncategorized", transaction_id=transaction.id)
        transaction.categorization_status = "completed"
        await self._flush(transaction.id)

    async def _flush(self, transaction_id: int | None) -> None:
        """Flush pending writes; ``transaction_id`` is None for a whole batch."""
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            logger.error("categorization_store_failed", transaction_id=transaction_id, error=type(e).__name__)
            raise StoreUpdateError(transaction_id, type(e).__name__) from e

    @staticmethod
    def _final(result: CategorizationResult | None, needs_embedding: bool) -> CategorizationResult:
        if result is not None and result.success:
            result.needs_embedding = needs_embedding
            return result
        return CategorizationResult.miss(
            "none", MissReason.NO_MATCH, NO_RESULT_EXPLANATION, needs_embedding=needs_embedding
        )
