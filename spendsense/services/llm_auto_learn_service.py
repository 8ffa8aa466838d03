"""Learning from confident LLM answers.

When the LLM categorizes a transaction with high confidence, the answer is
turned into cheap artifacts so the next similar transaction never reaches
the LLM:

1. a low-priority keyword UserRule (``source="llm_auto"``)
2. a LabeledExample for similarity search (embedded later, in a job)
3. a GlobalPattern contribution for cross-user learning

Everything is written through the caller's session inside one savepoint; the
caller commits. A failure rolls the savepoint back and propagates.
"""

from dataclasses import dataclass

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.config import settings
from spendsense.core.database import insert_or_ignore
from spendsense.jobs.queue import EmbeddingQueue, get_embedding_queue
from spendsense.models.global_pattern import GlobalPattern
from spendsense.models.labeled_example import LabeledExample
from spendsense.models.transaction import Transaction
from spendsense.models.user_rule import UserRule
from spendsense.services.global_pattern_service import GlobalPatternService
from spendsense.services.normalization import meaningful_pattern, normalize
from spendsense.services.results import CategorizationResult

logger = structlog.get_logger()

MIN_RULE_PATTERN_LENGTH = 5
AUTO_RULE_PRIORITY = -1  # below anything a user creates


@dataclass
class LearningOutcome:
    learned: bool = False
    rule: UserRule | None = None
    example: LabeledExample | None = None
    global_pattern: GlobalPattern | None = None
    message: str = ""


class LLMAutoLearnService:
    def __init__(
        self,
        db: AsyncSession,
        embedding_queue: EmbeddingQueue | None = None,
        global_patterns: GlobalPatternService | None = None,
        min_confidence: float | None = None,
        max_rules_per_category: int | None = None,
    ):
        self.db = db
        self.embedding_queue = embedding_queue or get_embedding_queue()
        self.global_patterns = global_patterns or GlobalPatternService(db)
        self.min_confidence = (
            settings.auto_learn_min_confidence if min_confidence is None else min_confidence
        )
        self.max_rules_per_category = (
            settings.auto_learn_max_rules_per_category
            if max_rules_per_category is None
            else max_rules_per_category
        )

    async def learn(
        self,
        transaction: Transaction,
        result: CategorizationResult,
        user_id: int | None = None,
    ) -> LearningOutcome:
        if result.confidence < self.min_confidence:
            return LearningOutcome(message="Confidence too low")
        if result.category is None:
            return LearningOutcome(message="Category missing")
        user_id = user_id if user_id is not None else transaction.user_id
        if user_id is None:
            return LearningOutcome(message="User missing")

        normalized = normalize(transaction.text)
        if not normalized:
            return LearningOutcome(message="Nothing to learn from a blank description")
        pattern = meaningful_pattern(normalized)

        # A failure part way leaves no rule without its example or pattern
        async with self.db.begin_nested():
            rule, rule_created = await self._find_or_create_rule(transaction, result, user_id, pattern)
            example, example_created = await self._find_or_create_example(
                transaction, result, user_id, normalized
            )
            global_pattern = await self._record_global_pattern(result, user_id, pattern)

            # The suggestion slot; confirmed fields stay for the user to review
            transaction.ai_category_id = result.category.id
            transaction.ai_subcategory_id = result.subcategory.id if result.subcategory else None
            transaction.tx_kind = result.tx_kind
            await self.db.flush()

        if example is not None and example.embedding_generated_at is None:
            self.embedding_queue.enqueue_labeled_example(example.id)

        outcome = LearningOutcome(
            learned=rule_created or example_created or global_pattern is not None,
            rule=rule,
            example=example,
            global_pattern=global_pattern,
            message=self._message(
                rule if rule_created else None,
                example if example_created else None,
                global_pattern,
            ),
        )
        if outcome.learned:
            logger.info(
                "llm_auto_learned",
                transaction_id=transaction.id,
                category=result.category.slug,
                confidence=round(result.confidence, 2),
                rule_created=rule_created,
                example_created=example_created,
                global_pattern_id=global_pattern.id if global_pattern else None,
            )
        else:
            logger.debug("llm_auto_learn_skipped", transaction_id=transaction.id, message=outcome.message)
        return outcome

    # ── Artifacts ───────────────────────────────────────

    async def _find_or_create_rule(
        self,
        transaction: Transaction,
        result: CategorizationResult,
        user_id: int,
        pattern: str,
    ) -> tuple[UserRule | None, bool]:
        if len(pattern) < MIN_RULE_PATTERN_LENGTH:
            return None, False

        existing = await self._find_rule(user_id, pattern)
        if existing is not None:
            return existing, False

        auto_rules = await self.db.scalar(
            select(func.count(UserRule.id)).where(
                UserRule.user_id == user_id,
                UserRule.category_id == result.category.id,
                UserRule.source == "llm_auto",
            )
        )
        if auto_rules >= self.max_rules_per_category:
            logger.debug("llm_auto_rule_cap_reached", user_id=user_id, category=result.category.slug)
            return None, False

        await insert_or_ignore(
            self.db,
            UserRule,
            {
                "user_id": user_id,
                "category_id": result.category.id,
                "subcategory_id": result.subcategory.id if result.subcategory else None,
                "pattern": pattern,
                "pattern_type": "keyword",
                "match_field": "normalized",
                "priority": AUTO_RULE_PRIORITY,
                "match_count": 0,
                "is_active": True,
                "source": "llm_auto",
                "source_transaction_id": transaction.id,
            },
            ["user_id", "pattern"],
        )
        rule = await self._find_rule(user_id, pattern)
        return rule, rule is not None and rule.source_transaction_id == transaction.id

    async def _find_rule(self, user_id: int, pattern: str) -> UserRule | None:
        result = await self.db.execute(
            select(UserRule).where(UserRule.user_id == user_id, UserRule.pattern == pattern)
        )
        return result.scalar_one_or_none()

    async def _find_or_create_example(
        self,
        transaction: Transaction,
        result: CategorizationResult,
        user_id: int,
        normalized: str,
    ) -> tuple[LabeledExample | None, bool]:
        existing = await self._find_example(user_id, normalized)
        if existing is not None:
            return existing, False

        await insert_or_ignore(
            self.db,
            LabeledExample,
            {
                "user_id": user_id,
                "category_id": result.category.id,
                "subcategory_id": result.subcategory.id if result.subcategory else None,
                "transaction_id": transaction.id,
                "description": transaction.text,
                "normalized_description": normalized,
                "source": "llm_auto",
                "amount": transaction.amount,
                "transaction_type": transaction.transaction_type,
            },
            ["user_id", "normalized_description"],
        )
        example = await self._find_example(user_id, normalized)
        return example, example is not None and example.transaction_id == transaction.id

    async def _find_example(self, user_id: int, normalized: str) -> LabeledExample | None:
        result = await self.db.execute(
            select(LabeledExample).where(
                LabeledExample.user_id == user_id,
                LabeledExample.normalized_description == normalized,
            )
        )
        return result.scalar_one_or_none()

    async def _record_global_pattern(
        self,
        result: CategorizationResult,
        user_id: int,
        pattern: str,
    ) -> GlobalPattern | None:
        if len(pattern) < MIN_RULE_PATTERN_LENGTH:
            return None
        global_pattern = await self.global_patterns.record_pattern(
            pattern, result.category.id, user_id, source="llm_auto"
        )
        # Same text already filed elsewhere counts this user as disagreeing there
        await self.global_patterns.record_disagreement(pattern, result.category.id, user_id)
        return global_pattern

    @staticmethod
    def _message(
        rule: UserRule | None,
        example: LabeledExample | None,
        global_pattern: GlobalPattern | None,
    ) -> str:
        parts = []
        if rule is not None:
            parts.append(f"Auto-rule '{rule.pattern}'")
        if example is not None:
            parts.append("Labeled example")
        if global_pattern is not None:
            status = "verified" if global_pattern.is_verified else f"{global_pattern.user_count} user(s)"
            parts.append(f"Global pattern ({status})")
        if not parts:
            return "No artifacts created (may already exist)"
        return "Created: " + " + ".join(parts)
