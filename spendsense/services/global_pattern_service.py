"""Cross-user pattern learning.

When the same pattern is learned under the same category by enough distinct
users it becomes verified and is used by the rule engine for everybody:

    User A: "blinkit" -> LLM -> food  (pattern recorded, 1 user)
    User B: "blinkit" -> LLM -> food  (2 users, 100% agreement -> verified)
    User C: "blinkit" -> global pattern hit, no LLM call
"""

from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.config import settings
from spendsense.core.database import insert_or_ignore
from spendsense.models.global_pattern import GlobalPattern

logger = structlog.get_logger()

MIN_PATTERN_LENGTH = 3


class GlobalPatternService:
    def __init__(
        self,
        db: AsyncSession,
        min_users: int | None = None,
        min_agreement: float | None = None,
    ):
        self.db = db
        self.min_users = settings.global_pattern_min_users if min_users is None else min_users
        self.min_agreement = (
            settings.global_pattern_min_agreement if min_agreement is None else min_agreement
        )

    async def find(self, pattern: str, category_id: int) -> GlobalPattern | None:
        result = await self.db.execute(
            select(GlobalPattern).where(
                GlobalPattern.pattern == pattern,
                GlobalPattern.category_id == category_id,
            )
        )
        return result.scalar_one_or_none()

    async def record_pattern(
        self,
        pattern: str,
        category_id: int,
        user_id: int,
        source: str = "llm_auto",
    ) -> GlobalPattern | None:
        """Count one occurrence of (pattern, category) from ``user_id``.

        A user's first contribution also counts as a new agreeing user.
        Returns the pattern, or None when the pattern is too short.
        """
        pattern = (pattern or "").strip().lower()
        if len(pattern) < MIN_PATTERN_LENGTH:
            return None

        # Concurrent learners may race to create the same row; whoever loses
        # the insert simply updates the winner's row below.
        await insert_or_ignore(
            self.db,
            GlobalPattern,
            {
                "pattern": pattern,
                "category_id": category_id,
                "pattern_type": "keyword",
                "source": source,
                "user_ids": [],
                "occurrence_count": 0,
                "user_count": 0,
                "agreement_count": 0,
                "match_count": 0,
                "is_verified": False,
            },
            ["pattern", "category_id"],
        )
        global_pattern = await self.find(pattern, category_id)
        if global_pattern is None:
            logger.warning("global_pattern_missing_after_insert", category_id=category_id)
            return None

        global_pattern.occurrence_count = (global_pattern.occurrence_count or 0) + 1
        user_ids = list(global_pattern.user_ids or [])
        if user_id not in user_ids:
            global_pattern.user_ids = [*user_ids, user_id]
            global_pattern.user_count = (global_pattern.user_count or 0) + 1
            global_pattern.agreement_count = (global_pattern.agreement_count or 0) + 1

        await self.db.flush()
        await self.check_verification(global_pattern)
        return global_pattern

    async def record_disagreement(
        self,
        pattern: str,
        category_id: int,
        user_id: int,
    ) -> list[GlobalPattern]:
        """Count ``user_id`` against same-text patterns filed under other categories.

        The user joins those patterns' contributors without agreeing, so their
        agreement rate drops. Users already counted on a pattern are skipped.
        """
        pattern = (pattern or "").strip().lower()
        if len(pattern) < MIN_PATTERN_LENGTH:
            return []

        result = await self.db.execute(
            select(GlobalPattern).where(
                GlobalPattern.pattern == pattern,
                GlobalPattern.category_id != category_id,
            )
        )
        updated = []
        for global_pattern in result.scalars().all():
            user_ids = list(global_pattern.user_ids or [])
            if user_id in user_ids:
                continue
            global_pattern.user_ids = [*user_ids, user_id]
            global_pattern.occurrence_count = (global_pattern.occurrence_count or 0) + 1
            global_pattern.user_count = (global_pattern.user_count or 0) + 1
            updated.append(global_pattern)

        if updated:
            await self.db.flush()
            for global_pattern in updated:
                await self.check_verification(global_pattern)
        return updated

    async def check_verification(self, global_pattern: GlobalPattern) -> bool:
        """Verify the pattern if it crossed both thresholds. Never un-verifies."""
        if global_pattern.is_verified:
            return True
        if (global_pattern.user_count or 0) < self.min_users:
            return False
        if global_pattern.agreement_rate < self.min_agreement:
            return False

        global_pattern.is_verified = True
        global_pattern.verified_at = datetime.now(timezone.utc)
        await self.db.flush()

        logger.info(
            "global_pattern_verified",
            pattern_id=global_pattern.id,
            category_id=global_pattern.category_id,
            user_count=global_pattern.user_count,
            agreement_rate=round(global_pattern.agreement_rate, 2),
        )
        return True
