"""Cross-user pattern model.

A (pattern, category) pair accumulates evidence from many users. Once enough
distinct users agree it becomes verified and is used to categorize for
everybody; verification is never revoked.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spendsense.models.base import Base, JSONType, TimestampMixin

GLOBAL_PATTERN_TYPES = ("keyword", "exact", "prefix", "suffix")


class GlobalPattern(Base, TimestampMixin):
    __tablename__ = "global_patterns"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    pattern: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    pattern_type: Mapped[str] = mapped_column(String(20), default="keyword")
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False)
    source: Mapped[str] = mapped_column(String(20), default="llm_auto")
    user_ids: Mapped[list[int]] = mapped_column(JSONType, default=list, nullable=False)
    occurrence_count: Mapped[int] = mapped_column(Integer, default=0)
    user_count: Mapped[int] = mapped_column(Integer, default=0)
    agreement_count: Mapped[int] = mapped_column(Integer, default=0)
    match_count: Mapped[int] = mapped_column(Integer, default=0)
    last_matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("pattern", "category_id", name="uq_global_patterns_pattern_category"),
    )

    @property
    def agreement_rate(self) -> float:
        if not self.user_count:
            return 0.0
        return self.agreement_count / self.user_count

    def matches(self, text: str) -> bool:
        """Check the pattern against an already-normalized description."""
        if not text:
            return False
        text = text.lower()
        if self.pattern_type == "exact":
            return text == self.pattern
        if self.pattern_type == "prefix":
            return text.startswith(self.pattern)
        if self.pattern_type == "suffix":
            return text.endswith(self.pattern)
        return self.pattern in text
