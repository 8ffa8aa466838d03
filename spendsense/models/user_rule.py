"""Per-user categorization rule model."""

import re
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, validates

from spendsense.core.exceptions import InvalidRuleError
from spendsense.models.base import Base, TimestampMixin

PATTERN_TYPES = ("exact", "keyword", "regex")
MATCH_FIELDS = ("description", "normalized")
RULE_SOURCES = ("user_created", "feedback", "llm_auto")


class UserRule(Base, TimestampMixin):
    """A per-user fast-path matcher.

    The pattern is trimmed and lower-cased on assignment; regex patterns are
    compiled once to reject invalid ones at creation time.
    """

    __tablename__ = "user_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False)
    subcategory_id: Mapped[int | None] = mapped_column(ForeignKey("subcategories.id"), nullable=True)
    pattern: Mapped[str] = mapped_column(String(500), nullable=False)
    pattern_type: Mapped[str] = mapped_column(String(20), default="keyword")  # exact, keyword, regex
    match_field: Mapped[str] = mapped_column(String(20), default="normalized")  # description, normalized
    priority: Mapped[int] = mapped_column(Integer, default=0)  # higher = checked first
    match_count: Mapped[int] = mapped_column(Integer, default=0)
    last_matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    source: Mapped[str] = mapped_column(String(20), default="user_created")  # user_created, feedback, llm_auto
    source_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("transactions.id"), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "pattern", name="uq_user_rules_user_pattern"),
    )

    @validates("pattern")
    def _normalize_pattern(self, key: str, value: str) -> str:
        pattern = (value or "").strip().lower()
        if not pattern:
            raise InvalidRuleError("Rule pattern cannot be blank")
        if self.pattern_type == "regex":
            _compile_or_raise(pattern)
        return pattern

    @validates("pattern_type")
    def _check_pattern_type(self, key: str, value: str) -> str:
        if value not in PATTERN_TYPES:
            raise InvalidRuleError(f"Unknown pattern type '{value}'")
        if value == "regex" and self.pattern:
            _compile_or_raise(self.pattern)
        return value

    @validates("match_field")
    def _check_match_field(self, key: str, value: str) -> str:
        if value not in MATCH_FIELDS:
            raise InvalidRuleError(f"Unknown match field '{value}'")
        return value

    @validates("source")
    def _check_source(self, key: str, value: str) -> str:
        if value not in RULE_SOURCES:
            raise InvalidRuleError(f"Unknown rule source '{value}'")
        return value


def _compile_or_raise(pattern: str) -> None:
    try:
        re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise InvalidRuleError(f"Invalid regex pattern: {e}") from e
