"""Labeled example model: a per-user (description -> category) training pair."""

from datetime import datetime
from decimal import Decimal

from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spendsense.config import settings
from spendsense.models.base import Base, TimestampMixin


class LabeledExample(Base, TimestampMixin):
    __tablename__ = "labeled_examples"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False)
    subcategory_id: Mapped[int | None] = mapped_column(ForeignKey("subcategories.id"), nullable=True)
    transaction_id: Mapped[int | None] = mapped_column(ForeignKey("transactions.id"), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    normalized_description: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[str] = mapped_column(String(20), default="user_feedback")  # user_feedback, llm_auto
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    transaction_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    embedding = mapped_column(Vector(settings.embedding_dimensions), nullable=True)
    embedding_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "normalized_description", name="uq_labeled_examples_user_desc"),
    )
