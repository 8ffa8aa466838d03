"""Transaction model."""

from datetime import date, datetime
from decimal import Decimal

from pgvector.sqlalchemy import Vector
from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from spendsense.config import settings
from spendsense.models.base import Base, JSONType, TimestampMixin

TX_KINDS = (
    "spend",
    "transfer_p2p",
    "transfer_self",
    "transfer_wallet",
    "income_salary",
    "income_bonus",
    "income_investment",
    "income_refund",
    "investment",
    "loan_emi",
    "fee",
    "tax",
    "cash",
)

CATEGORIZATION_STATUSES = ("pending", "processing", "completed", "failed")


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    original_description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(10), nullable=False)  # debit, credit
    transaction_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Confirmed (user) and suggested (AI) categorization slots
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"), nullable=True)
    subcategory_id: Mapped[int | None] = mapped_column(ForeignKey("subcategories.id"), nullable=True)
    ai_category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"), nullable=True)
    ai_subcategory_id: Mapped[int | None] = mapped_column(ForeignKey("subcategories.id"), nullable=True)

    tx_kind: Mapped[str | None] = mapped_column(String(30), nullable=True)
    counterparty_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    categorization_status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    is_reviewed: Mapped[bool] = mapped_column(Boolean, default=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, default=None, nullable=True)

    embedding = mapped_column(Vector(settings.embedding_dimensions), nullable=True)
    embedding_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_transactions_user_status", "user_id", "categorization_status"),
    )

    @property
    def text(self) -> str:
        """The description used for matching (falls back to the original)."""
        return self.description or self.original_description or ""

    @property
    def effective_category_id(self) -> int | None:
        return self.category_id or self.ai_category_id
