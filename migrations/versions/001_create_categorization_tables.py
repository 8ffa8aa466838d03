"""Create taxonomy, transactions and learning tables.

Enables pgvector for embedding similarity search on transactions and
labeled examples.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

# 384 dimensions = paraphrase-multilingual-MiniLM-L12-v2
EMBEDDING_DIMENSIONS = 384


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # ── Users ─────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # ── Taxonomy ──────────────────────────────────────
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("slug", sa.String(50), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True),
        sa.Column("is_system", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("display_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_categories_slug", "categories", ["slug"], unique=True)

    op.create_table(
        "subcategories",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("slug", sa.String(80), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("keywords", JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("is_default", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("display_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subcategories_slug", "subcategories", ["slug"], unique=True)
    op.create_index("ix_subcategories_category_id", "subcategories", ["category_id"])

    # ── Transactions ──────────────────────────────────
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("original_description", sa.String(500), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("transaction_type", sa.String(10), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=True),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True),
        sa.Column("subcategory_id", sa.Integer(), sa.ForeignKey("subcategories.id"), nullable=True),
        sa.Column("ai_category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True),
        sa.Column("ai_subcategory_id", sa.Integer(), sa.ForeignKey("subcategories.id"), nullable=True),
        sa.Column("tx_kind", sa.String(30), nullable=True),
        sa.Column("counterparty_name", sa.String(255), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("ai_explanation", sa.Text(), nullable=True),
        sa.Column("categorization_status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("is_reviewed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("embedding_generated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.execute(f"ALTER TABLE transactions ADD COLUMN embedding vector({EMBEDDING_DIMENSIONS})")
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("idx_transactions_user_status", "transactions", ["user_id", "categorization_status"])
    # Partial index for the "needs an embedding" sweep
    op.execute(
        "CREATE INDEX idx_transactions_missing_embedding ON transactions (created_at) "
        "WHERE embedding_generated_at IS NULL"
    )
    op.execute(
        "CREATE INDEX idx_transactions_embedding ON transactions "
        "USING hnsw (embedding vector_cosine_ops)"
    )

    # ── Learning artifacts ────────────────────────────
    op.create_table(
        "user_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("subcategory_id", sa.Integer(), sa.ForeignKey("subcategories.id"), nullable=True),
        sa.Column("pattern", sa.String(500), nullable=False),
        sa.Column("pattern_type", sa.String(20), server_default="keyword", nullable=False),
        sa.Column("match_field", sa.String(20), server_default="normalized", nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("match_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("source", sa.String(20), server_default="user_created", nullable=False),
        sa.Column("source_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "pattern", name="uq_user_rules_user_pattern"),
    )
    op.create_index("ix_user_rules_user_id", "user_rules", ["user_id"])

    op.create_table(
        "labeled_examples",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("subcategory_id", sa.Integer(), sa.ForeignKey("subcategories.id"), nullable=True),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=True),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("normalized_description", sa.String(255), nullable=False),
        sa.Column("source", sa.String(20), server_default="user_feedback", nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("transaction_type", sa.String(10), nullable=True),
        sa.Column("embedding_generated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "normalized_description", name="uq_labeled_examples_user_desc"),
    )
    op.execute(f"ALTER TABLE labeled_examples ADD COLUMN embedding vector({EMBEDDING_DIMENSIONS})")
    op.create_index("ix_labeled_examples_user_id", "labeled_examples", ["user_id"])
    op.execute(
        "CREATE INDEX idx_labeled_examples_embedding ON labeled_examples "
        "USING hnsw (embedding vector_cosine_ops)"
    )

    op.create_table(
        "global_patterns",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pattern", sa.String(255), nullable=False),
        sa.Column("pattern_type", sa.String(20), server_default="keyword", nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("source", sa.String(20), server_default="llm_auto", nullable=False),
        sa.Column("user_ids", JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("occurrence_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("user_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("agreement_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("match_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_verified", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pattern", "category_id", name="uq_global_patterns_pattern_category"),
    )
    op.create_index("ix_global_patterns_pattern", "global_patterns", ["pattern"])
    op.create_index("ix_global_patterns_is_verified", "global_patterns", ["is_verified"])


def downgrade() -> None:
    op.drop_table("global_patterns")
    op.execute("DROP INDEX IF EXISTS idx_labeled_examples_embedding")
    op.drop_table("labeled_examples")
    op.drop_table("user_rules")
    op.execute("DROP INDEX IF EXISTS idx_transactions_embedding")
    op.execute("DROP INDEX IF EXISTS idx_transactions_missing_embedding")
    op.drop_table("transactions")
    op.drop_table("subcategories")
    op.drop_table("categories")
    op.drop_table("users")
    # The vector extension is left installed; other database objects may use it
