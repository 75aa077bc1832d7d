"""Create categories, rules, transactions, corrections and AI usage tables.

Also enables pg_trgm and installs ``find_similar_transactions``, the
trigram lookup used by the similar-transaction strategy.

Revision ID: 001
Revises:
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


FIND_SIMILAR_TRANSACTIONS = """
CREATE OR REPLACE FUNCTION find_similar_transactions(
    search_description TEXT,
    min_similarity REAL DEFAULT 0.3,
    max_results INTEGER DEFAULT 5
)
RETURNS TABLE (
    id VARCHAR,
    description VARCHAR,
    category_id VARCHAR,
    category_name VARCHAR,
    similarity REAL,
    date DATE
)
LANGUAGE sql STABLE
AS $$
    SELECT t.id, t.description, t.category_id, c.name,
           similarity(lower(t.description), lower(search_description)) AS similarity,
           t.date
    FROM transactions t
    JOIN categories c ON c.id = t.category_id
    WHERE t.category_id IS NOT NULL
      AND similarity(lower(t.description), lower(search_description)) >= min_similarity
    ORDER BY similarity DESC, t.date DESC
    LIMIT max_results
$$;
"""


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    # ── Categories ────────────────────────────────────
    op.create_table(
        "categories",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("group_name", sa.String(100), nullable=False),
        sa.Column("is_income", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("display_order", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_categories_group_name", "categories", ["group_name"])

    # ── Rules ─────────────────────────────────────────
    op.create_table(
        "category_mappings",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("pattern", sa.String(500), nullable=False),
        sa.Column(
            "category_id", sa.String(36),
            sa.ForeignKey("categories.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("match_type", sa.String(20), server_default="exact", nullable=False),
        sa.Column("confidence", sa.Float(), server_default="1.0", nullable=False),
        sa.Column("is_system", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "match_type IN ('exact', 'contains', 'regex')", name="ck_category_mappings_match_type"
        ),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_category_mappings_confidence"
        ),
    )
    op.create_index("ix_category_mappings_category_id", "category_mappings", ["category_id"])
    op.create_index("ix_category_mappings_match_type", "category_mappings", ["match_type"])

    # ── Transactions ──────────────────────────────────
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "category_id", sa.String(36),
            sa.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("categorisation_source", sa.String(20), server_default="manual", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_transactions_date", "transactions", [sa.text("date DESC")])
    op.create_index("idx_transactions_category_id", "transactions", ["category_id"])
    op.execute(
        "CREATE INDEX idx_transactions_description_trgm ON transactions "
        "USING gin (lower(description) gin_trgm_ops)"
    )

    # ── Corrections ───────────────────────────────────
    op.create_table(
        "category_corrections",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column(
            "original_category_id", sa.String(36),
            sa.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "corrected_category_id", sa.String(36),
            sa.ForeignKey("categories.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("original_source", sa.String(20), nullable=True),
        sa.Column("import_session_id", sa.String(36), nullable=True),
        sa.Column("processed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "created_rule_id", sa.String(36),
            sa.ForeignKey("category_mappings.id", ondelete="SET NULL"), nullable=True,
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_category_corrections_corrected_category_id",
        "category_corrections", ["corrected_category_id"],
    )
    op.create_index("ix_category_corrections_processed", "category_corrections", ["processed"])

    # ── AI usage ──────────────────────────────────────
    op.create_table(
        "ai_usage_tracking",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("usage_type", sa.String(50), nullable=False),
        sa.Column("count", sa.Integer(), server_default="0", nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("date", "usage_type", name="uq_ai_usage_tracking_date_type"),
    )

    op.execute(FIND_SIMILAR_TRANSACTIONS)


def downgrade() -> None:
    op.execute(
        "DROP FUNCTION IF EXISTS find_similar_transactions(TEXT, REAL, INTEGER)"
    )
    op.drop_table("ai_usage_tracking")
    op.drop_table("category_corrections")
    op.execute("DROP INDEX IF EXISTS idx_transactions_description_trgm")
    op.drop_table("transactions")
    op.drop_table("category_mappings")
    op.drop_table("categories")
    # pg_trgm is left installed; other schemas may rely on it
