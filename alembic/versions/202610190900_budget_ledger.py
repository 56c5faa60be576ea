"""budget ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "budget_years",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column(
            "annual_allocated_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "opening_carryover_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("rolled_from_year", sa.Integer()),
        sa.Column("surplus_override_cents", sa.Integer()),
        sa.Column(
            "totals_allocated_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "totals_spent_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("client_id", "year", name="uq_budget_year_client_year"),
        sa.CheckConstraint(
            "annual_allocated_cents >= 0", name="ck_budget_year_annual_positive"
        ),
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_year_id",
            sa.Integer(),
            sa.ForeignKey("budget_years.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("category_id", sa.String(length=64), nullable=False),
        sa.Column("category_name", sa.String(length=120)),
        sa.Column("allocated_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("released_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "budget_year_id", "category_id", name="uq_budget_category_year_category"
        ),
        sa.CheckConstraint(
            "allocated_cents >= 0", name="ck_budget_category_allocated_positive"
        ),
    )

    op.create_table(
        "budget_care_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("care_item_slug", sa.String(length=120), nullable=False),
        sa.Column("label", sa.String(length=200)),
        sa.Column("allocated_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("released_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "budget_category_id", "care_item_slug", name="uq_budget_care_item_slug"
        ),
        sa.CheckConstraint(
            "allocated_cents >= 0", name="ck_budget_care_item_allocated_positive"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("Purchase", "Refund", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("created_by_user_id", sa.String(length=64), nullable=False),
        sa.Column("receipt_url", sa.String(length=500)),
        sa.Column("note", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("voided_at", sa.DateTime()),
    )
    op.create_index(
        "ix_transactions_client_year", "transactions", ["client_id", "year"]
    )
    op.create_index(
        "ix_transactions_client_year_type",
        "transactions",
        ["client_id", "year", "type"],
    )

    op.create_table(
        "transaction_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category_id", sa.String(length=64), nullable=False),
        sa.Column("care_item_slug", sa.String(length=120), nullable=False),
        sa.Column("label", sa.String(length=200)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "refund_of_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")
        ),
        sa.Column(
            "refund_of_line_id", sa.Integer(), sa.ForeignKey("transaction_lines.id")
        ),
        sa.Column("refund_version", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_transaction_lines_amount_positive"
        ),
        sa.CheckConstraint(
            "(refund_of_transaction_id IS NULL) = (refund_of_line_id IS NULL)",
            name="ck_transaction_lines_refund_reference_pair",
        ),
    )
    op.create_index(
        "ix_transaction_lines_category", "transaction_lines", ["category_id"]
    )
    op.create_index(
        "ix_transaction_lines_refund_of",
        "transaction_lines",
        ["refund_of_transaction_id", "refund_of_line_id"],
    )


def downgrade():
    op.drop_index("ix_transaction_lines_refund_of", table_name="transaction_lines")
    op.drop_index("ix_transaction_lines_category", table_name="transaction_lines")
    op.drop_table("transaction_lines")
    op.drop_index("ix_transactions_client_year_type", table_name="transactions")
    op.drop_index("ix_transactions_client_year", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("budget_care_items")
    op.drop_table("budget_categories")
    op.drop_table("budget_years")
